#!/usr/bin/env python3
"""
添加前的准入检查

根据qB实例当前的活动下载数和全局下载速度，决定新种子是立即添加还是跳过。
每次检查都重新读取远端状态，不缓存结果。
"""

import math
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Decision(Enum):
    ADMIT = "admit"
    DEFER = "defer"


@dataclass
class ClientRules:
    """qB实例的添加规则"""
    enabled: bool = False
    max_active_downloads: int = 0           # 0 = 不限制
    ignore_slow_torrents: bool = False
    download_speed_threshold: int = 0       # KiB/s

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ClientRules':
        if not data:
            return cls()

        def _int(key: str) -> int:
            value = data.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                return 0
            # 格式错误的上限不能变成 0（不限制）
            try:
                number = float(value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"规则字段 {key} 取值无效: {value!r}") from e
            if not math.isfinite(number):
                raise ValueError(f"规则字段 {key} 取值无效: {value!r}")
            return int(number)

        def _bool(key: str) -> bool:
            value = data.get(key)
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)

        return cls(
            enabled=_bool('enabled'),
            max_active_downloads=_int('max_active_downloads'),
            ignore_slow_torrents=_bool('ignore_slow_torrents'),
            download_speed_threshold=_int('download_speed_threshold'),
        )


class AdmissionGate:
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("admission_gate")

    def evaluate(self, rules: ClientRules, client, ignore_rules: bool = False) -> Decision:
        """
        检查是否允许添加

        Args:
            rules: qB实例的添加规则
            client: QBClientHandle
            ignore_rules: 任务自身要求跳过规则检查

        远程调用失败时异常直接抛出，不做重试。
        """
        if not rules.enabled or ignore_rules:
            return Decision.ADMIT

        active_downloads = client.get_active_downloads()

        # 0 表示不限制
        if rules.max_active_downloads <= 0:
            return Decision.ADMIT

        if len(active_downloads) < rules.max_active_downloads:
            return Decision.ADMIT

        if not rules.ignore_slow_torrents:
            self.logger.debug(
                f"[{client.name}] 活动下载已达上限 ({len(active_downloads)}/{rules.max_active_downloads})，跳过")
            return Decision.DEFER

        # dl_info_speed 单位为字节/秒，阈值单位为 KiB/s
        info = client.get_transfer_info()
        current_speed = info.dl_info_speed // 1024
        if current_speed >= rules.download_speed_threshold:
            self.logger.debug(
                f"[{client.name}] 活动下载已达上限且速度 {current_speed} KiB/s "
                f">= {rules.download_speed_threshold} KiB/s，跳过")
            return Decision.DEFER

        self.logger.debug(
            f"[{client.name}] 活动下载速度 {current_speed} KiB/s 低于阈值，继续添加")
        return Decision.ADMIT
