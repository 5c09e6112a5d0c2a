#!/usr/bin/env python3
"""
新种汇报确认

种子刚添加时 tracker 往往还没有确认。这里先等待一小段时间，再循环检查 tracker
状态，未确认时主动重新汇报；超过次数仍未确认则删除种子（保留已下载文件）。

所有等待都通过 threading.Event.wait() 完成，外部设置事件即可中止循环。
"""

import math
import time
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from exceptions import AutoAddError, CompensationFailedError, CycleCancelledError
from qb_manager import TrackerEntry, TrackerStatus


class ReannounceConfig:
    INITIAL_DELAY = 6           # 秒，给 tracker 的启动时间
    INTERVAL_MS = 7000          # 两次检查之间的间隔
    MAX_ATTEMPTS = 50
    GRACE_DELAY = 30            # 秒，删除前的最后缓冲

    MAX_INTERVAL_MS = 600 * 1000
    MAX_ATTEMPTS_LIMIT = 1000
    MAX_DELAY = 3600


def _parse_float(value, default: float, min_val: float, max_val: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(min_val, min(max_val, number))


@dataclass
class ReannounceSettings:
    initial_delay: float = ReannounceConfig.INITIAL_DELAY
    interval: float = ReannounceConfig.INTERVAL_MS / 1000
    max_attempts: int = ReannounceConfig.MAX_ATTEMPTS
    grace_delay: float = ReannounceConfig.GRACE_DELAY
    delete_on_failure: bool = True

    @classmethod
    def from_db(cls, db) -> 'ReannounceSettings':
        """从配置表读取，缺失或格式错误时使用默认值"""
        interval_ms = _parse_float(db.get_config('reannounce_interval_ms'),
                                   ReannounceConfig.INTERVAL_MS, 0, ReannounceConfig.MAX_INTERVAL_MS)
        return cls(
            initial_delay=_parse_float(db.get_config('reannounce_initial_delay'),
                                       ReannounceConfig.INITIAL_DELAY, 0, ReannounceConfig.MAX_DELAY),
            interval=interval_ms / 1000,
            max_attempts=int(_parse_float(db.get_config('reannounce_max_attempts'),
                                          ReannounceConfig.MAX_ATTEMPTS, 1,
                                          ReannounceConfig.MAX_ATTEMPTS_LIMIT)),
            grace_delay=_parse_float(db.get_config('reannounce_grace_delay'),
                                     ReannounceConfig.GRACE_DELAY, 0, ReannounceConfig.MAX_DELAY),
            delete_on_failure=db.get_config('reannounce_delete_on_failure', 'true') != 'false',
        )


class ConvergenceOutcome(Enum):
    PENDING = "pending"
    CONVERGED = "converged"
    ABANDONED = "abandoned"     # 超时并已删除
    KEPT = "kept"               # 超时但按配置保留


@dataclass
class ConvergenceAttempt:
    torrent_hash: str
    attempts: int = 0
    outcome: ConvergenceOutcome = ConvergenceOutcome.PENDING
    started_at: float = field(default_factory=time.monotonic)
    finished_at: float = 0.0

    @property
    def elapsed(self) -> float:
        end = self.finished_at or time.monotonic()
        return end - self.started_at

    def finish(self, outcome: ConvergenceOutcome):
        self.outcome = outcome
        self.finished_at = time.monotonic()


def find_tracker_status(trackers: Iterable[TrackerEntry]) -> bool:
    """至少一个非禁用 tracker 处于工作状态"""
    for tracker in trackers:
        if tracker.status == TrackerStatus.DISABLED:
            continue
        if tracker.status == TrackerStatus.WORKING:
            return True
    return False


class AnnounceConvergenceLoop:
    def __init__(self, settings: Optional[ReannounceSettings] = None,
                 logger: Optional[logging.Logger] = None):
        self.settings = settings or ReannounceSettings()
        self.logger = logger or logging.getLogger("reannounce_engine")

    def _wait(self, seconds: float, cancel_event: threading.Event, torrent_hash: str):
        if cancel_event.wait(seconds):
            raise CycleCancelledError(f"汇报确认已取消: {torrent_hash}", torrent_hash)

    def converge(self, torrent_hash: str, client,
                 cancel_event: Optional[threading.Event] = None) -> ConvergenceAttempt:
        """
        驱动新种直到 tracker 确认

        Returns:
            ConvergenceAttempt，outcome 为 CONVERGED / ABANDONED / KEPT

        获取 tracker、重新汇报失败时直接抛出，不删除种子；
        超时后的删除失败抛出 CompensationFailedError。
        """
        if cancel_event is None:
            cancel_event = threading.Event()
        settings = self.settings
        state = ConvergenceAttempt(torrent_hash=torrent_hash)

        self._wait(settings.initial_delay, cancel_event, torrent_hash)

        while state.attempts < settings.max_attempts:
            self.logger.debug(f"[{client.name}] 重新汇报检查 {torrent_hash} 第 {state.attempts} 次")

            trackers = client.get_torrent_trackers(torrent_hash)
            self.logger.debug(f"[{client.name}] {torrent_hash} trackers: {trackers}")

            if find_tracker_status(trackers):
                self.logger.debug(f"[{client.name}] {torrent_hash} 汇报成功")
                state.finish(ConvergenceOutcome.CONVERGED)
                return state

            client.reannounce(torrent_hash)
            state.attempts += 1

            self._wait(settings.interval, cancel_event, torrent_hash)

        self._wait(settings.grace_delay, cancel_event, torrent_hash)

        if not settings.delete_on_failure:
            self.logger.warning(
                f"[{client.name}] {torrent_hash} 汇报超时 ({state.attempts} 次)，按配置保留种子")
            state.finish(ConvergenceOutcome.KEPT)
            return state

        self.logger.warning(f"[{client.name}] {torrent_hash} 汇报超时 ({state.attempts} 次)，删除种子")
        try:
            client.delete_torrent(torrent_hash, delete_files=False)
        except AutoAddError as e:
            self.logger.error(f"[{client.name}] 删除种子失败 {torrent_hash}: {e}")
            raise CompensationFailedError(
                f"[{client.name}] 汇报超时后删除种子失败: {e}", torrent_hash) from e

        state.finish(ConvergenceOutcome.ABANDONED)
        return state
