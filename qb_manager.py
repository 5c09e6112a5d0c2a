#!/usr/bin/env python3
"""
qBittorrent API 管理模块

- QBClientHandle: 对已登录的 qbittorrentapi.Client 的薄封装，
  只暴露自动添加流程需要的操作，并把库异常映射为流程异常
- QBManager: 多实例连接管理
"""

import threading
import logging
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type
from dataclasses import dataclass

import qbittorrentapi

from exceptions import (
    AutoAddError,
    ClientUnreachableError,
    DeleteFailedError,
    ObservationFailedError,
    ReannounceFailedError,
    SubmissionFailedError,
)


class TrackerStatus(IntEnum):
    """
    tracker状态
    https://github.com/qbittorrent/qBittorrent/wiki/WebUI-API-(qBittorrent-4.1)#get-torrent-trackers
    """
    DISABLED = 0        # DHT / PeX / LSD
    NOT_CONTACTED = 1
    WORKING = 2
    UPDATING = 3
    NOT_WORKING = 4

    @classmethod
    def from_raw(cls, value: Any) -> 'TrackerStatus':
        # 未知状态码按不可用处理：不跳过，也不算成功
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.NOT_WORKING


@dataclass
class TrackerEntry:
    url: str
    status: TrackerStatus
    msg: str = ''


@dataclass
class TransferInfo:
    dl_info_speed: int = 0
    up_info_speed: int = 0


def _to_bool(value: str) -> bool:
    return str(value).strip().lower() == 'true'


# 添加选项 -> torrents_add 关键字参数
ADD_OPTION_KWARGS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    'paused': ('is_paused', _to_bool),
    'savepath': ('save_path', str),
    'autoTMM': ('use_auto_torrent_management', _to_bool),
    'category': ('category', str),
    'tags': ('tags', str),
    'upLimit': ('upload_limit', int),
    'dlLimit': ('download_limit', int),
}


class QBClientHandle:
    """单个qB实例的客户端句柄，可被多个添加周期并发使用"""

    def __init__(self, client: Any, name: str = '', logger: Optional[logging.Logger] = None):
        self.client = client
        self.name = name
        self.logger = logger or logging.getLogger("qb_manager")

    def __repr__(self) -> str:
        return f"QBClientHandle({self.name!r})"

    def _call(self, error_cls: Type[AutoAddError], action: str,
              func: Callable[..., Any], ref_hash: Optional[str] = None, **kwargs) -> Any:
        """执行一次远程调用，库异常转换为流程异常"""
        try:
            return func(**kwargs)
        except (qbittorrentapi.LoginFailed,
                qbittorrentapi.Unauthorized401Error,
                qbittorrentapi.Forbidden403Error) as e:
            raise ClientUnreachableError(
                f"[{self.name}] {action}失败: 认证失败 ({e})", ref_hash) from e
        except qbittorrentapi.HTTPError as e:
            raise error_cls(f"[{self.name}] {action}失败: {e}", ref_hash) from e
        except qbittorrentapi.APIConnectionError as e:
            raise ClientUnreachableError(
                f"[{self.name}] {action}失败: 无法连接 ({e})", ref_hash) from e
        except qbittorrentapi.APIError as e:
            raise error_cls(f"[{self.name}] {action}失败: {e}", ref_hash) from e

    # ════════════════════════════════════════════════════════════════════
    # 读取
    # ════════════════════════════════════════════════════════════════════
    def get_active_downloads(self) -> List[Dict]:
        """获取正在下载的种子"""
        torrents = self._call(ObservationFailedError, "获取下载中种子",
                              self.client.torrents_info, status_filter='downloading')
        return [dict(t) for t in torrents]

    def get_transfer_info(self) -> TransferInfo:
        """获取全局传输信息（速度单位: 字节/秒）"""
        info = self._call(ObservationFailedError, "获取传输信息", self.client.transfer_info)
        return TransferInfo(
            dl_info_speed=int(info.get('dl_info_speed', 0) or 0),
            up_info_speed=int(info.get('up_info_speed', 0) or 0),
        )

    def get_torrent_trackers(self, torrent_hash: str) -> List[TrackerEntry]:
        """获取种子的tracker列表"""
        trackers = self._call(ObservationFailedError, "获取tracker",
                              self.client.torrents_trackers, torrent_hash,
                              torrent_hash=torrent_hash)
        return [
            TrackerEntry(
                url=t.get('url', ''),
                status=TrackerStatus.from_raw(t.get('status')),
                msg=t.get('msg', '') or '',
            )
            for t in trackers
        ]

    # ════════════════════════════════════════════════════════════════════
    # 种子操作
    # ════════════════════════════════════════════════════════════════════
    def add_torrent(self, torrent_file: bytes, options: Dict[str, str]):
        """添加种子，options 为 qB WebUI 的字符串选项"""
        params = {}
        for key, value in options.items():
            if key not in ADD_OPTION_KWARGS:
                raise SubmissionFailedError(f"[{self.name}] 不支持的添加选项: {key}")
            kwarg, convert = ADD_OPTION_KWARGS[key]
            try:
                params[kwarg] = convert(value)
            except ValueError as e:
                raise SubmissionFailedError(f"[{self.name}] 选项 {key} 取值无效: {value!r}") from e

        result = self._call(SubmissionFailedError, "添加种子",
                            self.client.torrents_add, torrent_files=torrent_file, **params)
        if isinstance(result, str) and result.strip() != "Ok.":
            raise SubmissionFailedError(f"[{self.name}] 添加种子被拒绝: {result}")

    def reannounce(self, torrent_hash: str):
        """重新汇报"""
        self._call(ReannounceFailedError, "重新汇报",
                   self.client.torrents_reannounce, torrent_hash,
                   torrent_hashes=torrent_hash)

    def delete_torrent(self, torrent_hash: str, delete_files: bool = False):
        """删除种子，delete_files 控制是否同时删除已下载的文件"""
        self._call(DeleteFailedError, "删除种子",
                   self.client.torrents_delete, torrent_hash,
                   torrent_hashes=torrent_hash, delete_files=delete_files)
        action = "删除种子和文件" if delete_files else "仅删除种子"
        self.logger.info(f"[{self.name}] {action}: {torrent_hash[:8]}...")


@dataclass
class QBInstance:
    """qBittorrent实例"""
    id: int
    name: str
    host: str
    port: int
    enabled: bool = True
    client: Any = None
    connected: bool = False
    last_error: str = ''


class QBManager:
    """qBittorrent实例管理器"""

    def __init__(self, client_factory: Callable[..., Any] = qbittorrentapi.Client):
        self._instances: Dict[int, QBInstance] = {}
        self._lock = threading.Lock()
        self._client_factory = client_factory
        self.logger = logging.getLogger("qb_manager")

    def connect(self, config: Dict) -> Tuple[bool, str]:
        """连接qB实例，账号密码只用于登录，不做保存"""
        instance_id = config['id']

        try:
            client = self._client_factory(
                host=config['host'],
                port=config['port'],
                username=config.get('username', ''),
                password=config.get('password', ''),
                VERIFY_WEBUI_CERTIFICATE=config.get('verify_ssl', False)
            )

            client.auth_log_in()
            version = client.app_version()
        except qbittorrentapi.APIError as e:
            error_msg = str(e)
            self.logger.error(f"连接失败 {config['name']}: {error_msg}")
            with self._lock:
                instance = self._instances.get(instance_id)
                if instance:
                    instance.connected = False
                    instance.last_error = error_msg
            return False, error_msg

        instance = QBInstance(
            id=instance_id,
            name=config['name'],
            host=config['host'],
            port=config['port'],
            enabled=config.get('enabled', True),
            client=client,
            connected=True
        )

        with self._lock:
            self._instances[instance_id] = instance

        self.logger.info(f"已连接 {config['name']} (v{version})")
        return True, f"已连接 (v{version})"

    def disconnect(self, instance_id: int):
        """断开连接"""
        with self._lock:
            instance = self._instances.pop(instance_id, None)
        if instance and instance.client:
            try:
                instance.client.auth_log_out()
            except qbittorrentapi.APIError as e:
                self.logger.debug(f"注销失败 {instance.name}: {e}")

    def get_instance(self, instance_id: int) -> Optional[QBInstance]:
        """获取实例"""
        with self._lock:
            return self._instances.get(instance_id)

    def get_connected_instances(self) -> List[QBInstance]:
        """获取已连接的实例"""
        with self._lock:
            return [i for i in self._instances.values() if i.connected]

    def is_connected(self, instance_id: int) -> bool:
        """检查是否已连接"""
        instance = self.get_instance(instance_id)
        return instance.connected if instance else False

    def get_handle(self, instance_id: int) -> QBClientHandle:
        """获取已登录实例的客户端句柄"""
        instance = self.get_instance(instance_id)
        if not instance:
            raise ClientUnreachableError(f"实例不存在: {instance_id}")
        if not instance.connected or not instance.client:
            raise ClientUnreachableError(
                f"实例未连接: {instance.name} {instance.last_error}".rstrip())
        return QBClientHandle(instance.client, instance.name, self.logger)
