#!/usr/bin/env python3
"""
自动添加流程的异常定义

所有远程调用失败都会中止当前周期，并以下列类型原样抛给调用方。
"""

from typing import Optional


class AutoAddError(Exception):
    """自动添加流程异常基类"""

    def __init__(self, message: str, torrent_hash: Optional[str] = None):
        super().__init__(message)
        self.torrent_hash = torrent_hash


class ClientUnreachableError(AutoAddError):
    """qB实例无法连接或认证失败"""


class SubmissionFailedError(AutoAddError):
    """qB拒绝添加种子，或种子内容无法获取"""


class ObservationFailedError(AutoAddError):
    """获取活动下载、传输信息或tracker状态失败"""


class ReannounceFailedError(AutoAddError):
    """重新汇报请求失败"""


class DeleteFailedError(AutoAddError):
    """删除种子请求失败"""


class CompensationFailedError(AutoAddError):
    """
    汇报超时后的补偿删除失败。

    此时种子可能仍留在客户端中，状态不一致，必须上报。
    """


class CycleCancelledError(AutoAddError):
    """周期被外部取消"""
