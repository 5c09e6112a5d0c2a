#!/usr/bin/env python3
"""
qBittorrent 自动添加动作

一次完整周期：准入检查 -> 添加种子 -> （非暂停且hash已知时）汇报确认。
任何远程调用失败都会中止周期并原样抛出。
"""

import sqlite3
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from admission_gate import AdmissionGate, ClientRules, Decision
from exceptions import AutoAddError, CycleCancelledError
from qb_manager import QBClientHandle, QBManager
from reannounce_engine import (
    AnnounceConvergenceLoop,
    ConvergenceOutcome,
    ReannounceSettings,
)
from submission import SubmissionDispatcher, TorrentJob


@dataclass
class ActionResult:
    status: str                         # deferred / added / converged / abandoned / kept
    client_name: str = ''
    torrent_hash: Optional[str] = None
    attempts: int = 0
    elapsed: float = 0.0


class QBittorrentAction:
    def __init__(self, qb_manager: QBManager, db=None,
                 settings: Optional[ReannounceSettings] = None,
                 logger: Optional[logging.Logger] = None,
                 dispatcher: Optional[SubmissionDispatcher] = None):
        self.qb_manager = qb_manager
        self.db = db
        self.settings = settings
        self.logger = logger or logging.getLogger("qbittorrent_action")
        self.gate = AdmissionGate(self.logger)
        self.dispatcher = dispatcher or SubmissionDispatcher(logger=self.logger)

    def _log(self, level: str, message: str):
        getattr(self.logger, level.lower(), self.logger.info)(message)
        if self.db is None:
            return
        try:
            self.db.add_log(level.upper(), f"[AutoAdd] {message}")
        except sqlite3.Error as e:
            self.logger.warning(f"写入日志失败: {e}")

    def _count(self, **kwargs):
        if self.db is None:
            return
        try:
            self.db.update_stats(**kwargs)
        except sqlite3.Error as e:
            self.logger.warning(f"更新统计失败: {e}")

    def _get_rules(self, instance_id: int) -> ClientRules:
        if self.db is None:
            return ClientRules()
        return self.db.get_client_rules(instance_id)

    def _get_settings(self) -> ReannounceSettings:
        if self.settings is not None:
            return self.settings
        if self.db is not None:
            return ReannounceSettings.from_db(self.db)
        return ReannounceSettings()

    def check_rules_can_download(self, job: TorrentJob,
                                 instance_id: int) -> Tuple[Decision, QBClientHandle]:
        """获取实例句柄并检查添加规则"""
        self.logger.debug(f"检查添加规则: {job.name} -> 实例 {instance_id}")

        try:
            client = self.qb_manager.get_handle(instance_id)
        except AutoAddError as e:
            self._log('error', f"获取qB实例失败 {instance_id}: {e}")
            raise

        rules = self._get_rules(instance_id)
        try:
            decision = self.gate.evaluate(rules, client, ignore_rules=job.ignore_rules)
        except AutoAddError as e:
            self._log('error', f"[{client.name}] 检查活动下载失败: {e}")
            raise

        return decision, client

    def run(self, job: TorrentJob, instance_id: int,
            cancel_event: Optional[threading.Event] = None) -> ActionResult:
        """执行一次完整的添加周期"""
        decision, client = self.check_rules_can_download(job, instance_id)

        if decision == Decision.DEFER:
            self._log('info', f"[{client.name}] 活动下载已达上限，跳过: {job.name}")
            self._count(total_deferred=1)
            return ActionResult(status='deferred', client_name=client.name,
                                torrent_hash=job.info_hash or None)

        if cancel_event is not None and cancel_event.is_set():
            raise CycleCancelledError(f"添加已取消: {job.name}", job.info_hash or None)

        try:
            torrent_hash = self.dispatcher.submit(job, client)
        except AutoAddError as e:
            self._log('error', f"[{client.name}] 添加种子失败 {job.name}: {e}")
            raise
        self._count(total_added=1)

        if job.paused or not torrent_hash:
            self._log('info', f"[{client.name}] 添加成功: {job.name}")
            return ActionResult(status='added', client_name=client.name, torrent_hash=torrent_hash)

        loop = AnnounceConvergenceLoop(self._get_settings(), self.logger)
        try:
            state = loop.converge(torrent_hash, client, cancel_event)
        except AutoAddError as e:
            self._log('error', f"[{client.name}] 汇报确认失败 {torrent_hash}: {e}")
            raise

        result = ActionResult(status=state.outcome.value, client_name=client.name,
                              torrent_hash=torrent_hash, attempts=state.attempts,
                              elapsed=state.elapsed)

        if state.outcome == ConvergenceOutcome.CONVERGED:
            self._count(total_converged=1)
            self._log('info', f"[{client.name}] 添加成功: {job.name} ({torrent_hash})")
        elif state.outcome == ConvergenceOutcome.ABANDONED:
            self._count(total_abandoned=1)
            self._log('warning',
                      f"[{client.name}] 汇报超时已删除: {job.name} ({torrent_hash}, {state.attempts} 次)")
        else:
            self._log('warning',
                      f"[{client.name}] 汇报超时已保留: {job.name} ({torrent_hash}, {state.attempts} 次)")

        return result


def create_qbittorrent_action(qb_manager: QBManager, db=None) -> QBittorrentAction:
    logger = logging.getLogger("qbittorrent_action")
    return QBittorrentAction(qb_manager, db, logger=logger)
