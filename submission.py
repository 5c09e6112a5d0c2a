#!/usr/bin/env python3
"""
种子提交

把任务声明的选项转换为 qB 接受的选项，只输出已设置的字段：
未设置的保存路径不能让 qB 切换到手动路径模式，未设置的限速也不能变成 0。
"""

import os
import re
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import requests

from exceptions import SubmissionFailedError


@dataclass
class TorrentJob:
    """待添加的种子任务"""
    name: str = ''
    torrent: Union[bytes, str] = b''        # 种子内容、本地路径或下载URL
    info_hash: str = ''
    save_path: str = ''
    category: str = ''
    tags: Union[str, List[str]] = ''
    paused: bool = False
    limit_upload_speed: int = 0             # 字节/秒，原样传给 qB
    limit_download_speed: int = 0           # 字节/秒
    ignore_rules: bool = False


def build_add_options(job: TorrentJob) -> Dict[str, str]:
    options: Dict[str, str] = {}

    if job.paused:
        options['paused'] = 'true'
    if job.save_path:
        options['savepath'] = job.save_path
        options['autoTMM'] = 'false'
    if job.category:
        options['category'] = job.category

    tags = ','.join(t.strip() for t in job.tags if t.strip()) if isinstance(job.tags, list) else job.tags
    if tags:
        options['tags'] = tags

    if job.limit_upload_speed and job.limit_upload_speed > 0:
        options['upLimit'] = str(int(job.limit_upload_speed))
    if job.limit_download_speed and job.limit_download_speed > 0:
        options['dlLimit'] = str(int(job.limit_download_speed))

    return options


class SubmissionDispatcher:
    def __init__(self, session: Optional[requests.Session] = None,
                 logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("submission")
        self._session = session
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({
                'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'
            })

    @staticmethod
    def _clean_url(url: str) -> str:
        """移除不可见字符和前后空白"""
        url = re.sub(r'[\ufeff\ufffe\u200b\u200c\u200d\u2060\x00-\x1f\x7f-\x9f]', '', url)
        return url.strip().strip('\u3000')

    def load_torrent(self, job: TorrentJob) -> bytes:
        """获取种子文件内容"""
        source = job.torrent
        if isinstance(source, (bytes, bytearray)):
            if not source:
                raise SubmissionFailedError(f"种子内容为空: {job.name}", job.info_hash or None)
            return bytes(source)

        source = self._clean_url(source or '')
        if source.lower().startswith(('http://', 'https://')):
            try:
                resp = self._session.get(source, timeout=30)
                resp.raise_for_status()
            except requests.exceptions.Timeout as e:
                raise SubmissionFailedError(f"下载种子超时: {job.name}", job.info_hash or None) from e
            except requests.exceptions.RequestException as e:
                raise SubmissionFailedError(
                    f"下载种子失败: {str(e)[:80]}", job.info_hash or None) from e

            content_type = resp.headers.get('content-type', '')
            if 'html' in content_type.lower():
                # 返回HTML一般是需要登录或passkey无效
                raise SubmissionFailedError(
                    f"下载种子返回HTML，可能需要登录: {job.name}", job.info_hash or None)
            return resp.content

        if not source or not os.path.isfile(source):
            raise SubmissionFailedError(f"种子文件不存在: {source or job.name}", job.info_hash or None)
        try:
            with open(source, 'rb') as f:
                return f.read()
        except OSError as e:
            raise SubmissionFailedError(f"读取种子文件失败: {e}", job.info_hash or None) from e

    def submit(self, job: TorrentJob, client) -> Optional[str]:
        """
        添加种子到qB

        Returns:
            种子hash，未知时为 None
        """
        options = build_add_options(job)
        self.logger.debug(f"[{client.name}] 添加选项: {options}")

        torrent_file = self.load_torrent(job)
        client.add_torrent(torrent_file, options)

        return job.info_hash or None
