#!/usr/bin/env python3
"""
数据库管理模块

- config: 键值配置（汇报确认的时间参数等）
- client_rules: 每个qB实例的添加规则（不保存账号密码）
- logs / stats: 自动添加日志与计数
"""

import sqlite3
import threading
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional
from contextlib import contextmanager

from admission_gate import ClientRules


STAT_COLUMNS = ('total_added', 'total_deferred', 'total_converged', 'total_abandoned')


class Database:
    """SQLite数据库管理"""

    def __init__(self, db_path: str = 'qbit_autoadd.db'):
        self.db_path = db_path
        self._local = threading.local()
        self._init_db()

    @contextmanager
    def get_conn(self):
        """获取线程本地的数据库连接"""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._local.conn.row_factory = sqlite3.Row
        try:
            yield self._local.conn
        except Exception:
            self._local.conn.rollback()
            raise

    def close(self):
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def _init_db(self):
        """初始化数据库表"""
        with self.get_conn() as conn:
            cursor = conn.cursor()

            # 配置表
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS config (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            ''')

            # 添加规则表
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS client_rules (
                    instance_id INTEGER PRIMARY KEY,
                    enabled INTEGER DEFAULT 0,
                    max_active_downloads INTEGER DEFAULT 0,
                    ignore_slow_torrents INTEGER DEFAULT 0,
                    download_speed_threshold INTEGER DEFAULT 0,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            # 日志表
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    level TEXT NOT NULL,
                    message TEXT NOT NULL,
                    category TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            # 统计表
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS stats (
                    id INTEGER PRIMARY KEY DEFAULT 1,
                    total_added INTEGER DEFAULT 0,
                    total_deferred INTEGER DEFAULT 0,
                    total_converged INTEGER DEFAULT 0,
                    total_abandoned INTEGER DEFAULT 0,
                    start_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            # 初始化统计
            cursor.execute('INSERT OR IGNORE INTO stats (id) VALUES (1)')

            conn.commit()

    # ════════════════════════════════════════════════════════════════════
    # 配置管理
    # ════════════════════════════════════════════════════════════════════
    def get_config(self, key: str, default: str = None) -> Optional[str]:
        """获取配置"""
        with self.get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT value FROM config WHERE key = ?', (key,))
            row = cursor.fetchone()
            return row['value'] if row else default

    def set_config(self, key: str, value: str):
        """设置配置"""
        with self.get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)
            ''', (key, value))
            conn.commit()

    def get_all_config(self) -> Dict[str, str]:
        """获取所有配置"""
        with self.get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT key, value FROM config')
            return {row['key']: row['value'] for row in cursor.fetchall()}

    # ════════════════════════════════════════════════════════════════════
    # 添加规则
    # ════════════════════════════════════════════════════════════════════
    def get_client_rules(self, instance_id: int) -> ClientRules:
        """获取实例的添加规则，未配置时返回关闭状态的规则"""
        with self.get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM client_rules WHERE instance_id = ?', (instance_id,))
            row = cursor.fetchone()
        return ClientRules.from_dict(dict(row) if row else None)

    def set_client_rules(self, instance_id: int, rules: ClientRules):
        """保存实例的添加规则"""
        with self.get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT OR REPLACE INTO client_rules
                (instance_id, enabled, max_active_downloads, ignore_slow_torrents,
                 download_speed_threshold, updated_at)
                VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ''', (instance_id, int(rules.enabled), rules.max_active_downloads,
                  int(rules.ignore_slow_torrents), rules.download_speed_threshold))
            conn.commit()

    def delete_client_rules(self, instance_id: int):
        """删除实例的添加规则"""
        with self.get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute('DELETE FROM client_rules WHERE instance_id = ?', (instance_id,))
            conn.commit()

    # ════════════════════════════════════════════════════════════════════
    # 日志管理
    # ════════════════════════════════════════════════════════════════════
    def add_log(self, level: str, message: str, category: str = None):
        """添加日志"""
        if not category:
            category = 'autoadd' if '[AutoAdd]' in message else 'general'
        with self.get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO logs (level, message, category) VALUES (?, ?, ?)
            ''', (level, message, category))
            conn.commit()

    def get_logs(self, limit: int = 100, level: str = None, category: str = None) -> List[Dict]:
        """获取日志"""
        query = 'SELECT * FROM logs'
        conditions = []
        params: List[Any] = []
        if category:
            conditions.append('category = ?')
            params.append(category)
        if level:
            conditions.append('level = ?')
            params.append(level)
        if conditions:
            query += ' WHERE ' + ' AND '.join(conditions)
        query += ' ORDER BY id DESC LIMIT ?'
        params.append(limit)

        with self.get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            results = []
            for row in cursor.fetchall():
                item = dict(row)
                item['time'] = self._format_log_time(item.get('created_at'))
                results.append(item)
            return results

    @staticmethod
    def _format_log_time(value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value).strftime('%Y-%m-%d %H:%M:%S')
        if isinstance(value, str):
            for fmt in ('%Y-%m-%d %H:%M:%S', '%Y-%m-%d %H:%M:%S.%f'):
                try:
                    dt = datetime.strptime(value, fmt)
                    dt = dt.replace(tzinfo=timezone.utc).astimezone()
                    return dt.strftime('%Y-%m-%d %H:%M:%S')
                except ValueError:
                    continue
            return value
        return str(value)

    # ════════════════════════════════════════════════════════════════════
    # 统计管理
    # ════════════════════════════════════════════════════════════════════
    def get_stats(self) -> Dict:
        """获取统计信息"""
        with self.get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM stats WHERE id = 1')
            row = cursor.fetchone()
            return dict(row) if row else {}

    def update_stats(self, **kwargs):
        """更新统计信息（增量更新）"""
        with self.get_conn() as conn:
            cursor = conn.cursor()
            for key, value in kwargs.items():
                if key not in STAT_COLUMNS:
                    raise ValueError(f"未知统计字段: {key}")
                cursor.execute(f'''
                    UPDATE stats SET {key} = {key} + ?, updated_at = CURRENT_TIMESTAMP
                    WHERE id = 1
                ''', (value,))
            conn.commit()
