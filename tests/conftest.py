"""
Shared test doubles for the auto-add cycle.

FakeClient implements the QBClientHandle operations in memory and records
every call so tests can assert on the exact remote traffic.
"""

from typing import Dict, List, Optional

import pytest

from qb_manager import TrackerEntry, TrackerStatus, TransferInfo
from reannounce_engine import ReannounceSettings


def trackers(*statuses: TrackerStatus) -> List[TrackerEntry]:
    return [TrackerEntry(url=f"udp://tracker{i}", status=s) for i, s in enumerate(statuses)]


class FakeClient:
    def __init__(self, name: str = "qb1", active: int = 0, dl_speed: int = 0,
                 tracker_responses: Optional[List[List[TrackerEntry]]] = None):
        self.name = name
        self.active = [{"hash": f"{i:040x}", "state": "downloading"} for i in range(active)]
        self.dl_speed = dl_speed
        # one list per poll; the last one repeats once exhausted
        self.tracker_responses = tracker_responses or [trackers(TrackerStatus.NOT_CONTACTED)]
        self.errors: Dict[str, Exception] = {}
        self.calls: list = []

    def _record(self, op: str, *args):
        self.calls.append((op,) + args)
        if op in self.errors:
            raise self.errors[op]

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def get_active_downloads(self):
        self._record("get_active_downloads")
        return list(self.active)

    def get_transfer_info(self) -> TransferInfo:
        self._record("get_transfer_info")
        return TransferInfo(dl_info_speed=self.dl_speed)

    def add_torrent(self, torrent_file: bytes, options: Dict[str, str]):
        self._record("add_torrent", torrent_file, dict(options))

    def get_torrent_trackers(self, torrent_hash: str) -> List[TrackerEntry]:
        polls = self.count("get_torrent_trackers")
        self._record("get_torrent_trackers", torrent_hash)
        return self.tracker_responses[min(polls, len(self.tracker_responses) - 1)]

    def reannounce(self, torrent_hash: str):
        self._record("reannounce", torrent_hash)

    def delete_torrent(self, torrent_hash: str, delete_files: bool = False):
        self._record("delete_torrent", torrent_hash, delete_files)


@pytest.fixture
def fast_settings() -> ReannounceSettings:
    return ReannounceSettings(initial_delay=0, interval=0, max_attempts=50, grace_delay=0)


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()
