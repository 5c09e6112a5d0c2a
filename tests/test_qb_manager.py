from unittest.mock import MagicMock

import pytest
import qbittorrentapi

from exceptions import (
    ClientUnreachableError,
    DeleteFailedError,
    ObservationFailedError,
    ReannounceFailedError,
    SubmissionFailedError,
)
from qb_manager import QBClientHandle, QBManager, TrackerStatus
from submission import TorrentJob, build_add_options

HASH = "b" * 40


@pytest.fixture
def api():
    return MagicMock()


@pytest.fixture
def handle(api):
    return QBClientHandle(api, "qb1")


def test_active_downloads_uses_downloading_filter(handle, api):
    api.torrents_info.return_value = [{"hash": HASH}]

    assert handle.get_active_downloads() == [{"hash": HASH}]
    api.torrents_info.assert_called_once_with(status_filter="downloading")


def test_transfer_info(handle, api):
    api.transfer_info.return_value = {"dl_info_speed": 2048, "up_info_speed": 10}

    info = handle.get_transfer_info()

    assert info.dl_info_speed == 2048
    assert info.up_info_speed == 10


def test_trackers_are_parsed(handle, api):
    api.torrents_trackers.return_value = [
        {"url": "** [DHT] **", "status": 0, "msg": ""},
        {"url": "https://t.example/announce", "status": 2, "msg": "ok"},
    ]

    result = handle.get_torrent_trackers(HASH)

    assert [t.status for t in result] == [TrackerStatus.DISABLED, TrackerStatus.WORKING]
    api.torrents_trackers.assert_called_once_with(torrent_hash=HASH)


def test_add_translates_options(handle, api):
    api.torrents_add.return_value = "Ok."

    handle.add_torrent(b"data", {
        "paused": "true",
        "savepath": "/data",
        "autoTMM": "false",
        "category": "tv",
        "tags": "a,b",
        "upLimit": "100",
        "dlLimit": "200",
    })

    api.torrents_add.assert_called_once_with(
        torrent_files=b"data",
        is_paused=True,
        save_path="/data",
        use_auto_torrent_management=False,
        category="tv",
        tags="a,b",
        upload_limit=100,
        download_limit=200,
    )


def test_add_with_empty_options_passes_only_payload(handle, api):
    api.torrents_add.return_value = "Ok."

    handle.add_torrent(b"data", {})

    api.torrents_add.assert_called_once_with(torrent_files=b"data")


def test_add_rejected_by_client(handle, api):
    api.torrents_add.return_value = "Fails."

    with pytest.raises(SubmissionFailedError):
        handle.add_torrent(b"data", {})


def test_add_unknown_option(handle, api):
    with pytest.raises(SubmissionFailedError):
        handle.add_torrent(b"data", {"bogus": "1"})
    api.torrents_add.assert_not_called()


def test_reannounce_and_delete(handle, api):
    handle.reannounce(HASH)
    handle.delete_torrent(HASH)

    api.torrents_reannounce.assert_called_once_with(torrent_hashes=HASH)
    api.torrents_delete.assert_called_once_with(torrent_hashes=HASH, delete_files=False)


@pytest.mark.parametrize("error", [
    qbittorrentapi.APIConnectionError("connection refused"),
    qbittorrentapi.LoginFailed("bad credentials"),
    qbittorrentapi.Forbidden403Error("forbidden"),
    qbittorrentapi.Unauthorized401Error("unauthorized"),
])
def test_connection_and_auth_errors_are_unreachable(handle, api, error):
    api.torrents_trackers.side_effect = error

    with pytest.raises(ClientUnreachableError) as exc_info:
        handle.get_torrent_trackers(HASH)
    assert exc_info.value.__cause__ is error
    assert exc_info.value.torrent_hash == HASH


@pytest.mark.parametrize("method, api_method, args, error_cls", [
    ("get_active_downloads", "torrents_info", (), ObservationFailedError),
    ("get_transfer_info", "transfer_info", (), ObservationFailedError),
    ("get_torrent_trackers", "torrents_trackers", (HASH,), ObservationFailedError),
    ("add_torrent", "torrents_add", (b"data", {}), SubmissionFailedError),
    ("reannounce", "torrents_reannounce", (HASH,), ReannounceFailedError),
    ("delete_torrent", "torrents_delete", (HASH,), DeleteFailedError),
])
def test_http_errors_map_to_operation_kind(handle, api, method, api_method, args, error_cls):
    getattr(api, api_method).side_effect = qbittorrentapi.NotFound404Error("not found")

    with pytest.raises(error_cls):
        getattr(handle, method)(*args)


def test_manager_connect_and_get_handle():
    api = MagicMock()
    api.app_version.return_value = "v4.6.0"
    factory = MagicMock(return_value=api)
    manager = QBManager(client_factory=factory)

    ok, msg = manager.connect({"id": 1, "name": "home", "host": "localhost",
                               "port": 8080, "username": "admin", "password": "pw"})

    assert ok and "v4.6.0" in msg
    api.auth_log_in.assert_called_once_with()
    handle = manager.get_handle(1)
    assert handle.name == "home"
    assert handle.client is api


def test_manager_connect_failure():
    api = MagicMock()
    api.auth_log_in.side_effect = qbittorrentapi.LoginFailed("bad")
    manager = QBManager(client_factory=MagicMock(return_value=api))

    ok, _ = manager.connect({"id": 1, "name": "home", "host": "localhost", "port": 8080})

    assert not ok
    assert not manager.is_connected(1)
    with pytest.raises(ClientUnreachableError):
        manager.get_handle(1)


def test_manager_disconnect():
    api = MagicMock()
    manager = QBManager(client_factory=MagicMock(return_value=api))
    manager.connect({"id": 2, "name": "seedbox", "host": "h", "port": 1})

    manager.disconnect(2)

    api.auth_log_out.assert_called_once_with()
    assert manager.get_instance(2) is None
    assert manager.get_connected_instances() == []


def test_rate_caps_reach_library_as_bytes_per_second(handle, api):
    api.torrents_add.return_value = "Ok."
    job = TorrentJob(limit_upload_speed=100 * 1024, limit_download_speed=512 * 1024)

    handle.add_torrent(b"data", build_add_options(job))

    kwargs = api.torrents_add.call_args.kwargs
    assert kwargs["upload_limit"] == 100 * 1024
    assert kwargs["download_limit"] == 512 * 1024
