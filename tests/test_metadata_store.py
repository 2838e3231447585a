from __future__ import annotations

import json
import os

import pytest

from remsync.metadata_store import MetadataStore, compute_storage_key


@pytest.mark.parametrize(
    ("left", "right"),
    [
        ("/a_c_b", "/a:b"),
        ("/a__b", "/a/b"),
        ("/a_u_b", "/a_b"),
        ("C:/x", "C_c_/x"),
        ("/x\\y", "/x_b_y"),
    ],
)
def test_storage_key_is_injective(left, right):
    assert compute_storage_key(left) != compute_storage_key(right)


def test_storage_key_is_flat():
    key = compute_storage_key("/home/me/site/index.html")
    assert os.sep not in key
    assert key == "__home__me__site__index.html.json"


def test_record_and_read_round_trip(tmp_path):
    store = MetadataStore(tmp_path / "meta")
    local = tmp_path / "site" / "a.txt"

    store.record_transfer(local, "/srv/a.txt", 1_700_000_000_000, 42, "deploy@example.com")
    record = store.read_transfer(local)

    assert record is not None
    assert record.remote_path == "/srv/a.txt"
    assert record.remote_modify_time == 1_700_000_000_000
    assert record.remote_file_size == 42
    assert record.local_path == str(local)
    assert record.config_name == "deploy@example.com"
    assert record.download_time > 0


def test_sidecar_uses_camel_case_keys(tmp_path):
    store = MetadataStore(tmp_path / "meta")
    local = tmp_path / "a.txt"

    store.record_transfer(local, "/srv/a.txt", 5, 6)

    raw = json.loads(store.metadata_path(local).read_text(encoding="utf-8"))
    assert set(raw) == {
        "remotePath",
        "remoteModifyTime",
        "remoteFileSize",
        "localPath",
        "downloadTime",
        "configName",
    }
    assert raw["configName"] is None


def test_later_transfer_overwrites_record(tmp_path):
    store = MetadataStore(tmp_path / "meta")
    local = tmp_path / "a.txt"

    store.record_transfer(local, "/srv/a.txt", 1, 1)
    store.record_transfer(local, "/srv/a.txt", 2, 3)

    record = store.read_transfer(local)
    assert (record.remote_modify_time, record.remote_file_size) == (2, 3)


def test_missing_or_corrupt_records_read_as_none(tmp_path):
    store = MetadataStore(tmp_path / "meta")
    local = tmp_path / "a.txt"
    assert store.read_transfer(local) is None

    store.metadata_path(local).parent.mkdir(parents=True)
    store.metadata_path(local).write_text("{not json", encoding="utf-8")
    assert store.read_transfer(local) is None

    store.metadata_path(local).write_text(json.dumps({"remotePath": "/x"}), encoding="utf-8")
    assert store.read_transfer(local) is None


def test_remove_transfer(tmp_path):
    store = MetadataStore(tmp_path / "meta")
    local = tmp_path / "a.txt"
    store.record_transfer(local, "/srv/a.txt", 1, 1)

    store.remove_transfer(local)
    store.remove_transfer(local)

    assert store.read_transfer(local) is None


def test_write_failure_is_logged_not_raised(tmp_path, caplog):
    blocker = tmp_path / "meta"
    blocker.write_text("a file where a directory should be", encoding="utf-8")
    store = MetadataStore(blocker)

    store.record_transfer(tmp_path / "a.txt", "/srv/a.txt", 1, 1)

    assert "metadata write failed" in caplog.text
