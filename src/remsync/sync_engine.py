from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import TypeAlias
from pathlib import Path, PurePosixPath

from .backup import backup_local_file
from .config import MTIME_TOLERANCE_MS, SyncTarget
from .errors import NotConnectedError
from .metadata_store import MetadataStore
from .models import DeletePolicy, SyncDirection, SyncOutcome, SyncTally
from .scanner_local import LocalScanner
from .scanner_remote import RemoteScanner
from .transfer_base import TransferClient, join_remote

logger = logging.getLogger(__name__)

ProgressCallback: TypeAlias = Callable[[int, int, str], None]


def _log_outcome(operation: str, path: str, ok: bool, error: str | None = None) -> None:
    if ok:
        logger.info("op=%s path=%s ok=true", operation, path)
    else:
        logger.error("op=%s path=%s ok=false error=%s", operation, path, error)


def needs_download(remote_mtime_ms: int, local_path: Path) -> bool:
    """Download when the local copy is missing or its mtime drifted too far."""
    try:
        local_mtime_ms = local_path.stat().st_mtime_ns // 1_000_000
    except FileNotFoundError:
        return True
    return abs(remote_mtime_ms - local_mtime_ms) > MTIME_TOLERANCE_MS


def _local_target(local_root: Path, relpath: str) -> Path:
    return local_root.joinpath(*PurePosixPath(relpath).parts)


def _under_deleted(relpath: str, deleted_dirs: list[str]) -> bool:
    return any(relpath.startswith(f"{prefix}/") for prefix in deleted_dirs)


class SyncEngine:
    """Reconcile one local root with one remote root over a single session.

    Every transfer is issued sequentially on `client`. A failing file is
    recorded in the outcome and the pass moves on.
    """

    def __init__(
        self,
        client: TransferClient,
        target: SyncTarget,
        metadata_store: MetadataStore | None = None,
    ) -> None:
        self.client = client
        self.target = target
        self.metadata_store = metadata_store or client.metadata_store
        self.local_root = target.local_root.expanduser().resolve()
        self.remote_root = target.remote_root

    def sync(
        self,
        direction: SyncDirection = SyncDirection.LOCAL_TO_REMOTE,
        delete_policy: DeletePolicy = DeletePolicy.OFF,
        progress_cb: ProgressCallback | None = None,
    ) -> SyncOutcome:
        if not self.local_root.is_dir():
            raise ValueError(f"Local directory does not exist: {self.local_root}")
        if not self.client.is_connected():
            raise NotConnectedError("transfer client is not connected")

        tally = SyncTally()
        logger.info(
            "sync %s <-> %s direction=%s delete=%s",
            self.local_root,
            self.remote_root,
            direction.value,
            delete_policy.value,
        )

        if direction.pushes:
            self._push(tally, progress_cb)
        if direction.pulls:
            self._pull(tally, progress_cb)
        if delete_policy.deletes_remote:
            self._delete_on_remote(tally)
        if delete_policy.deletes_local:
            self._delete_on_local(tally)

        outcome = tally.freeze()
        logger.info(
            "sync finished uploaded=%d downloaded=%d deleted=%d failed=%d",
            outcome.uploaded,
            outcome.downloaded,
            outcome.deleted,
            len(outcome.failed),
        )
        return outcome

    def _scan_local(self):
        return LocalScanner(self.local_root, self.target.ignore).scan()

    def _push(self, tally: SyncTally, progress_cb: ProgressCallback | None) -> None:
        files = list(self._scan_local().files.values())
        total = len(files)
        logger.info("local -> remote: %d file(s)", total)
        for index, record in enumerate(files, start=1):
            remote_path = join_remote(self.remote_root, record.relpath)
            if progress_cb is not None:
                progress_cb(index, total, os.path.basename(record.path))
            try:
                self.client.upload_file(record.path, remote_path)
            except Exception as exc:  # noqa: BLE001
                tally.fail(record.path, "upload")
                _log_outcome("upload", record.relpath, False, str(exc))
                continue
            tally.uploaded += 1
            _log_outcome("upload", record.relpath, True)

    def _pull(self, tally: SyncTally, progress_cb: ProgressCallback | None) -> None:
        logger.info("remote -> local: walking %s", self.remote_root)
        scanner = RemoteScanner(self.client, self.remote_root, self.target.ignore)
        backup_root = self.target.backup_dir
        for entry in scanner.walk():
            local_path = _local_target(self.local_root, entry.relpath)
            descriptor = entry.descriptor
            if descriptor.is_directory:
                try:
                    local_path.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    tally.fail(descriptor.path, "mkdir_local")
                    _log_outcome("mkdir_local", entry.relpath, False, str(exc))
                continue

            try:
                if not needs_download(descriptor.modify_time, local_path):
                    continue
                if progress_cb is not None:
                    progress_cb(tally.downloaded + 1, 0, descriptor.name)
                if backup_root is not None and local_path.exists():
                    backup_local_file(local_path, backup_root, descriptor.path)
                self.client.download_file(descriptor.path, local_path)
            except Exception as exc:  # noqa: BLE001
                tally.fail(descriptor.path, "download")
                _log_outcome("download", entry.relpath, False, str(exc))
                continue
            tally.downloaded += 1
            _log_outcome("download", entry.relpath, True)

    def _strict_remote_listing(self, tally: SyncTally):
        scanner = RemoteScanner(
            self.client, self.remote_root, self.target.ignore, strict=True
        )
        try:
            return list(scanner.walk())
        except Exception as exc:  # noqa: BLE001
            tally.fail(self.remote_root, "list")
            _log_outcome("list", self.remote_root, False, str(exc))
            return None

    def _delete_on_remote(self, tally: SyncTally) -> None:
        remote_entries = self._strict_remote_listing(tally)
        if remote_entries is None:
            return
        local_relpaths = self._scan_local().relpaths()
        deleted_dirs: list[str] = []
        for entry in remote_entries:
            if entry.relpath in local_relpaths:
                continue
            if _under_deleted(entry.relpath, deleted_dirs):
                continue
            descriptor = entry.descriptor
            try:
                self.client.delete_remote(descriptor.path, descriptor.is_directory)
            except Exception as exc:  # noqa: BLE001
                tally.fail(descriptor.path, "delete_remote")
                _log_outcome("delete_remote", entry.relpath, False, str(exc))
                continue
            if descriptor.is_directory:
                deleted_dirs.append(entry.relpath)
            tally.deleted += 1
            _log_outcome("delete_remote", entry.relpath, True)

    def _delete_on_local(self, tally: SyncTally) -> None:
        remote_entries = self._strict_remote_listing(tally)
        if remote_entries is None:
            return
        remote_files = {
            entry.relpath for entry in remote_entries if not entry.descriptor.is_directory
        }
        backup_root = self.target.backup_dir
        for record in self._scan_local().files.values():
            if record.relpath in remote_files:
                continue
            local_path = Path(record.path)
            try:
                if backup_root is not None:
                    backup_local_file(local_path, backup_root)
                local_path.unlink()
            except OSError as exc:
                tally.fail(record.path, "delete_local")
                _log_outcome("delete_local", record.relpath, False, str(exc))
                continue
            if self.metadata_store is not None:
                self.metadata_store.remove_transfer(local_path)
            tally.deleted += 1
            _log_outcome("delete_local", record.relpath, True)
