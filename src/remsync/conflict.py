from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .metadata_store import MetadataStore
from .models import ConflictDecision, FileMetadataRecord, RemoteAttributes
from .transfer_base import TransferClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SingleUploadResult:
    decision: ConflictDecision
    uploaded: bool
    stored: FileMetadataRecord | None = None
    remote: RemoteAttributes | None = None

    @property
    def conflict(self) -> bool:
        return self.decision == ConflictDecision.CONFLICT


def classify_conflict(
    stored: FileMetadataRecord | None,
    remote: RemoteAttributes | None,
    *,
    force: bool = False,
) -> ConflictDecision:
    """Decide whether a local edit may be pushed over the current remote file.

    The remote side is considered untouched when its modify time and size
    still equal what was recorded at the last transfer. Anything else is a
    conflict unless the caller forces the upload.
    """
    if force:
        return ConflictDecision.FORCE
    if stored is None or remote is None:
        return ConflictDecision.PROCEED
    if (
        stored.remote_modify_time == remote.modify_time
        and stored.remote_file_size == remote.size
    ):
        return ConflictDecision.PROCEED
    return ConflictDecision.CONFLICT


def upload_with_conflict_check(
    client: TransferClient,
    store: MetadataStore,
    local_path: str | Path,
    remote_path: str,
    *,
    force: bool = False,
) -> SingleUploadResult:
    stored = store.read_transfer(local_path)
    remote = client.try_stat(remote_path)
    decision = classify_conflict(stored, remote, force=force)
    if decision == ConflictDecision.CONFLICT:
        assert stored is not None and remote is not None
        logger.warning(
            "conflict on %s: recorded mtime=%s size=%s, remote mtime=%s size=%s",
            remote_path,
            stored.remote_modify_time,
            stored.remote_file_size,
            remote.modify_time,
            remote.size,
        )
        return SingleUploadResult(
            decision=decision, uploaded=False, stored=stored, remote=remote
        )
    uploaded = client.upload_file(local_path, remote_path)
    return SingleUploadResult(
        decision=decision, uploaded=uploaded, stored=stored, remote=remote
    )
