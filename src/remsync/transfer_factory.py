from __future__ import annotations

from .config import SyncTarget
from .metadata_store import MetadataStore
from .models import Protocol
from .transfer_base import TransferClient
from .transfer_ftp import FtpTransferClient
from .transfer_sftp import SftpTransferClient


def make_client(
    target: SyncTarget, metadata_store: MetadataStore | None = None
) -> TransferClient:
    """Build an unconnected client for the target's protocol."""
    store = metadata_store or MetadataStore(target.metadata_dir)
    if target.protocol == Protocol.SFTP:
        return SftpTransferClient(store)
    return FtpTransferClient(store)


def open_client(
    target: SyncTarget, metadata_store: MetadataStore | None = None
) -> TransferClient:
    client = make_client(target, metadata_store)
    client.connect(target)
    return client
