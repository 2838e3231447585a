from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Protocol(str, Enum):
    SFTP = "sftp"
    FTP = "ftp"
    FTPS = "ftps"


class SyncDirection(str, Enum):
    LOCAL_TO_REMOTE = "local-to-remote"
    REMOTE_TO_LOCAL = "remote-to-local"
    BOTH = "both"

    @property
    def pushes(self) -> bool:
        return self in {SyncDirection.LOCAL_TO_REMOTE, SyncDirection.BOTH}

    @property
    def pulls(self) -> bool:
        return self in {SyncDirection.REMOTE_TO_LOCAL, SyncDirection.BOTH}


class DeletePolicy(str, Enum):
    OFF = "off"
    REMOTE = "remote"
    LOCAL = "local"
    BOTH = "both"

    @property
    def deletes_remote(self) -> bool:
        return self in {DeletePolicy.REMOTE, DeletePolicy.BOTH}

    @property
    def deletes_local(self) -> bool:
        return self in {DeletePolicy.LOCAL, DeletePolicy.BOTH}

    @classmethod
    def for_direction(
        cls, direction: SyncDirection, delete_removed: bool
    ) -> DeletePolicy:
        """Mirror deletions along every direction the pass runs in."""
        if not delete_removed:
            return cls.OFF
        if direction == SyncDirection.BOTH:
            return cls.BOTH
        if direction == SyncDirection.LOCAL_TO_REMOTE:
            return cls.REMOTE
        return cls.LOCAL


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class Capability(str, Enum):
    CONTENT_SEARCH = "content_search"
    NAME_SEARCH = "name_search"
    PERMISSION_CHANGE = "permission_change"
    REMOTE_COMMAND = "remote_command"


class ConflictDecision(str, Enum):
    PROCEED = "proceed"
    CONFLICT = "conflict"
    FORCE = "force"


@dataclass(frozen=True)
class FileMetadataRecord:
    remote_path: str
    remote_modify_time: int
    remote_file_size: int
    local_path: str
    download_time: int
    config_name: str | None = None


@dataclass(frozen=True)
class RemoteFileDescriptor:
    name: str
    path: str
    is_directory: bool
    size: int | None
    modify_time: int
    mode: int | None = None


@dataclass(frozen=True)
class RemoteAttributes:
    modify_time: int
    size: int


@dataclass(frozen=True)
class LocalFileRecord:
    relpath: str
    path: str
    size: int
    mtime_ms: int


@dataclass(frozen=True)
class FailedItem:
    path: str
    operation: str


@dataclass(frozen=True)
class SyncOutcome:
    uploaded: int = 0
    downloaded: int = 0
    deleted: int = 0
    failed: tuple[FailedItem, ...] = ()

    @property
    def failed_paths(self) -> list[str]:
        return [item.path for item in self.failed]


@dataclass
class SyncTally:
    uploaded: int = 0
    downloaded: int = 0
    deleted: int = 0
    failed: list[FailedItem] = field(default_factory=list)

    def fail(self, path: str, operation: str) -> None:
        self.failed.append(FailedItem(path=path, operation=operation))

    def freeze(self) -> SyncOutcome:
        return SyncOutcome(
            uploaded=self.uploaded,
            downloaded=self.downloaded,
            deleted=self.deleted,
            failed=tuple(self.failed),
        )


@dataclass(frozen=True)
class CommandResult:
    exit_status: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class ContentMatch:
    file: RemoteFileDescriptor
    line: int
    text: str
