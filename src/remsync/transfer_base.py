from __future__ import annotations

import logging
import posixpath
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import SyncTarget
from .errors import NotConnectedError, ProtocolUnsupportedError
from .metadata_store import MetadataStore
from .models import (
    Capability,
    CommandResult,
    ContentMatch,
    RemoteAttributes,
    RemoteFileDescriptor,
    SessionState,
)

logger = logging.getLogger(__name__)


@dataclass
class TransferSession:
    """One live connection to a remote endpoint and its reconnection state."""

    handle: Any = None
    state: SessionState = SessionState.DISCONNECTED
    last_config: SyncTarget | None = None
    reconnecting: bool = False
    known_dirs: set[str] = field(default_factory=set)
    guard: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def connected(self) -> bool:
        return self.state == SessionState.CONNECTED and self.handle is not None


def join_remote(root: str, relpath: str) -> str:
    if not relpath or relpath == ".":
        return root
    return f"{root.rstrip('/')}/{relpath.lstrip('/')}"


def remote_relpath(root: str, path: str) -> str:
    prefix = root.rstrip("/")
    if prefix and path.startswith(prefix):
        return path[len(prefix) :].lstrip("/")
    return path.lstrip("/")


def remote_prefixes(path: str) -> list[str]:
    """Return every ancestor-or-self of an absolute or relative remote path."""
    normalized = posixpath.normpath(path)
    if normalized in {"/", "."}:
        return []
    parts = [p for p in normalized.split("/") if p]
    prefixes: list[str] = []
    current = "/" if normalized.startswith("/") else ""
    for part in parts:
        current = f"{current}{part}" if current in {"", "/"} else f"{current}/{part}"
        prefixes.append(current)
    return prefixes


class TransferClient(ABC):
    """Uniform transfer surface over one physical connection.

    Subclasses implement the `_open`/`_close` pair and the protocol
    primitives. Optional capabilities are advertised through `supports`; a
    variant lacking one raises `ProtocolUnsupportedError` before any I/O.
    """

    protocol_name = "remote"
    capabilities: frozenset[Capability] = frozenset()

    def __init__(self, metadata_store: MetadataStore | None = None) -> None:
        self.session = TransferSession()
        self.metadata_store = metadata_store

    # connection lifecycle

    @abstractmethod
    def _open(self, config: SyncTarget) -> Any:
        """Open a transport for `config` and return its handle."""

    @abstractmethod
    def _close(self, handle: Any) -> None:
        """Close `handle`; must not raise."""

    @abstractmethod
    def _handle_alive(self, handle: Any) -> bool:
        """Report whether the underlying transport is still usable."""

    def connect(self, config: SyncTarget) -> None:
        self.session.state = SessionState.CONNECTING
        try:
            handle = self._open(config)
        except Exception:
            self.session.state = SessionState.DISCONNECTED
            self.session.handle = None
            raise
        self.session.handle = handle
        self.session.last_config = config
        self.session.known_dirs.clear()
        self.session.state = SessionState.CONNECTED
        logger.info(
            "connected to %s:%s over %s",
            config.host,
            config.effective_port,
            self.protocol_name,
        )

    def disconnect(self) -> None:
        handle = self.session.handle
        self.session.handle = None
        self.session.state = SessionState.DISCONNECTED
        self.session.last_config = None
        self.session.known_dirs.clear()
        if handle is not None:
            self._close(handle)
            logger.info("disconnected")

    def is_connected(self) -> bool:
        if not self.session.connected:
            return False
        return self._handle_alive(self.session.handle)

    def reconnect(self) -> bool:
        """Re-open the session with the last configuration.

        Only one attempt runs at a time: a request arriving while another is
        in flight returns False without doing anything.
        """
        with self.session.guard:
            config = self.session.last_config
            if self.session.reconnecting or config is None:
                return False
            self.session.reconnecting = True
            self.session.state = SessionState.RECONNECTING
        try:
            stale = self.session.handle
            self.session.handle = None
            self.session.known_dirs.clear()
            if stale is not None:
                self._close(stale)
            logger.info("reconnecting to %s", config.host)
            try:
                handle = self._open(config)
            except Exception as exc:  # noqa: BLE001
                logger.error("reconnect to %s failed: %s", config.host, exc)
                self.session.state = SessionState.DISCONNECTED
                return False
            self.session.handle = handle
            self.session.state = SessionState.CONNECTED
            logger.info("reconnected to %s", config.host)
            return True
        finally:
            with self.session.guard:
                self.session.reconnecting = False

    def _require_handle(self) -> Any:
        if not self.is_connected():
            raise NotConnectedError(
                f"{self.protocol_name.upper()} session is not connected"
            )
        return self.session.handle

    def _open_handle(self) -> Any:
        """Return the session handle without a liveness round trip."""
        if not self.session.connected:
            raise NotConnectedError(
                f"{self.protocol_name.upper()} session is not connected"
            )
        return self.session.handle

    @property
    def server_name(self) -> str | None:
        config = self.session.last_config
        return config.server_name if config is not None else None

    # capabilities

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def _require_capability(self, capability: Capability) -> None:
        if capability not in self.capabilities:
            raise ProtocolUnsupportedError(capability, self.protocol_name)

    # protocol primitives

    @abstractmethod
    def list_directory_strict(self, remote_path: str) -> list[RemoteFileDescriptor]:
        """List `remote_path` in server order; errors propagate."""

    @abstractmethod
    def stat(self, remote_path: str) -> RemoteAttributes:
        """Return the remote modify time and size; errors propagate."""

    @abstractmethod
    def _put(self, local_path: Path, remote_path: str) -> None: ...

    @abstractmethod
    def _get(self, remote_path: str, local_path: Path) -> None: ...

    @abstractmethod
    def _path_is_dir(self, remote_path: str) -> bool | None:
        """True/False for an existing entry, None when it does not exist."""

    @abstractmethod
    def _mkdir(self, remote_path: str) -> None: ...

    @abstractmethod
    def _remove_file(self, remote_path: str) -> None: ...

    @abstractmethod
    def _remove_empty_dir(self, remote_path: str) -> None: ...

    @abstractmethod
    def _write_bytes(self, remote_path: str, content: bytes) -> None: ...

    @abstractmethod
    def get_permissions(self, remote_path: str) -> str: ...

    def try_stat(self, remote_path: str) -> RemoteAttributes | None:
        try:
            return self.stat(remote_path)
        except FileNotFoundError:
            return None

    def list_directory(self, remote_path: str) -> list[RemoteFileDescriptor]:
        try:
            return self.list_directory_strict(remote_path)
        except Exception as exc:  # noqa: BLE001
            logger.warning("listing %s failed: %s", remote_path, exc)
            return []

    # transfers

    def _record(self, local_path: Path, remote_path: str) -> None:
        if self.metadata_store is None:
            return
        try:
            attrs = self.stat(remote_path)
        except Exception as exc:  # noqa: BLE001
            logger.warning("could not stat %s for metadata: %s", remote_path, exc)
            return
        self.metadata_store.record_transfer(
            local_path,
            remote_path,
            attrs.modify_time,
            attrs.size,
            self.server_name,
        )

    def upload_file(self, local_path: str | Path, remote_path: str) -> bool:
        self._require_handle()
        source = Path(local_path)
        parent = posixpath.dirname(remote_path)
        if parent:
            self._ensure_directory(parent)
        logger.info("uploading %s -> %s", source, remote_path)
        self._put(source, remote_path)
        self._record(source, remote_path)
        return True

    def download_file(self, remote_path: str, local_path: str | Path) -> bool:
        self._require_handle()
        destination = Path(local_path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        logger.info("downloading %s -> %s", remote_path, destination)
        self._get(remote_path, destination)
        self._record(destination, remote_path)
        return True

    # directories

    def ensure_remote_directory(self, remote_path: str) -> None:
        self._require_handle()
        self._ensure_directory(remote_path)

    def _ensure_directory(self, remote_path: str) -> None:
        normalized = posixpath.normpath(remote_path)
        if normalized in {"/", "."} or normalized in self.session.known_dirs:
            return
        try:
            if self._path_is_dir(normalized):
                self.session.known_dirs.add(normalized)
                return
        except Exception as exc:  # noqa: BLE001
            logger.debug("existence check for %s failed: %s", normalized, exc)

        for segment in remote_prefixes(normalized):
            if segment in self.session.known_dirs:
                continue
            try:
                exists = self._path_is_dir(segment)
            except Exception:  # noqa: BLE001
                exists = None
            if not exists:
                try:
                    self._mkdir(segment)
                except Exception:
                    # another uploader may have created it in the meantime
                    if not self._path_is_dir(segment):
                        raise
            self.session.known_dirs.add(segment)

    def create_remote_folder(self, remote_path: str) -> None:
        self._require_handle()
        self._mkdir(remote_path)
        self.session.known_dirs.add(posixpath.normpath(remote_path))
        logger.info("created folder %s", remote_path)

    def create_remote_file(self, remote_path: str, content: str = "") -> None:
        self._require_handle()
        self._write_bytes(remote_path, content.encode("utf-8"))
        logger.info("created file %s", remote_path)

    def delete_remote(self, remote_path: str, is_directory: bool = False) -> None:
        self._require_handle()
        if not is_directory:
            self._remove_file(remote_path)
            logger.info("deleted %s", remote_path)
            return

        # Collect the tree first, then remove deepest entries before parents.
        directories = [remote_path]
        files: list[str] = []
        stack = [remote_path]
        while stack:
            current = stack.pop()
            for entry in self.list_directory_strict(current):
                if entry.is_directory:
                    directories.append(entry.path)
                    stack.append(entry.path)
                else:
                    files.append(entry.path)
        for path in files:
            self._remove_file(path)
        for path in reversed(directories):
            self._remove_empty_dir(path)
            self.session.known_dirs.discard(posixpath.normpath(path))
        logger.info("deleted directory %s", remote_path)

    # optional capabilities

    def exec_command(self, command: str) -> CommandResult:
        self._require_capability(Capability.REMOTE_COMMAND)
        raise NotImplementedError

    def change_permissions(self, remote_path: str, mode: str) -> None:
        self._require_capability(Capability.PERMISSION_CHANGE)
        raise NotImplementedError

    def search_by_name(
        self,
        remote_root: str,
        pattern: str,
        is_regex: bool = False,
        max_results: int = 100,
    ) -> list[RemoteFileDescriptor]:
        self._require_capability(Capability.NAME_SEARCH)
        raise NotImplementedError

    def search_content(
        self,
        remote_root: str,
        text: str,
        is_regex: bool = False,
        file_pattern: str = "*",
        max_results: int = 50,
    ) -> list[ContentMatch]:
        self._require_capability(Capability.CONTENT_SEARCH)
        raise NotImplementedError
