from __future__ import annotations

import ftplib
import io
import logging
import posixpath
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from remsync.config import SyncTarget
from remsync.metadata_store import MetadataStore
from remsync.models import Protocol
from remsync.transfer_ftp import FtpTransferClient
from remsync.transfer_sftp import SftpTransferClient

DEFAULT_REMOTE_MTIME = 1_700_000_000.0


@dataclass
class RemoteStat:
    st_mode: int
    st_atime: float
    st_mtime: float
    st_size: int = 0
    filename: str = ""


class _FakeChannel:
    def __init__(self, exit_status: int) -> None:
        self._exit_status = exit_status

    def recv_exit_status(self) -> int:
        return self._exit_status


class _FakeStream:
    def __init__(self, text: str, exit_status: int = 0) -> None:
        self._data = text.encode("utf-8")
        self.channel = _FakeChannel(exit_status)

    def read(self) -> bytes:
        return self._data


class _FakeWriteHandle:
    def __init__(self, sftp: FakeSFTPClient, path: str) -> None:
        self._sftp = sftp
        self._path = path
        self._buffer = io.BytesIO()

    def write(self, data: bytes) -> None:
        self._buffer.write(data)

    def __enter__(self) -> _FakeWriteHandle:
        return self

    def __exit__(self, *exc: object) -> None:
        self._sftp._store(self._path, self._buffer.getvalue())


class FakeSFTPClient:
    """In-memory remote filesystem with paramiko's SFTPClient surface."""

    def __init__(self) -> None:
        self.remote_files: dict[str, bytes] = {}
        self.remote_stats: dict[str, RemoteStat] = {}
        self.existing_dirs: set[str] = {"/"}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple] = []
        self.closed = False
        # writes stamp the remote mtime like a real server would
        self.clock = time.time

    def _check_failure(self, method: str, path: str) -> None:
        err = self.failures.get((method, path))
        if err is not None:
            raise err

    def _store(self, path: str, data: bytes) -> None:
        parent = posixpath.dirname(path) or "/"
        if parent not in self.existing_dirs:
            raise FileNotFoundError(f"no such directory: {parent}")
        self.remote_files[path] = data
        previous = self.remote_stats.get(path)
        mtime = self.clock()
        self.remote_stats[path] = RemoteStat(
            st_mode=previous.st_mode if previous is not None else 0o100644,
            st_atime=mtime,
            st_mtime=mtime,
            st_size=len(data),
        )

    def add_file(self, path: str, data: bytes = b"", *, mtime: float = DEFAULT_REMOTE_MTIME) -> None:
        self.add_dir(posixpath.dirname(path))
        self.remote_files[path] = data
        self.remote_stats[path] = RemoteStat(
            st_mode=0o100644, st_atime=mtime, st_mtime=mtime, st_size=len(data)
        )

    def add_dir(self, path: str) -> None:
        current = ""
        for part in [p for p in path.split("/") if p]:
            current = f"{current}/{part}"
            self.existing_dirs.add(current)

    def listdir_attr(self, path: str) -> list[RemoteStat]:
        self._check_failure("listdir_attr", path)
        self.calls.append(("listdir_attr", path))
        if path not in self.existing_dirs:
            raise FileNotFoundError(f"no such directory: {path}")
        entries: list[RemoteStat] = []
        for directory in sorted(self.existing_dirs):
            if directory != "/" and posixpath.dirname(directory) == path:
                entries.append(
                    RemoteStat(
                        st_mode=0o040755,
                        st_atime=DEFAULT_REMOTE_MTIME,
                        st_mtime=DEFAULT_REMOTE_MTIME,
                        filename=posixpath.basename(directory),
                    )
                )
        for file_path, st in self.remote_stats.items():
            if posixpath.dirname(file_path) == path:
                entries.append(
                    RemoteStat(
                        st_mode=st.st_mode,
                        st_atime=st.st_atime,
                        st_mtime=st.st_mtime,
                        st_size=st.st_size,
                        filename=posixpath.basename(file_path),
                    )
                )
        return entries

    def stat(self, path: str) -> RemoteStat:
        self._check_failure("stat", path)
        self.calls.append(("stat", path))
        if path in self.remote_stats:
            return self.remote_stats[path]
        if path in self.existing_dirs:
            return RemoteStat(
                st_mode=0o040755,
                st_atime=DEFAULT_REMOTE_MTIME,
                st_mtime=DEFAULT_REMOTE_MTIME,
            )
        raise FileNotFoundError(f"no such file: {path}")

    def mkdir(self, path: str) -> None:
        self._check_failure("mkdir", path)
        self.calls.append(("mkdir", path))
        if path in self.existing_dirs or path in self.remote_files:
            raise OSError(f"already exists: {path}")
        if (posixpath.dirname(path) or "/") not in self.existing_dirs:
            raise FileNotFoundError(f"no such directory: {posixpath.dirname(path)}")
        self.existing_dirs.add(path)

    def rmdir(self, path: str) -> None:
        self._check_failure("rmdir", path)
        self.calls.append(("rmdir", path))
        prefix = f"{path}/"
        if any(p.startswith(prefix) for p in [*self.existing_dirs, *self.remote_files]):
            raise OSError(f"directory not empty: {path}")
        self.existing_dirs.discard(path)

    def put(self, local_path: str, remote_path: str, *, confirm: bool = True) -> None:
        self._check_failure("put", remote_path)
        self.calls.append(("put", local_path, remote_path, confirm))
        self._store(remote_path, Path(local_path).read_bytes())

    def get(self, remote_path: str, local_path: str) -> None:
        self._check_failure("get", remote_path)
        self.calls.append(("get", remote_path, local_path))
        if remote_path not in self.remote_files:
            raise FileNotFoundError(f"remote missing: {remote_path}")
        Path(local_path).write_bytes(self.remote_files[remote_path])

    def remove(self, remote_path: str) -> None:
        self._check_failure("remove", remote_path)
        self.calls.append(("remove", remote_path))
        if remote_path not in self.remote_files:
            raise FileNotFoundError(f"remote missing: {remote_path}")
        del self.remote_files[remote_path]
        self.remote_stats.pop(remote_path, None)

    def open(self, path: str, mode: str = "r") -> _FakeWriteHandle:
        self._check_failure("open", path)
        self.calls.append(("open", path, mode))
        return _FakeWriteHandle(self, path)

    def chmod(self, path: str, mode: int) -> None:
        self._check_failure("chmod", path)
        self.calls.append(("chmod", path, mode))
        entry = self.stat(path)
        self.remote_stats[path] = RemoteStat(
            st_mode=(entry.st_mode & 0o170000) | mode,
            st_atime=entry.st_atime,
            st_mtime=entry.st_mtime,
            st_size=entry.st_size,
        )

    def close(self) -> None:
        self.closed = True
        self.calls.append(("close",))


class FakeTransport:
    def __init__(self) -> None:
        self.active = True
        self.keepalive: int | None = None

    def is_active(self) -> bool:
        return self.active

    def set_keepalive(self, interval: int) -> None:
        self.keepalive = interval


class FakeSSHClient:
    def __init__(
        self,
        sftp: FakeSFTPClient,
        *,
        connect_error: Exception | None = None,
        stdout: str = "",
        stderr: str = "",
        exit_status: int = 0,
    ) -> None:
        self.sftp = sftp
        self.transport = FakeTransport()
        self.connect_error = connect_error
        self.stdout = stdout
        self.stderr = stderr
        self.exit_status = exit_status
        self.connect_calls: list[dict[str, object]] = []
        self.commands: list[str] = []
        self.policy: object | None = None
        self.closed = False

    def load_system_host_keys(self) -> None:
        return None

    def set_missing_host_key_policy(self, policy: object) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.connect_calls.append(kwargs)
        if self.connect_error is not None:
            raise self.connect_error
        self.transport.active = True

    def get_transport(self) -> FakeTransport:
        return self.transport

    def exec_command(self, command: str):
        self.commands.append(command)
        return (
            None,
            _FakeStream(self.stdout, self.exit_status),
            _FakeStream(self.stderr, self.exit_status),
        )

    def open_sftp(self) -> FakeSFTPClient:
        return self.sftp

    def close(self) -> None:
        self.closed = True
        self.transport.active = False


class DummyAutoAddPolicy:
    pass


class FakeFTP:
    """Scripted stand-in for ftplib.FTP; every call is recorded."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.mlsd_entries: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self.list_lines: dict[str, list[str]] = {}
        self.mlsd_supported = True
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = {"/"}
        self.cwd_path = "/"
        self.alive = True

    def connect(self, host: str, port: int, timeout: float | None = None) -> str:
        self.calls.append(("connect", host, port, timeout))
        return "220 ready"

    def login(self, user: str, passwd: str) -> str:
        self.calls.append(("login", user, passwd))
        return "230 logged in"

    def quit(self) -> str:
        self.calls.append(("quit",))
        self.alive = False
        return "221 bye"

    def close(self) -> None:
        self.calls.append(("close",))

    def voidcmd(self, command: str) -> str:
        self.calls.append(("voidcmd", command))
        if not self.alive:
            raise EOFError("connection closed")
        return "200 OK"

    def mlsd(self, path: str, facts: list[str] | None = None):
        self.calls.append(("mlsd", path))
        if not self.mlsd_supported:
            raise ftplib.error_perm("500 MLSD not understood")
        if path not in self.mlsd_entries:
            raise ftplib.error_perm(f"550 {path}: No such file or directory")
        return iter(self.mlsd_entries[path])

    def retrlines(self, command: str, callback: Any) -> str:
        self.calls.append(("retrlines", command))
        path = command.split(" ", 1)[1]
        for line in self.list_lines.get(path, []):
            callback(line)
        return "226 done"

    def storbinary(self, command: str, handle: Any) -> str:
        self.calls.append(("storbinary", command))
        self.files[command.split(" ", 1)[1]] = handle.read()
        return "226 done"

    def retrbinary(self, command: str, callback: Any) -> str:
        self.calls.append(("retrbinary", command))
        callback(self.files[command.split(" ", 1)[1]])
        return "226 done"

    def pwd(self) -> str:
        return self.cwd_path

    def cwd(self, path: str) -> str:
        self.calls.append(("cwd", path))
        if path not in self.dirs:
            raise ftplib.error_perm(f"550 {path}: No such directory")
        self.cwd_path = path
        return "250 OK"

    def mkd(self, path: str) -> str:
        self.calls.append(("mkd", path))
        self.dirs.add(path)
        return path

    def delete(self, path: str) -> str:
        self.calls.append(("delete", path))
        self.files.pop(path, None)
        return "250 OK"

    def rmd(self, path: str) -> str:
        self.calls.append(("rmd", path))
        self.dirs.discard(path)
        return "250 OK"


def make_target(local_root: Path, remote_root: str = "/srv/site", **overrides: Any) -> SyncTarget:
    values: dict[str, Any] = dict(
        name="test",
        host="example.com",
        username="deploy",
        password="secret",
        remote_root=remote_root,
        local_root=local_root,
        workspace_root=local_root.parent / "workspace",
        protocol=Protocol.SFTP,
    )
    values.update(overrides)
    return SyncTarget(**values)


def make_sftp_client(
    target: SyncTarget,
    sftp: FakeSFTPClient | None = None,
    **ssh_kwargs: Any,
) -> tuple[SftpTransferClient, FakeSSHClient, FakeSFTPClient]:
    sftp = sftp or FakeSFTPClient()
    ssh = FakeSSHClient(sftp, **ssh_kwargs)
    client = SftpTransferClient(
        MetadataStore(target.metadata_dir),
        client_factory=lambda: ssh,
        auto_add_policy_factory=DummyAutoAddPolicy,
    )
    return client, ssh, sftp


def make_ftp_client(target: SyncTarget, ftp: FakeFTP | None = None) -> tuple[FtpTransferClient, FakeFTP]:
    ftp = ftp or FakeFTP()
    client = FtpTransferClient(MetadataStore(target.metadata_dir), ftp_factory=lambda _cfg: ftp)
    return client, ftp


@pytest.fixture(autouse=True)
def _restore_remsync_logger():
    logger = logging.getLogger("remsync")
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
