from __future__ import annotations

import logging
import os
import posixpath
import shlex
import stat
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeAlias

import paramiko

from .config import SyncTarget
from .metadata_store import MetadataStore
from .models import (
    Capability,
    CommandResult,
    ContentMatch,
    RemoteAttributes,
    RemoteFileDescriptor,
)
from .transfer_base import TransferClient

logger = logging.getLogger(__name__)

StatLike: TypeAlias = paramiko.SFTPAttributes


@dataclass
class _SftpHandle:
    client: paramiko.SSHClient
    sftp: paramiko.SFTPClient


def _mtime_ms(st: StatLike) -> int:
    return int(float(getattr(st, "st_mtime", 0) or 0) * 1000)


def _is_dir(st: StatLike) -> bool:
    return stat.S_ISDIR(getattr(st, "st_mode", 0) or 0)


def _client_alive(client: Any) -> bool:
    get_transport = getattr(client, "get_transport", None)
    if get_transport is None:
        return False
    try:
        transport = get_transport()
    except Exception:  # noqa: BLE001
        return False
    if transport is None:
        return False
    try:
        return bool(transport.is_active())
    except Exception:  # noqa: BLE001
        return False


def _close_quietly(closable: Any) -> None:
    try:
        closable.close()
    except Exception:  # noqa: BLE001
        return


class SftpTransferClient(TransferClient):
    protocol_name = "sftp"
    capabilities = frozenset(
        {
            Capability.CONTENT_SEARCH,
            Capability.NAME_SEARCH,
            Capability.PERMISSION_CHANGE,
            Capability.REMOTE_COMMAND,
        }
    )

    def __init__(
        self,
        metadata_store: MetadataStore | None = None,
        *,
        client_factory: Callable[[], Any] = paramiko.SSHClient,
        auto_add_policy_factory: Callable[[], Any] = paramiko.AutoAddPolicy,
    ) -> None:
        super().__init__(metadata_store)
        self._client_factory = client_factory
        self._auto_add_policy_factory = auto_add_policy_factory

    def _open(self, config: SyncTarget) -> _SftpHandle:
        client = self._client_factory()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(self._auto_add_policy_factory())
        kwargs: dict[str, Any] = dict(
            hostname=config.host,
            port=config.effective_port,
            username=config.username,
            timeout=config.connect_timeout,
            banner_timeout=config.connect_timeout,
            auth_timeout=config.connect_timeout,
        )
        if config.private_key:
            kwargs["key_filename"] = os.path.expanduser(config.private_key)
            if config.passphrase:
                kwargs["passphrase"] = config.passphrase
        if config.password:
            kwargs["password"] = config.password
        kwargs["look_for_keys"] = not (config.private_key or config.password)
        kwargs["allow_agent"] = not config.password
        try:
            client.connect(**kwargs)
            transport = client.get_transport()
            if transport is not None and config.keepalive_interval > 0:
                transport.set_keepalive(int(config.keepalive_interval))
            sftp = client.open_sftp()
        except Exception:
            _close_quietly(client)
            raise
        return _SftpHandle(client=client, sftp=sftp)

    def _close(self, handle: _SftpHandle) -> None:
        _close_quietly(handle.sftp)
        _close_quietly(handle.client)

    def _handle_alive(self, handle: _SftpHandle) -> bool:
        return _client_alive(handle.client)

    @property
    def _sftp(self) -> paramiko.SFTPClient:
        return self._require_handle().sftp

    def list_directory_strict(self, remote_path: str) -> list[RemoteFileDescriptor]:
        entries: list[RemoteFileDescriptor] = []
        for attr in self._sftp.listdir_attr(remote_path):
            name = attr.filename
            if name in {".", ".."}:
                continue
            is_directory = _is_dir(attr)
            entries.append(
                RemoteFileDescriptor(
                    name=name,
                    path=posixpath.join(remote_path, name),
                    is_directory=is_directory,
                    size=None if is_directory else int(attr.st_size or 0),
                    modify_time=_mtime_ms(attr),
                    mode=stat.S_IMODE(attr.st_mode) if attr.st_mode else None,
                )
            )
        return entries

    def stat(self, remote_path: str) -> RemoteAttributes:
        st = self._sftp.stat(remote_path)
        return RemoteAttributes(modify_time=_mtime_ms(st), size=int(st.st_size or 0))

    def _put(self, local_path: Path, remote_path: str) -> None:
        self._sftp.put(str(local_path), remote_path, confirm=False)

    def _get(self, remote_path: str, local_path: Path) -> None:
        sftp = self._sftp
        remote_stat = sftp.stat(remote_path)
        sftp.get(remote_path, str(local_path))
        mtime = float(getattr(remote_stat, "st_mtime", 0) or 0)
        if mtime:
            atime = float(getattr(remote_stat, "st_atime", 0) or mtime)
            os.utime(local_path, (atime, mtime))

    def _path_is_dir(self, remote_path: str) -> bool | None:
        try:
            st = self._sftp.stat(remote_path)
        except FileNotFoundError:
            return None
        return _is_dir(st)

    def _mkdir(self, remote_path: str) -> None:
        self._sftp.mkdir(remote_path)

    def _remove_file(self, remote_path: str) -> None:
        self._sftp.remove(remote_path)

    def _remove_empty_dir(self, remote_path: str) -> None:
        self._sftp.rmdir(remote_path)

    def _write_bytes(self, remote_path: str, content: bytes) -> None:
        with self._sftp.open(remote_path, "wb") as handle:
            handle.write(content)

    def get_permissions(self, remote_path: str) -> str:
        st = self._sftp.stat(remote_path)
        return f"{stat.S_IMODE(st.st_mode or 0):03o}"

    def change_permissions(self, remote_path: str, mode: str) -> None:
        self._require_capability(Capability.PERMISSION_CHANGE)
        self._sftp.chmod(remote_path, int(mode, 8))
        logger.info("chmod %s %s", mode, remote_path)

    def exec_command(self, command: str) -> CommandResult:
        self._require_capability(Capability.REMOTE_COMMAND)
        client = self._require_handle().client
        _stdin, stdout, stderr = client.exec_command(command)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        exit_status = stdout.channel.recv_exit_status()
        return CommandResult(exit_status=exit_status, stdout=out, stderr=err)

    def search_by_name(
        self,
        remote_root: str,
        pattern: str,
        is_regex: bool = False,
        max_results: int = 100,
    ) -> list[RemoteFileDescriptor]:
        self._require_capability(Capability.NAME_SEARCH)
        match = f"-regextype posix-extended -regex {shlex.quote('.*/' + pattern)}"
        if not is_regex:
            match = f"-name {shlex.quote(pattern)}"
        command = (
            f"find {shlex.quote(remote_root)} {match} 2>/dev/null "
            f"| head -n {int(max_results)}"
        )
        result = self.exec_command(command)
        found: list[RemoteFileDescriptor] = []
        for line in result.stdout.splitlines():
            path = line.strip()
            if not path:
                continue
            try:
                st = self._sftp.stat(path)
            except OSError:
                continue
            is_directory = _is_dir(st)
            found.append(
                RemoteFileDescriptor(
                    name=posixpath.basename(path),
                    path=path,
                    is_directory=is_directory,
                    size=None if is_directory else int(st.st_size or 0),
                    modify_time=_mtime_ms(st),
                    mode=stat.S_IMODE(st.st_mode or 0),
                )
            )
        return found

    def search_content(
        self,
        remote_root: str,
        text: str,
        is_regex: bool = False,
        file_pattern: str = "*",
        max_results: int = 50,
    ) -> list[ContentMatch]:
        self._require_capability(Capability.CONTENT_SEARCH)
        mode = "-E" if is_regex else "-F"
        command = (
            f"grep -rnI {mode} --include={shlex.quote(file_pattern)} "
            f"-e {shlex.quote(text)} {shlex.quote(remote_root)} 2>/dev/null "
            f"| head -n {int(max_results)}"
        )
        result = self.exec_command(command)
        matches: list[ContentMatch] = []
        for line in result.stdout.splitlines():
            path, sep, rest = line.partition(":")
            line_no, sep2, content = rest.partition(":")
            if not sep or not sep2 or not line_no.isdigit():
                continue
            matches.append(
                ContentMatch(
                    file=RemoteFileDescriptor(
                        name=posixpath.basename(path),
                        path=path,
                        is_directory=False,
                        size=None,
                        modify_time=0,
                    ),
                    line=int(line_no),
                    text=content,
                )
            )
        return matches
