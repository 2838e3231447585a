from __future__ import annotations

import calendar
import ftplib
import io
import logging
import os
import posixpath
import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .config import SyncTarget
from .metadata_store import MetadataStore
from .models import Protocol, RemoteAttributes, RemoteFileDescriptor
from .transfer_base import TransferClient

logger = logging.getLogger(__name__)

# drwxr-xr-x 2 user group 4096 Jan 01 12:00 name
_UNIX_LIST_RE = re.compile(
    r"^(?P<mode>[\-dlbcps][rwxsStT\-]{9})\s+\d+\s+\S+\s+\S+\s+(?P<size>\d+)\s+"
    r"(?P<month>\w{3})\s+(?P<day>\d{1,2})\s+(?P<time>\d{1,2}:\d{2}|\d{4})\s+(?P<name>.+)$"
)
_MONTHS = {
    name: idx
    for idx, name in enumerate(
        ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"],
        start=1,
    )
}


def _parse_mlsd_time(value: str | None) -> int:
    if not value:
        return 0
    digits = value.split(".")[0]
    try:
        parsed = time.strptime(digits[:14], "%Y%m%d%H%M%S")
    except ValueError:
        return 0
    return calendar.timegm(parsed) * 1000


def _mode_from_text(text: str) -> int:
    bits = 0
    for idx, char in enumerate(text[1:10]):
        if char not in "-ST":
            bits |= 1 << (8 - idx)
    return bits


def _parse_list_time(month: str, day: str, clock: str) -> int:
    month_no = _MONTHS.get(month[:3].title(), 1)
    if ":" in clock:
        now = time.gmtime()
        year = now.tm_year
        hour, minute = (int(p) for p in clock.split(":"))
        stamp = calendar.timegm((year, month_no, int(day), hour, minute, 0))
        if stamp > calendar.timegm(now) + 86400:
            stamp = calendar.timegm((year - 1, month_no, int(day), hour, minute, 0))
        return stamp * 1000
    return calendar.timegm((int(clock), month_no, int(day), 0, 0, 0)) * 1000


def parse_list_line(remote_path: str, line: str) -> RemoteFileDescriptor | None:
    match = _UNIX_LIST_RE.match(line)
    if match is None:
        return None
    name = match.group("name")
    mode_text = match.group("mode")
    if mode_text.startswith("l") and " -> " in name:
        name = name.split(" -> ", 1)[0]
    if name in {".", ".."}:
        return None
    is_directory = mode_text.startswith("d")
    return RemoteFileDescriptor(
        name=name,
        path=posixpath.join(remote_path, name),
        is_directory=is_directory,
        size=None if is_directory else int(match.group("size")),
        modify_time=_parse_list_time(
            match.group("month"), match.group("day"), match.group("time")
        ),
        mode=_mode_from_text(mode_text),
    )


def _is_missing(exc: ftplib.error_perm) -> bool:
    return str(exc).startswith("550")


class FtpTransferClient(TransferClient):
    """FTP/FTPS variant; searches, chmod and shell commands are unavailable."""

    protocol_name = "ftp"
    capabilities = frozenset()

    def __init__(
        self,
        metadata_store: MetadataStore | None = None,
        *,
        ftp_factory: Callable[[SyncTarget], Any] | None = None,
    ) -> None:
        super().__init__(metadata_store)
        self._ftp_factory = ftp_factory or self._default_factory
        self._mlsd_supported = True

    @staticmethod
    def _default_factory(config: SyncTarget) -> ftplib.FTP:
        if config.protocol == Protocol.FTPS:
            return ftplib.FTP_TLS(timeout=config.connect_timeout)
        return ftplib.FTP(timeout=config.connect_timeout)

    def _open(self, config: SyncTarget) -> Any:
        self.protocol_name = config.protocol.value
        ftp = self._ftp_factory(config)
        try:
            ftp.connect(config.host, config.effective_port, timeout=config.connect_timeout)
            ftp.login(config.username, config.password or "")
            if isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()
        except Exception:
            self._close(ftp)
            raise
        self._mlsd_supported = True
        return ftp

    def _close(self, handle: Any) -> None:
        try:
            handle.quit()
        except Exception:  # noqa: BLE001
            try:
                handle.close()
            except Exception:  # noqa: BLE001
                return

    def _handle_alive(self, handle: Any) -> bool:
        try:
            handle.voidcmd("NOOP")
        except Exception:  # noqa: BLE001
            return False
        return True

    @property
    def _ftp(self) -> Any:
        return self._open_handle()

    def list_directory_strict(self, remote_path: str) -> list[RemoteFileDescriptor]:
        ftp = self._ftp
        if self._mlsd_supported:
            try:
                return self._list_mlsd(ftp, remote_path)
            except ftplib.error_perm as exc:
                if not str(exc).startswith("500") and not str(exc).startswith("502"):
                    raise
                logger.debug("MLSD unsupported, falling back to LIST: %s", exc)
                self._mlsd_supported = False
        lines: list[str] = []
        ftp.retrlines(f"LIST {remote_path}", lines.append)
        entries = []
        for line in lines:
            entry = parse_list_line(remote_path, line)
            if entry is not None:
                entries.append(entry)
        return entries

    def _list_mlsd(self, ftp: Any, remote_path: str) -> list[RemoteFileDescriptor]:
        entries: list[RemoteFileDescriptor] = []
        for name, facts in ftp.mlsd(remote_path, facts=["type", "size", "modify", "unix.mode"]):
            kind = facts.get("type", "file").lower()
            if kind in {"cdir", "pdir"} or name in {".", ".."}:
                continue
            is_directory = kind == "dir"
            mode = facts.get("unix.mode")
            entries.append(
                RemoteFileDescriptor(
                    name=name,
                    path=posixpath.join(remote_path, name),
                    is_directory=is_directory,
                    size=None if is_directory else int(facts.get("size", 0) or 0),
                    modify_time=_parse_mlsd_time(facts.get("modify")),
                    mode=int(mode, 8) if mode else None,
                )
            )
        return entries

    def _find_entry(self, remote_path: str) -> RemoteFileDescriptor | None:
        parent = posixpath.dirname(remote_path) or "/"
        name = posixpath.basename(remote_path)
        try:
            listing = self.list_directory_strict(parent)
        except ftplib.error_perm as exc:
            if _is_missing(exc):
                return None
            raise
        for entry in listing:
            if entry.name == name:
                return entry
        return None

    def stat(self, remote_path: str) -> RemoteAttributes:
        entry = self._find_entry(remote_path)
        if entry is None:
            raise FileNotFoundError(f"remote file not found: {remote_path}")
        return RemoteAttributes(modify_time=entry.modify_time, size=entry.size or 0)

    def _put(self, local_path: Path, remote_path: str) -> None:
        with local_path.open("rb") as handle:
            self._ftp.storbinary(f"STOR {remote_path}", handle)

    def _get(self, remote_path: str, local_path: Path) -> None:
        remote = self.stat(remote_path)
        with local_path.open("wb") as handle:
            self._ftp.retrbinary(f"RETR {remote_path}", handle.write)
        if remote.modify_time:
            mtime = remote.modify_time / 1000
            os.utime(local_path, (mtime, mtime))

    def _path_is_dir(self, remote_path: str) -> bool | None:
        ftp = self._ftp
        current = ftp.pwd()
        try:
            ftp.cwd(remote_path)
        except ftplib.error_perm:
            return False if self._find_entry(remote_path) is not None else None
        ftp.cwd(current)
        return True

    def _mkdir(self, remote_path: str) -> None:
        self._ftp.mkd(remote_path)

    def _remove_file(self, remote_path: str) -> None:
        self._ftp.delete(remote_path)

    def _remove_empty_dir(self, remote_path: str) -> None:
        self._ftp.rmd(remote_path)

    def _write_bytes(self, remote_path: str, content: bytes) -> None:
        self._ftp.storbinary(f"STOR {remote_path}", io.BytesIO(content))

    def get_permissions(self, remote_path: str) -> str:
        entry = self._find_entry(remote_path)
        if entry is None:
            raise FileNotFoundError(f"remote file not found: {remote_path}")
        if entry.mode is None:
            return "----------"
        return f"{entry.mode:03o}"
