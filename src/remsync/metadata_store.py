from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path

from .models import FileMetadataRecord

logger = logging.getLogger(__name__)

_SEPARATORS = {os.sep} | ({os.altsep} if os.altsep else set())


def compute_storage_key(local_path: str) -> str:
    """Encode an absolute local path as one flat, filename-safe token.

    `_` is escaped before anything that produces an underscore, so the token
    set (`_u_`, `_c_`, `_b_`, `__`) stays prefix-free and decoding is
    unambiguous.
    """
    parts: list[str] = []
    for char in local_path:
        if char == "_":
            parts.append("_u_")
        elif char == ":":
            parts.append("_c_")
        elif char in _SEPARATORS:
            parts.append("__")
        elif char == "\\":
            parts.append("_b_")
        else:
            parts.append(char)
    return "".join(parts) + ".json"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _normalize_local(local_path: str | Path) -> str:
    return os.path.abspath(os.fspath(local_path))


class MetadataStore:
    """Sidecar JSON records of the remote attributes seen at the last transfer."""

    def __init__(self, metadata_dir: Path) -> None:
        self.metadata_dir = metadata_dir

    def metadata_path(self, local_path: str | Path) -> Path:
        return self.metadata_dir / compute_storage_key(_normalize_local(local_path))

    def record_transfer(
        self,
        local_path: str | Path,
        remote_path: str,
        remote_modify_time: int,
        remote_size: int,
        server_name: str | None = None,
    ) -> None:
        normalized = _normalize_local(local_path)
        payload = {
            "remotePath": remote_path,
            "remoteModifyTime": int(remote_modify_time),
            "remoteFileSize": int(remote_size),
            "localPath": normalized,
            "downloadTime": _now_ms(),
            "configName": server_name,
        }
        target = self.metadata_path(normalized)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("metadata write failed for %s: %s", normalized, exc)
            return
        logger.debug(
            "metadata saved %s mtime=%s size=%s",
            remote_path,
            remote_modify_time,
            remote_size,
        )

    def read_transfer(self, local_path: str | Path) -> FileMetadataRecord | None:
        target = self.metadata_path(local_path)
        try:
            raw = json.loads(target.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("unreadable metadata %s: %s", target, exc)
            return None
        try:
            return FileMetadataRecord(
                remote_path=str(raw["remotePath"]),
                remote_modify_time=int(raw["remoteModifyTime"]),
                remote_file_size=int(raw["remoteFileSize"]),
                local_path=str(raw["localPath"]),
                download_time=int(raw.get("downloadTime", 0)),
                config_name=(
                    str(raw["configName"])
                    if raw.get("configName") is not None
                    else None
                ),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("malformed metadata %s: %s", target, exc)
            return None

    def remove_transfer(self, local_path: str | Path) -> None:
        target = self.metadata_path(local_path)
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("metadata removal failed for %s: %s", target, exc)
