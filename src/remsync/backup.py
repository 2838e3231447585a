from __future__ import annotations

import logging
import re
import shutil
from datetime import UTC, datetime
from pathlib import Path

from .config import BACKUPS_TO_KEEP

logger = logging.getLogger(__name__)


def _timestamp(now: datetime | None = None) -> str:
    moment = now or datetime.now(tz=UTC)
    return moment.strftime("%Y-%m-%d_%H-%M-%S")


def backup_dir_for(backup_root: Path, remote_path: str | None) -> Path:
    """Mirror the remote directory layout below the backup root."""
    if not remote_path:
        return backup_root
    remote_dir = str(Path(remote_path).parent).lstrip("/")
    if remote_dir in {"", "."}:
        return backup_root
    return backup_root / remote_dir


def prune_backups(directory: Path, file_name: str, keep: int = BACKUPS_TO_KEEP) -> int:
    pattern = re.compile(rf"^{re.escape(file_name)}\..*\.backup$")
    candidates = sorted(
        (p for p in directory.iterdir() if p.is_file() and pattern.match(p.name)),
        key=lambda p: p.name,
        reverse=True,
    )
    removed = 0
    for stale in candidates[keep:]:
        stale.unlink()
        removed += 1
    return removed


def backup_local_file(
    local_path: Path,
    backup_root: Path,
    remote_path: str | None = None,
    *,
    keep: int = BACKUPS_TO_KEEP,
    now: datetime | None = None,
) -> Path | None:
    """Copy `local_path` aside before it is overwritten or deleted.

    Failures are logged and reported as None; a failed backup never blocks
    the operation that asked for it.
    """
    if not local_path.is_file():
        return None
    try:
        target_dir = backup_dir_for(backup_root, remote_path)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / f"{local_path.name}.{_timestamp(now)}.backup"
        shutil.copy2(local_path, target)
        prune_backups(target_dir, local_path.name, keep)
    except OSError as exc:
        logger.warning("backup of %s failed: %s", local_path, exc)
        return None
    logger.debug("backed up %s to %s", local_path, target)
    return target
