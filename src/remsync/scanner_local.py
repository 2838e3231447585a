from __future__ import annotations

import os
import stat
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .excludes import IgnorePatterns
from .models import LocalFileRecord


@dataclass(frozen=True)
class LocalTree:
    files: dict[str, LocalFileRecord]
    directories: set[str]

    def relpaths(self) -> set[str]:
        return set(self.files) | self.directories


class LocalScanner:
    """Enumerate regular files under a root, skipping ignored entries.

    Entry order follows the filesystem and is not sorted.
    """

    def __init__(self, root: Path, ignore: Iterable[str] = ()) -> None:
        self.root = root.expanduser().resolve()
        self.rules = IgnorePatterns(ignore)

    def scan(self) -> LocalTree:
        if not self.root.exists() or not self.root.is_dir():
            raise FileNotFoundError(f"Local root not found: {self.root}")

        files: dict[str, LocalFileRecord] = {}
        directories: set[str] = set()

        for current_dir, dirs, filenames in os.walk(self.root, topdown=True):
            current_path = Path(current_dir)
            rel_dir = PurePosixPath(".")
            if current_path != self.root:
                rel_dir = PurePosixPath(current_path.relative_to(self.root).as_posix())
                directories.add(rel_dir.as_posix())

            kept_dirs: list[str] = []
            for dir_name in dirs:
                child_rel = (
                    PurePosixPath(dir_name)
                    if rel_dir == PurePosixPath(".")
                    else rel_dir / dir_name
                )
                if self.rules.is_ignored_dir(child_rel):
                    continue
                if (current_path / dir_name).is_symlink():
                    continue
                kept_dirs.append(dir_name)
            dirs[:] = kept_dirs

            for filename in filenames:
                child_rel = (
                    PurePosixPath(filename)
                    if rel_dir == PurePosixPath(".")
                    else rel_dir / filename
                )
                if self.rules.is_ignored_file(child_rel):
                    continue
                full_path = current_path / filename
                try:
                    st = full_path.stat()
                except OSError:
                    continue
                if not stat.S_ISREG(st.st_mode):
                    continue
                relpath = child_rel.as_posix()
                files[relpath] = LocalFileRecord(
                    relpath=relpath,
                    path=str(full_path),
                    size=st.st_size,
                    mtime_ms=st.st_mtime_ns // 1_000_000,
                )

        return LocalTree(files=files, directories=directories)
