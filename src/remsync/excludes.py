from __future__ import annotations

from collections.abc import Iterable
from pathlib import PurePosixPath

from .config import EXCLUDED_FILE_NAMES, EXCLUDED_FOLDERS


def is_excluded_folder_name(name: str) -> bool:
    return name in EXCLUDED_FOLDERS


def is_excluded_file_name(name: str) -> bool:
    return name in EXCLUDED_FILE_NAMES


class IgnorePatterns:
    """Plain-text ignore entries matched against root-relative paths.

    An entry excludes a path when it occurs anywhere in the relative path, or
    when it equals the name of the entry being visited. Excluding a directory
    hides everything below it.
    """

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self.patterns = tuple(p for p in patterns if p)

    def is_ignored(self, relpath: str | PurePosixPath, name: str | None = None) -> bool:
        target = PurePosixPath(relpath).as_posix()
        entry_name = name if name is not None else PurePosixPath(target).name
        for pattern in self.patterns:
            if pattern in target or entry_name == pattern:
                return True
        return False

    def is_ignored_dir(self, relpath: str | PurePosixPath) -> bool:
        name = PurePosixPath(relpath).name
        return is_excluded_folder_name(name) or self.is_ignored(relpath, name)

    def is_ignored_file(self, relpath: str | PurePosixPath) -> bool:
        name = PurePosixPath(relpath).name
        return is_excluded_file_name(name) or self.is_ignored(relpath, name)
