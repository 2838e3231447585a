from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from .excludes import IgnorePatterns
from .models import RemoteFileDescriptor
from .transfer_base import TransferClient, remote_relpath


@dataclass(frozen=True)
class RemoteEntry:
    relpath: str
    descriptor: RemoteFileDescriptor


class RemoteScanner:
    """Depth-first walk of a remote tree driven by an explicit stack.

    A directory is yielded before anything below it. Ignored entries, and
    everything under an ignored directory, are skipped.
    """

    def __init__(
        self,
        client: TransferClient,
        root: str,
        ignore: Iterable[str] = (),
        *,
        strict: bool = False,
    ) -> None:
        self.client = client
        self.root = root
        self.rules = IgnorePatterns(ignore)
        self.strict = strict

    def _list(self, remote_path: str) -> list[RemoteFileDescriptor]:
        if self.strict:
            return self.client.list_directory_strict(remote_path)
        return self.client.list_directory(remote_path)

    def walk(self) -> Iterator[RemoteEntry]:
        stack = [self.root]
        while stack:
            current = stack.pop()
            children: list[str] = []
            for descriptor in self._list(current):
                relpath = remote_relpath(self.root, descriptor.path)
                if descriptor.is_directory:
                    if self.rules.is_ignored_dir(relpath):
                        continue
                    yield RemoteEntry(relpath=relpath, descriptor=descriptor)
                    children.append(descriptor.path)
                else:
                    if self.rules.is_ignored_file(relpath):
                        continue
                    yield RemoteEntry(relpath=relpath, descriptor=descriptor)
            stack.extend(reversed(children))
