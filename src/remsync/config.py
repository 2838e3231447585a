from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .models import Protocol

EXCLUDED_FOLDERS = {".sftp-metadata", ".sftp-backup"}
EXCLUDED_FILE_NAMES = {".DS_Store"}

DEFAULT_CONFIG_FILE = "remsync.toml"
DEFAULT_SFTP_PORT = 22
DEFAULT_FTP_PORT = 21
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_KEEPALIVE_INTERVAL = 10.0
DEFAULT_METADATA_DIR = Path(".vscode") / ".sftp-metadata"
MTIME_TOLERANCE_MS = 1000
BACKUPS_TO_KEEP = 5

_STRING_KEYS = {
    "host",
    "username",
    "password",
    "private_key",
    "passphrase",
    "remote_path",
    "local_root",
    "workspace_root",
    "download_backup",
    "protocol",
    "name",
}
_NUMBER_KEYS = {"port", "connect_timeout", "keepalive_interval"}
_KNOWN_KEYS = _STRING_KEYS | _NUMBER_KEYS | {"ignore", "profiles", "default_profile"}


@dataclass(frozen=True)
class SyncTarget:
    host: str
    username: str
    remote_root: str
    local_root: Path
    name: str | None = None
    port: int | None = None
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None
    workspace_root: Path | None = None
    ignore: tuple[str, ...] = ()
    download_backup: str | None = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL
    protocol: Protocol = Protocol.SFTP
    profile: str | None = field(default=None, compare=False)

    @property
    def effective_port(self) -> int:
        if self.port is not None:
            return self.port
        if self.protocol == Protocol.SFTP:
            return DEFAULT_SFTP_PORT
        return DEFAULT_FTP_PORT

    @property
    def server_name(self) -> str:
        return self.name or f"{self.username}@{self.host}"

    @property
    def workspace(self) -> Path:
        return self.workspace_root or self.local_root

    @property
    def metadata_dir(self) -> Path:
        return self.workspace / DEFAULT_METADATA_DIR

    @property
    def backup_dir(self) -> Path | None:
        """Where overwritten or deleted local files are copied, if anywhere.

        An explicit empty string disables backups; unset means no backups for
        bulk passes.
        """
        if not self.download_backup:
            return None
        candidate = Path(self.download_backup).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.workspace / candidate


def _check_types(name: str, data: dict[str, Any]) -> None:
    for key, value in data.items():
        if key not in _KNOWN_KEYS:
            raise ConfigError(f"target {name!r}: unknown key {key!r}")
        if key in _STRING_KEYS and not isinstance(value, str):
            raise ConfigError(f"target {name!r}: {key!r} must be a string")
        if key in _NUMBER_KEYS and (
            isinstance(value, bool) or not isinstance(value, int | float)
        ):
            raise ConfigError(f"target {name!r}: {key!r} must be a number")
    ignore = data.get("ignore")
    if ignore is not None and (
        not isinstance(ignore, list) or not all(isinstance(p, str) for p in ignore)
    ):
        raise ConfigError(f"target {name!r}: 'ignore' must be a list of strings")


def _resolve_path(base_dir: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path.resolve()


def _build_target(
    name: str, data: dict[str, Any], base_dir: Path, profile: str | None
) -> SyncTarget:
    for key in ("host", "username", "remote_path"):
        if not data.get(key):
            raise ConfigError(f"target {name!r}: missing required key {key!r}")

    protocol_text = str(data.get("protocol", Protocol.SFTP.value)).lower()
    try:
        protocol = Protocol(protocol_text)
    except ValueError:
        raise ConfigError(
            f"target {name!r}: unsupported protocol {protocol_text!r}"
        ) from None

    local_root = _resolve_path(base_dir, str(data.get("local_root", ".")))
    workspace_root = (
        _resolve_path(base_dir, str(data["workspace_root"]))
        if data.get("workspace_root")
        else None
    )
    port = data.get("port")

    return SyncTarget(
        name=str(data.get("name") or name),
        host=str(data["host"]),
        port=int(port) if port is not None else None,
        username=str(data["username"]),
        password=data.get("password"),
        private_key=data.get("private_key"),
        passphrase=data.get("passphrase"),
        remote_root=str(data["remote_path"]),
        local_root=local_root,
        workspace_root=workspace_root,
        ignore=tuple(data.get("ignore") or ()),
        download_backup=data.get("download_backup"),
        connect_timeout=float(data.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT)),
        keepalive_interval=float(
            data.get("keepalive_interval", DEFAULT_KEEPALIVE_INTERVAL)
        ),
        protocol=protocol,
        profile=profile,
    )


def resolve_profile(
    name: str, raw: dict[str, Any], profile: str | None
) -> tuple[dict[str, Any], str | None]:
    """Merge the selected profile's overrides over the target's own keys."""
    base = {k: v for k, v in raw.items() if k not in {"profiles", "default_profile"}}
    profiles = raw.get("profiles") or {}
    if not isinstance(profiles, dict):
        raise ConfigError(f"target {name!r}: 'profiles' must be a table")
    selected = profile or raw.get("default_profile")
    if selected is None:
        return base, None
    overrides = profiles.get(selected)
    if overrides is None:
        raise ConfigError(f"target {name!r}: unknown profile {selected!r}")
    if "profiles" in overrides or "default_profile" in overrides:
        raise ConfigError(f"target {name!r}: profiles cannot be nested")
    return {**base, **overrides}, selected


def _read_config(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {path}") from None
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML in {path}: {exc}") from exc
    targets = data.get("targets")
    if not isinstance(targets, dict) or not targets:
        raise ConfigError(f"{path}: no [targets.<name>] tables defined")
    return targets


def load_targets(path: Path) -> dict[str, SyncTarget]:
    """Load every target, each resolved with its own default profile."""
    config_path = path.expanduser().resolve()
    base_dir = config_path.parent
    resolved: dict[str, SyncTarget] = {}
    for name, raw in _read_config(config_path).items():
        if not isinstance(raw, dict):
            raise ConfigError(f"target {name!r} must be a table")
        merged, selected = resolve_profile(name, raw, None)
        _check_types(name, merged)
        resolved[name] = _build_target(name, merged, base_dir, selected)
    return resolved


def load_target(path: Path, name: str | None = None, profile: str | None = None) -> SyncTarget:
    config_path = path.expanduser().resolve()
    raw_targets = _read_config(config_path)
    if name is None:
        if len(raw_targets) != 1:
            raise ConfigError(
                f"{config_path}: several targets defined, pick one of "
                + ", ".join(sorted(raw_targets))
            )
        name = next(iter(raw_targets))
    raw = raw_targets.get(name)
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path}: no target named {name!r}")
    merged, selected = resolve_profile(name, raw, profile)
    _check_types(name, merged)
    return _build_target(name, merged, config_path.parent, selected)
