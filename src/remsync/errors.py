from __future__ import annotations

from .models import Capability


class RemsyncError(Exception):
    """Base class for errors raised by remsync itself."""


class ConfigError(RemsyncError):
    """Raised when a configuration file cannot be turned into targets."""


class NotConnectedError(RemsyncError):
    """Raised when an operation needs a live session and there is none."""


class ProtocolUnsupportedError(RemsyncError):
    """Raised up front when a protocol variant lacks an optional capability."""

    def __init__(self, capability: Capability, protocol: str) -> None:
        self.capability = capability
        self.protocol = protocol
        super().__init__(
            f"{protocol.upper()} protocol does not support {capability.value.replace('_', ' ')}"
        )
