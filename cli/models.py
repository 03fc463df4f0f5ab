"""Command request data types for CLI."""

from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True)
class SendCommand:
    """Send a file, optionally under an existing access code."""

    file_path: str
    access_code: str | None = None
    command: Literal["send"] = "send"


@dataclass(frozen=True)
class ReceiveCommand:
    """Receive the file behind an access code."""

    access_code: str
    output_dir: str | None = None
    command: Literal["receive"] = "receive"


@dataclass(frozen=True)
class StatusCommand:
    """Show server-side status of a transfer."""

    access_code: str
    command: Literal["status"] = "status"


@dataclass(frozen=True)
class ConfigCommand:
    """Show configuration, or set one key."""

    key: str | None = None
    value: str | None = None
    command: Literal["config"] = "config"


CommandRequest = (
    SendCommand
    | ReceiveCommand
    | StatusCommand
    | ConfigCommand
)
