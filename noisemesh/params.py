"""Node construction parameters and their defaults."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .nat import Provider
from .transport import TCP, Layer


@dataclass
class Parameters:
    """Settings used to build a node. Timeouts are in seconds."""

    host: str = "127.0.0.1"
    port: int = 0
    external_port: int = 0

    nat: Provider | None = None
    keys: Any = None
    transport: Layer | None = field(default_factory=TCP)

    metadata: dict[str, Any] = field(default_factory=dict)

    max_message_size: int = 1048576

    send_message_timeout: float = 3.0
    receive_message_timeout: float = 3.0

    send_worker_busy_timeout: float = 3.0


def default_params() -> Parameters:
    """Fresh parameters with the default settings."""
    return Parameters()