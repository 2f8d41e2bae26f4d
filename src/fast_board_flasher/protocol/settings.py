"""
Link and flash calibration settings.

Timeouts and retry ceilings for the serial link and flash sessions. The
CLI overrides individual fields from command-line options.
"""

from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class LinkSettings:
    """
    Serial line settings and identification timing.

    Attributes:
        baudrate: Line rate used by NET and EXP interfaces
        read_timeout: Base read timeout applied when a port is opened (seconds)
        identify_timeout: Bound on waiting for an ID/NN reply (seconds)
        identify_retries: Extra identify attempts after a transport error
        vendor_id: USB vendor id to filter candidate ports on, None for all
        max_nodes: Upper bound on node indices walked through a NET link
    """
    baudrate: int = 921_600
    read_timeout: float = 0.2
    identify_timeout: float = 0.3
    identify_retries: int = 2
    vendor_id: Optional[int] = None
    max_nodes: int = 64

    def __post_init__(self) -> None:
        if self.read_timeout <= 0:
            raise ValueError("read_timeout must be > 0")
        if self.identify_timeout <= 0:
            raise ValueError("identify_timeout must be > 0")
        if self.identify_retries < 0:
            raise ValueError("identify_retries must be >= 0")

    def with_overrides(self, **changes) -> "LinkSettings":
        """Copy with the non-None values in ``changes`` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


@dataclass(frozen=True)
class FlashSettings:
    """
    Flash session calibration.

    Attributes:
        chunk_size: Image bytes carried by one BD frame
        chunk_attempts: Sends per chunk before the session fails
        erase_timeout: Wait for the erase acknowledgement (seconds)
        ack_timeout: Wait for each chunk acknowledgement (seconds)
        commit_timeout: Extended wait for the board's completion token (seconds)
        verify_attempts: Post-flash identify attempts while the board reboots
        verify_interval: Pause between post-flash identify attempts (seconds)
    """
    chunk_size: int = 256
    chunk_attempts: int = 3
    erase_timeout: float = 5.0
    ack_timeout: float = 1.0
    commit_timeout: float = 30.0
    verify_attempts: int = 3
    verify_interval: float = 1.0

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if self.chunk_attempts < 1:
            raise ValueError("chunk_attempts must be >= 1")
        if self.verify_attempts < 1:
            raise ValueError("verify_attempts must be >= 1")
        for name in ("erase_timeout", "ack_timeout", "commit_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.verify_interval < 0:
            raise ValueError("verify_interval must be >= 0")

    def with_overrides(self, **changes) -> "FlashSettings":
        """Copy with the non-None values in ``changes`` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
