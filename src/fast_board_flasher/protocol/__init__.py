"""FAST serial protocol layer - link, codec, identification and flashing."""

from .settings import LinkSettings, FlashSettings
from .transport import (
    PortHandle,
    LinkError,
    LinkIOError,
    LinkTimeout,
    PortBusyError,
    list_candidate_ports,
    open_port,
    enumerate_ports,
)
from .frames import (
    crc16_xmodem,
    normalize_version,
    version_sort_key,
    parse_id_reply,
    parse_nn_reply,
    IdReply,
    NodeReply,
)
from .identify import BoardIdentifier, IdentifyOutcome, IdentifyResult
from .session import (
    FlashSession,
    FlashState,
    FlashEvent,
    FailureReason,
    UpdateOutcome,
)

__all__ = [
    # Settings
    "LinkSettings",
    "FlashSettings",
    # Transport
    "PortHandle",
    "LinkError",
    "LinkIOError",
    "LinkTimeout",
    "PortBusyError",
    "list_candidate_ports",
    "open_port",
    "enumerate_ports",
    # Codec
    "crc16_xmodem",
    "normalize_version",
    "version_sort_key",
    "parse_id_reply",
    "parse_nn_reply",
    "IdReply",
    "NodeReply",
    # Identification
    "BoardIdentifier",
    "IdentifyOutcome",
    "IdentifyResult",
    # Flashing
    "FlashSession",
    "FlashState",
    "FlashEvent",
    "FailureReason",
    "UpdateOutcome",
]
