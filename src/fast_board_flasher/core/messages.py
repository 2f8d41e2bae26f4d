"""
Standardized warning and message system for FAST Board Flasher.

Provides structured warning items with stable codes so the CLI can show
a consistent title, detail and remediation hint for each known condition.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, TYPE_CHECKING

from fast_board_flasher.protocol.session import FailureReason, UpdateOutcome

if TYPE_CHECKING:
    from .results import UpdateResult


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Discovery
    W_NO_PORTS = "W_NO_PORTS"
    W_NO_BOARDS = "W_NO_BOARDS"

    # Firmware cache
    W_NO_IMAGE = "W_NO_IMAGE"
    W_CACHE_EMPTY = "W_CACHE_EMPTY"

    # Flashing
    W_VERSION_MISMATCH = "W_VERSION_MISMATCH"
    W_SERIAL_TIMEOUT = "W_SERIAL_TIMEOUT"
    W_SERIAL_ERROR = "W_SERIAL_ERROR"
    W_BOARD_REJECTED = "W_BOARD_REJECTED"
    W_IMAGE_TOO_LARGE = "W_IMAGE_TOO_LARGE"
    W_POST_FLASH_SILENT = "W_POST_FLASH_SILENT"
    W_CANCELLED = "W_CANCELLED"
    W_PARTIAL_SUCCESS = "W_PARTIAL_SUCCESS"

    # Operation
    W_SIMULATED = "W_SIMULATED"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


# Default remediation hints for each warning code
WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_NO_PORTS:
        "Check the USB cable and that the controller is powered. Run 'ports' to list devices.",
    WarningCode.W_NO_BOARDS:
        "Ports were found but no FAST board answered. Close other apps using the ports.",
    WarningCode.W_NO_IMAGE:
        "Run 'get-latest-firmware' to refresh the firmware cache.",
    WarningCode.W_CACHE_EMPTY:
        "Run 'get-latest-firmware' or point --firmware-dir at a folder of firmware files.",
    WarningCode.W_VERSION_MISMATCH:
        "The flash completed but the board reports another version. Power cycle and list again.",
    WarningCode.W_SERIAL_TIMEOUT:
        "Check cable connection and board power. Retry with a longer --ack-timeout.",
    WarningCode.W_SERIAL_ERROR:
        "The port closed unexpectedly. Reconnect the board and retry.",
    WarningCode.W_BOARD_REJECTED:
        "The board refused the firmware. Check the image matches the board model.",
    WarningCode.W_IMAGE_TOO_LARGE:
        "The image needs more chunks than the protocol can number. Use a larger --chunk-size.",
    WarningCode.W_POST_FLASH_SILENT:
        "Board stopped answering after the flash. Power cycle it and reflash if needed.",
    WarningCode.W_CANCELLED:
        "Update interrupted. The board may hold erased firmware; reflash before use.",
    WarningCode.W_PARTIAL_SUCCESS:
        "Some boards failed. Check individual results below.",
    WarningCode.W_SIMULATED:
        "Simulated boards only. Remove --simulate to talk to hardware.",
    WarningCode.W_UNKNOWN:
        "Check logs (--verbose) for more details.",
}

_REASON_CODES: Dict[FailureReason, WarningCode] = {
    FailureReason.TIMEOUT: WarningCode.W_SERIAL_TIMEOUT,
    FailureReason.IO_ERROR: WarningCode.W_SERIAL_ERROR,
    FailureReason.ERASE_REJECTED: WarningCode.W_BOARD_REJECTED,
    FailureReason.CHUNK_REJECTED: WarningCode.W_BOARD_REJECTED,
    FailureReason.COMMIT_REJECTED: WarningCode.W_BOARD_REJECTED,
    FailureReason.POST_FLASH_UNRESPONSIVE: WarningCode.W_POST_FLASH_SILENT,
    FailureReason.CANCELLED: WarningCode.W_CANCELLED,
    FailureReason.NO_IMAGE: WarningCode.W_NO_IMAGE,
    FailureReason.IMAGE_TOO_LARGE: WarningCode.W_IMAGE_TOO_LARGE,
    FailureReason.INTERNAL_ERROR: WarningCode.W_UNKNOWN,
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def info(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create an INFO-level warning."""
        return cls(MessageLevel.INFO, code, title, detail)

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create a WARN-level warning."""
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create an ERROR-level warning."""
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def warning_for_reason(reason: FailureReason, title: str, detail: str = "") -> WarningItem:
    """Map a failure reason onto its warning code."""
    code = _REASON_CODES.get(reason, WarningCode.W_UNKNOWN)
    level = MessageLevel.WARN if reason == FailureReason.NO_IMAGE else MessageLevel.ERROR
    return WarningItem(level, code, title, detail)


def results_to_warnings(results: List["UpdateResult"]) -> List[WarningItem]:
    """
    Warnings for a sequence of update results.

    Failed and skipped boards yield one item each, version mismatches a
    warning, and a mix of successes and failures adds a partial-success
    summary.
    """
    items: List[WarningItem] = []
    for result in results:
        where = f"{result.board_name} at {result.target_id}"
        if result.outcome == UpdateOutcome.VERSION_MISMATCH:
            items.append(WarningItem.warn(
                WarningCode.W_VERSION_MISMATCH,
                f"Version mismatch on {where}",
                result.detail,
            ))
        elif result.outcome in (UpdateOutcome.FAILED, UpdateOutcome.SKIPPED):
            reason = result.reason or FailureReason.IO_ERROR
            items.append(warning_for_reason(
                reason,
                f"{where}: {reason.value}",
                result.detail,
            ))

    if any(r.ok for r in results) and any(r.outcome == UpdateOutcome.FAILED for r in results):
        items.append(WarningItem.warn(
            WarningCode.W_PARTIAL_SUCCESS,
            "Update partially succeeded",
        ))
    return items


# Pre-built common warnings for convenience
COMMON_WARNINGS = {
    "no_ports": WarningItem.error(
        WarningCode.W_NO_PORTS,
        "No serial ports found",
        "No candidate serial ports are visible to the operating system.",
    ),
    "no_boards": WarningItem.warn(
        WarningCode.W_NO_BOARDS,
        "No FAST boards found",
        "None of the open ports answered the identification query.",
    ),
    "cache_empty": WarningItem.warn(
        WarningCode.W_CACHE_EMPTY,
        "Firmware cache is empty",
    ),
    "simulation_mode": WarningItem.info(
        WarningCode.W_SIMULATED,
        "Simulation mode - no hardware is used",
    ),
}
