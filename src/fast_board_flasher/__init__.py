"""
FAST Board Flasher - discovery and firmware updates for FAST Pinball boards

Finds NET (CPU) and EXP boards on serial ports, reports their firmware
versions and flashes new firmware, including the node boards behind a
NET controller.
"""

__version__ = "0.1.0"

from fast_board_flasher.core import FirmwareImageStore, UpdateOrchestrator, UpdateResult
from fast_board_flasher.models import Board, BoardKind, FirmwareImage

__all__ = [
    "Board",
    "BoardKind",
    "FirmwareImage",
    "FirmwareImageStore",
    "UpdateOrchestrator",
    "UpdateResult",
    "__version__",
]
