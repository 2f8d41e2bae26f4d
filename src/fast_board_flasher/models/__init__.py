"""
Board registry for FAST Pinball hardware.

Provides the board, firmware image and board model records shared by the
protocol and orchestration layers.
"""

from .registry import (
    CPU_HARDWARE_ID,
    Board,
    BoardKind,
    BoardModel,
    FirmwareImage,
    exp_addresses,
    board_name_for_address,
)

__all__ = [
    "CPU_HARDWARE_ID",
    "Board",
    "BoardKind",
    "BoardModel",
    "FirmwareImage",
    "exp_addresses",
    "board_name_for_address",
]
