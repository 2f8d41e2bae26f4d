"""
Board registry for FAST Pinball controller hardware.

Provides a single source of truth for:
- Board kinds (NET CPU board vs. EXP-class boards)
- Board records produced by identification
- Firmware image records handed to a flash session
- Known EXP board models and the bus addresses they answer on

Usage:
    from fast_board_flasher.models import (
        exp_addresses, board_name_for_address
    )

    # Every EXP address worth querying, in query order
    for address in exp_addresses():
        ...

    # Which model is expected at an address
    name = board_name_for_address("B4")   # "FP-EXP-0071"
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from fast_board_flasher.protocol.transport import PortHandle


# Hardware id given to the Neuron controller itself on a NET link
CPU_HARDWARE_ID = "NC"


class BoardKind(Enum):
    """Protocol family a board speaks."""
    NET = "NET"     # CPU board (Neuron), also the bridge to node boards
    EXP = "EXP"     # Expansion and node boards


@dataclass(eq=True)
class Board:
    """
    A board discovered on a serial link.

    Identity is the (port, hardware_id) pair. Only ``reported_version``
    changes after creation, and only after a post-flash identification.

    Attributes:
        port: Open port handle the board was found on
        kind: NET for the CPU board, EXP for expansion and node boards
        hardware_id: EXP bus address ("B4"), node id ("02") or CPU_HARDWARE_ID
        board_name: Model reported by the board (e.g. "FP-EXP-0071")
        reported_version: Normalized firmware version ("1.05")
        node_index: Position on the CPU's node bus, None for non-node boards
    """
    port: "PortHandle" = field(repr=False)
    kind: BoardKind
    hardware_id: str
    board_name: str
    reported_version: str = field(compare=False)
    node_index: Optional[int] = None

    @property
    def is_node(self) -> bool:
        return self.node_index is not None

    @property
    def address(self) -> Optional[str]:
        """Address used to route commands, None for the CPU itself."""
        if self.kind == BoardKind.NET:
            return None
        return self.hardware_id

    @property
    def firmware_protocol(self) -> str:
        """Protocol key used by firmware file names for this board."""
        # Node boards are reached over the NET link and ship NET firmware.
        if self.kind == BoardKind.NET or self.is_node:
            return BoardKind.NET.value
        return BoardKind.EXP.value

    @property
    def target_id(self) -> str:
        """Human-readable identity, e.g. "/dev/ttyACM0@B4"."""
        return f"{self.port.name}@{self.hardware_id}"


@dataclass(frozen=True)
class FirmwareImage:
    """An opaque firmware payload tagged with the board it targets."""
    board_name: str
    protocol: str
    version: str
    content: bytes = field(repr=False)
    path: Optional[Path] = None


@dataclass(frozen=True)
class BoardModel:
    """Static description of a FAST board model."""
    name: str
    kind: BoardKind
    addresses: List[str] = field(default_factory=list)
    description: str = ""


# ============================================================================
# BOARD REGISTRY - All known board models
# ============================================================================

_BOARD_REGISTRY: Dict[str, BoardModel] = {}


def _register_board(model: BoardModel) -> None:
    """Register a board model."""
    _BOARD_REGISTRY[model.name] = model


def _init_registry() -> None:
    """Initialize the registry with the EXP address map from FAST documentation."""

    # Neuron built-in EXP interface
    _register_board(BoardModel(
        name="FP-CPU-2000",
        kind=BoardKind.NET,
        addresses=["48"],
        description="Neuron controller (NET CPU with built-in EXP)",
    ))

    _register_board(BoardModel(
        name="FP-EXP-0051",
        kind=BoardKind.EXP,
        addresses=["D0", "D1", "D2", "D3"],
        description="Expansion board 0051",
    ))

    _register_board(BoardModel(
        name="FP-EXP-0061",
        kind=BoardKind.EXP,
        addresses=["90", "91", "92", "93"],
        description="Expansion board 0061",
    ))

    _register_board(BoardModel(
        name="FP-EXP-0071",
        kind=BoardKind.EXP,
        addresses=["B4", "B5", "B6", "B7"],
        description="Expansion board 0071",
    ))

    _register_board(BoardModel(
        name="FP-EXP-0081",
        kind=BoardKind.EXP,
        addresses=["84", "85", "86", "87"],
        description="Expansion board 0081",
    ))

    _register_board(BoardModel(
        name="FP-EXP-0091",
        kind=BoardKind.EXP,
        addresses=["88", "89", "8A", "8B"],
        description="Expansion board 0091",
    ))

    _register_board(BoardModel(
        name="FP-EXP-1313",
        kind=BoardKind.EXP,
        addresses=["30", "31", "32", "33"],
        description="Expansion board 1313",
    ))


# Initialize registry on module load
_init_registry()


# ============================================================================
# PUBLIC API
# ============================================================================

def exp_addresses() -> List[str]:
    """All EXP bus addresses to query, in registration order."""
    addresses: List[str] = []
    for model in _BOARD_REGISTRY.values():
        addresses.extend(model.addresses)
    return addresses


def board_name_for_address(address: str) -> Optional[str]:
    """Board model expected at an EXP address (case-insensitive)."""
    wanted = address.upper()
    for model in _BOARD_REGISTRY.values():
        if wanted in (a.upper() for a in model.addresses):
            return model.name
    return None
