"""Shared fixtures: simulated FAST links and fast-failing flash settings."""

import pytest

from fast_board_flasher.models import Board, BoardKind, FirmwareImage
from fast_board_flasher.protocol.settings import FlashSettings, LinkSettings
from fast_board_flasher.protocol.simulator import (
    SimulatedBoard,
    SimulatedLink,
    simulated_image,
    simulated_port,
)


@pytest.fixture
def flash_settings():
    """Small chunks and short timeouts; simulated reads never block anyway."""
    return FlashSettings(
        chunk_size=16,
        erase_timeout=0.05,
        ack_timeout=0.05,
        commit_timeout=0.05,
        verify_interval=0.0,
    )


@pytest.fixture
def link_settings():
    return LinkSettings(identify_timeout=0.05)


@pytest.fixture
def exp_bench(link_settings):
    """
    Factory for an EXP link with one board at an address.

    Returns (target Board, SimulatedBoard, PortHandle).
    """
    def make(board=None, address="B4", fail_after_writes=None):
        board = board or SimulatedBoard("FP-EXP-0071", "EXP", "1.2")
        link = SimulatedLink(
            root=SimulatedBoard("FP-CPU-2000", "EXP", "0.48"),
            boards={address: board},
        )
        port = simulated_port("SIM-EXP", link, link_settings, fail_after_writes)
        target = Board(
            port=port,
            kind=BoardKind.EXP,
            hardware_id=address,
            board_name=board.board_name,
            reported_version=board.version,
        )
        return target, board, port

    return make


@pytest.fixture
def exp_image():
    """160-byte FP-EXP-0071 image for v1.3: ten 16-byte chunks."""
    return FirmwareImage(
        board_name="FP-EXP-0071",
        protocol="EXP",
        version="1.3",
        content=simulated_image("FP-EXP-0071", "1.3", size=160),
    )
