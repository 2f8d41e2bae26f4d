"""Tests for board identification against simulated and mocked links."""

from unittest.mock import MagicMock

from fast_board_flasher.models import CPU_HARDWARE_ID, BoardKind
from fast_board_flasher.protocol.identify import BoardIdentifier, IdentifyOutcome
from fast_board_flasher.protocol.settings import LinkSettings
from fast_board_flasher.protocol.simulator import (
    SimulatedBoard,
    SimulatedLink,
    simulated_port,
)
from fast_board_flasher.protocol.transport import PortHandle


def net_port(node_count=0, settings=None):
    link = SimulatedLink(
        root=SimulatedBoard("FP-CPU-2000", "NET", "02.28"),
        nodes=[
            SimulatedBoard(f"FP-I/O-320{i}", "EXP", "1.05", extra_fields=["32", "08"])
            for i in range(node_count)
        ],
    )
    return simulated_port("SIM-NET", link, settings)


def mock_port(lines):
    ser = MagicMock()
    ser.is_open = True
    ser.read_until.side_effect = [line.encode("ascii") + b"\r" for line in lines] + [b""] * 10
    ser.write.side_effect = lambda data: len(data)
    return PortHandle("COM5", LinkSettings(identify_timeout=0.05), ser=ser)


class TestIdentify:
    """identify() classifies a port as board, not-a-board or I/O error."""

    def test_cpu_board(self, link_settings):
        port = net_port(settings=link_settings)
        result = BoardIdentifier(link_settings).identify(port)

        assert result.outcome == IdentifyOutcome.BOARD
        board = result.board
        assert board.kind == BoardKind.NET
        assert board.hardware_id == CPU_HARDWARE_ID
        assert board.board_name == "FP-CPU-2000"
        assert board.reported_version == "2.28"
        assert board.address is None
        assert port.ser.sent_lines == ["ID:"]

    def test_addressed_exp_board(self, exp_bench, link_settings):
        _, sim, port = exp_bench()
        result = BoardIdentifier(link_settings).identify(port, "b4")

        assert result.is_board
        assert result.board.kind == BoardKind.EXP
        assert result.board.hardware_id == "B4"
        assert result.board.address == "B4"
        assert result.board.reported_version == "1.02"
        assert port.ser.sent_lines == ["ID@b4:"]

    def test_silent_address_is_not_a_board(self, exp_bench, link_settings):
        _, _, port = exp_bench()
        result = BoardIdentifier(link_settings).identify(port, "D0")
        assert result.outcome == IdentifyOutcome.NOT_A_BOARD
        assert result.board is None

    def test_invalid_reply_is_not_a_board(self):
        port = mock_port(["ID:XYZ something 1.0"])
        result = BoardIdentifier(port.settings).identify(port)
        assert result.outcome == IdentifyOutcome.NOT_A_BOARD
        assert result.reply == "ID:XYZ something 1.0"

    def test_unrelated_chatter_skipped(self):
        port = mock_port(["ID@88:", "SW:01,00", "ID:EXP FP-EXP-0091 0.48"])
        result = BoardIdentifier(port.settings).identify(port, "88")
        assert result.is_board
        assert result.board.board_name == "FP-EXP-0091"

    def test_io_error_is_distinguished(self, exp_bench, link_settings):
        _, _, port = exp_bench(fail_after_writes=0)
        result = BoardIdentifier(link_settings).identify(port, "B4")
        assert result.outcome == IdentifyOutcome.IO_ERROR
        assert "disconnected" in result.error

    def test_identify_is_idempotent(self, exp_bench, link_settings):
        _, sim, port = exp_bench()
        identifier = BoardIdentifier(link_settings)

        first = identifier.identify(port, "B4")
        second = identifier.identify(port, "B4")

        assert first.board == second.board
        assert first.board.reported_version == second.board.reported_version
        assert sim.commands == ["ID:", "ID:"]


class TestNodes:
    """Node boards behind a NET controller."""

    def test_identify_node(self, link_settings):
        port = net_port(node_count=2, settings=link_settings)
        result = BoardIdentifier(link_settings).identify_node(port, 1)

        board = result.board
        assert board.kind == BoardKind.EXP
        assert board.is_node
        assert board.node_index == 1
        assert board.hardware_id == "01"
        assert board.board_name == "FP-I/O-3201"
        assert board.firmware_protocol == "NET"
        assert board.target_id == "SIM-NET@01"

    def test_list_nodes_stops_at_not_found(self, link_settings):
        port = net_port(node_count=3, settings=link_settings)
        nodes = BoardIdentifier(link_settings).list_nodes(port)

        assert [n.node_index for n in nodes] == [0, 1, 2]
        assert port.ser.sent_lines == ["NN:00", "NN:01", "NN:02", "NN:03"]

    def test_list_nodes_bounded(self):
        settings = LinkSettings(identify_timeout=0.05, max_nodes=2)
        port = net_port(node_count=5, settings=settings)
        nodes = BoardIdentifier(settings).list_nodes(port)
        assert len(nodes) == 2

    def test_no_nodes(self, link_settings):
        port = net_port(settings=link_settings)
        assert BoardIdentifier(link_settings).list_nodes(port) == []

    def test_reidentify_node_uses_node_query(self, link_settings):
        port = net_port(node_count=2, settings=link_settings)
        identifier = BoardIdentifier(link_settings)
        node = identifier.identify_node(port, 1).board

        result = identifier.reidentify(node)
        assert result.board == node
        assert port.ser.sent_lines[-1] == "NN:01"
