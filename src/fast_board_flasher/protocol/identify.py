"""
Board identification.

Probing a port that may host an unrelated serial device is expected to
fail quietly, so identification returns a three-way result instead of
raising: a Board, NOT_A_BOARD (nothing FAST answered), or IO_ERROR (the
link itself broke).
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from fast_board_flasher.models import CPU_HARDWARE_ID, Board, BoardKind

from .frames import (
    build_identify_command,
    build_node_query,
    is_id_reply,
    parse_id_reply,
    parse_nn_reply,
    NODE_NOT_FOUND,
)
from .settings import LinkSettings
from .transport import LinkIOError, PortHandle

logger = logging.getLogger(__name__)


class IdentifyOutcome(Enum):
    BOARD = "board"
    NOT_A_BOARD = "not_a_board"
    IO_ERROR = "io_error"


@dataclass
class IdentifyResult:
    """
    Outcome of one identification query.

    Attributes:
        outcome: BOARD, NOT_A_BOARD or IO_ERROR
        board: The identified board when outcome is BOARD
        reply: Raw reply line that decided the outcome, if any
        error: Transport error text when outcome is IO_ERROR
    """
    outcome: IdentifyOutcome
    board: Optional[Board] = None
    reply: str = ""
    error: str = ""

    @property
    def is_board(self) -> bool:
        return self.outcome == IdentifyOutcome.BOARD

    @classmethod
    def found(cls, board: Board, reply: str = "") -> "IdentifyResult":
        return cls(IdentifyOutcome.BOARD, board=board, reply=reply)

    @classmethod
    def not_a_board(cls, reply: str = "") -> "IdentifyResult":
        return cls(IdentifyOutcome.NOT_A_BOARD, reply=reply)

    @classmethod
    def io_error(cls, error: str) -> "IdentifyResult":
        return cls(IdentifyOutcome.IO_ERROR, error=error)


class BoardIdentifier:
    """
    Sends identification queries and classifies the replies.

    Example:
        identifier = BoardIdentifier()
        result = identifier.identify(port)             # ID:
        result = identifier.identify(port, "B4")       # ID@B4:
        nodes = identifier.list_nodes(port)            # NN:00, NN:01, ...
    """

    def __init__(self, settings: Optional[LinkSettings] = None):
        self.settings = settings or LinkSettings()

    def _query(
        self,
        port: PortHandle,
        command: str,
        is_candidate: Callable[[str], bool],
    ) -> Optional[str]:
        """
        Send ``command`` and return the first reply line that looks like an answer.

        Unrelated lines (echoes, asynchronous board chatter) are skipped
        until the identify timeout runs out.
        """
        port.discard_input()
        port.send_line(command)
        deadline = time.monotonic() + self.settings.identify_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            line = port.read_line(remaining)
            if line is None:
                return None
            if line == command:
                continue
            if is_candidate(line):
                return line
            logger.debug(f"Ignoring unrelated line on {port.name}: {line!r}")

    def identify(self, port: PortHandle, address: Optional[str] = None) -> IdentifyResult:
        """
        Identify the board behind ``port``.

        Args:
            port: Open port handle
            address: EXP bus address to query (``ID@{address}:``), None for ``ID:``

        Returns:
            IdentifyResult; never raises for a missing or foreign device.
        """
        command = build_identify_command(address)
        with port.exclusive():
            try:
                line = self._query(port, command, is_id_reply)
            except LinkIOError as e:
                logger.warning(f"Identify failed on {port.name}: {e}")
                return IdentifyResult.io_error(str(e))

        if line is None:
            logger.debug(f"No ID reply on {port.name} for {command!r}")
            return IdentifyResult.not_a_board()

        reply = parse_id_reply(line)
        if reply is None:
            logger.debug(f"Invalid ID reply on {port.name}: {line!r}")
            return IdentifyResult.not_a_board(line)

        kind = BoardKind(reply.protocol)
        if address is not None:
            hardware_id = address.upper()
        elif kind == BoardKind.NET:
            hardware_id = CPU_HARDWARE_ID
        else:
            hardware_id = reply.board_name

        board = Board(
            port=port,
            kind=kind,
            hardware_id=hardware_id,
            board_name=reply.board_name,
            reported_version=reply.version,
        )
        logger.info(
            f"Identified {board.board_name} v{board.reported_version} "
            f"({kind.value}) at {board.target_id}"
        )
        return IdentifyResult.found(board, line)

    def identify_node(self, port: PortHandle, index: int) -> IdentifyResult:
        """
        Identify the node board at ``index`` behind a NET port.

        ``!Node Not Found!`` and silence both mean NOT_A_BOARD.
        """
        command = build_node_query(index)
        with port.exclusive():
            try:
                line = self._query(
                    port,
                    command,
                    lambda l: "NN:" in l or NODE_NOT_FOUND in l,
                )
            except LinkIOError as e:
                logger.warning(f"Node query {index} failed on {port.name}: {e}")
                return IdentifyResult.io_error(str(e))

        if line is None:
            return IdentifyResult.not_a_board()

        reply = parse_nn_reply(line)
        if reply is None:
            return IdentifyResult.not_a_board(line)

        board = Board(
            port=port,
            kind=BoardKind.EXP,
            hardware_id=f"{index:02d}",
            board_name=reply.board_name,
            reported_version=reply.version,
            node_index=index,
        )
        logger.info(f"Node {index:02d}: {board.board_name} v{board.reported_version}")
        return IdentifyResult.found(board, line)

    def reidentify(self, board: Board) -> IdentifyResult:
        """Repeat the query that originally found ``board``."""
        if board.is_node:
            return self.identify_node(board.port, board.node_index)
        return self.identify(board.port, board.address)

    def list_nodes(self, port: PortHandle) -> List[Board]:
        """
        Walk node indices on a NET port until the first one that does not answer.

        Returns:
            Node boards in discovery (index) order.
        """
        nodes: List[Board] = []
        for index in range(self.settings.max_nodes):
            result = self.identify_node(port, index)
            if not result.is_board:
                if result.outcome == IdentifyOutcome.IO_ERROR:
                    logger.warning(f"Stopped node scan at {index}: {result.error}")
                break
            nodes.append(result.board)
        logger.info(f"Found {len(nodes)} node board(s) on {port.name}")
        return nodes
