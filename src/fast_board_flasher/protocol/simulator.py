"""
In-process simulation of FAST boards behind a serial port.

``SimulatedSerial`` implements the subset of the pyserial ``Serial``
interface that ``PortHandle`` uses, so the identifier, flash session and
orchestrator run unchanged against it. Each simulated board accepts the
same command lines real hardware does and can be told to misbehave
(refuse erase, reject or drop chunk acks, go silent after a flash) for
testing failure handling.

Used by the ``--simulate`` CLI option and by the test suite.
"""

import logging
import re
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional

import serial

from .frames import (
    ACK_FAIL,
    ACK_PASS,
    CMD_COMMIT,
    CMD_DATA,
    CMD_ERASE,
    CMD_IDENTIFY,
    CMD_NODE,
    NODE_NOT_FOUND,
    completion_token,
    crc16_xmodem,
    normalize_version,
)
from .settings import LinkSettings
from .transport import TERMINATOR, PortHandle

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(rb"SIMULATED FIRMWARE (\S+) v?(\d+(?:\.\d+)?)")


def simulated_image(board_name: str, version: str, size: int = 2048) -> bytes:
    """
    Build a firmware payload the simulator understands.

    The payload carries a marker line naming the board and version; a
    simulated board that commits it afterwards reports that version.
    """
    header = f"SIMULATED FIRMWARE {board_name} {normalize_version(version)}\n".encode("ascii")
    body = bytearray(header)
    line_no = 0
    while len(body) < size:
        body.extend(f":{line_no:04X}{'00' * 16}\n".encode("ascii"))
        line_no += 1
    return bytes(body[:max(size, len(header))])


class SimulatedBoard:
    """
    One simulated board.

    Args:
        board_name: Model reported in ID/NN replies
        kind: "NET" or "EXP"; selects the completion token
        version: Firmware version reported before flashing
        nak_chunks: seq -> number of times to answer ``BD:{seq},F`` first
        drop_acks: seq -> number of times to stay silent instead of acking
        late_acks: seq -> number of times to accept the chunk but hold its ack
            back until the next command arrives
        refuse_erase: Answer ``BE:F``
        reject_commit: Answer ``BC:F``
        silent_commit: Never print the completion token
        unresponsive_after_flash: Stop answering identification once committed
        after_flash_version: Version to report after a commit; by default it
            comes from the image marker, else the version is unchanged
        extra_fields: Trailing fields of the NN reply
    """

    def __init__(
        self,
        board_name: str,
        kind: str = "EXP",
        version: str = "0.48",
        nak_chunks: Optional[Dict[int, int]] = None,
        drop_acks: Optional[Dict[int, int]] = None,
        late_acks: Optional[Dict[int, int]] = None,
        refuse_erase: bool = False,
        reject_commit: bool = False,
        silent_commit: bool = False,
        unresponsive_after_flash: bool = False,
        after_flash_version: Optional[str] = None,
        extra_fields: Optional[List[str]] = None,
    ):
        self.board_name = board_name
        self.kind = kind
        self.version = normalize_version(version)
        self.nak_chunks = Counter(nak_chunks or {})
        self.drop_acks = Counter(drop_acks or {})
        self.late_acks = Counter(late_acks or {})
        self.refuse_erase = refuse_erase
        self.reject_commit = reject_commit
        self.silent_commit = silent_commit
        self.unresponsive_after_flash = unresponsive_after_flash
        self.after_flash_version = after_flash_version
        self.extra_fields = list(extra_fields or [])

        self.erased = False
        self.flashed = False
        self.image_len = 0
        self.chunks: List[bytes] = []
        self.chunk_sends: Counter = Counter()
        self.commands: List[str] = []
        self._held: List[str] = []

    def __repr__(self) -> str:
        return f"SimulatedBoard({self.board_name!r}, {self.kind}, v{self.version})"

    @property
    def responsive(self) -> bool:
        return not (self.flashed and self.unresponsive_after_flash)

    @property
    def received_image(self) -> bytes:
        return b"".join(self.chunks)

    def id_reply(self) -> List[str]:
        if not self.responsive:
            return []
        return [f"ID:{self.kind} {self.board_name} {self.version}"]

    def nn_reply(self, index: int) -> List[str]:
        if not self.responsive:
            return []
        fields = [f"{index:02d}", self.board_name, self.version] + self.extra_fields
        return [f"{CMD_NODE}:" + ",".join(fields)]

    def handle(self, cmd: str, args: str) -> List[str]:
        """Answer one command addressed to this board."""
        self.commands.append(f"{cmd}:{args}")
        held, self._held = self._held, []
        return held + self._dispatch(cmd, args)

    def _dispatch(self, cmd: str, args: str) -> List[str]:
        if cmd == CMD_IDENTIFY:
            return self.id_reply()
        if cmd == CMD_ERASE:
            return self._erase(args)
        if cmd == CMD_DATA:
            return self._chunk(args)
        if cmd == CMD_COMMIT:
            return self._commit(args)
        logger.debug(f"{self.board_name}: ignoring {cmd}:{args}")
        return []

    def _erase(self, args: str) -> List[str]:
        if self.refuse_erase:
            return [f"{CMD_ERASE}:{ACK_FAIL}"]
        try:
            self.image_len = int(args.split(",")[0], 16)
        except ValueError:
            return [f"{CMD_ERASE}:{ACK_FAIL}"]
        self.erased = True
        self.chunks = []
        return [f"{CMD_ERASE}:{ACK_PASS}"]

    def _chunk(self, args: str) -> List[str]:
        parts = args.split(",")
        if len(parts) != 3:
            return []
        try:
            seq = int(parts[0], 16)
            crc = int(parts[1], 16)
            data = bytes.fromhex(parts[2])
        except ValueError:
            return []
        self.chunk_sends[seq] += 1

        if self.drop_acks[seq] > 0:
            self.drop_acks[seq] -= 1
            return []
        nak = f"{CMD_DATA}:{seq:04X},{ACK_FAIL}"
        if self.nak_chunks[seq] > 0:
            self.nak_chunks[seq] -= 1
            return [nak]
        if not self.erased or crc16_xmodem(data) != crc:
            return [nak]
        if seq == len(self.chunks) - 1:
            # Resend of a chunk whose ack was lost
            self.chunks[seq] = data
        elif seq == len(self.chunks):
            self.chunks.append(data)
        else:
            return [nak]
        ack = f"{CMD_DATA}:{seq:04X},{ACK_PASS}"
        if self.late_acks[seq] > 0:
            self.late_acks[seq] -= 1
            self._held.append(ack)
            return []
        return [ack]

    def _commit(self, args: str) -> List[str]:
        image = self.received_image
        fail = [f"{CMD_COMMIT}:{ACK_FAIL}"]
        if self.reject_commit or not self.erased:
            return fail
        try:
            crc = int(args, 16)
        except ValueError:
            return fail
        if len(image) != self.image_len or crc16_xmodem(image) != crc:
            return fail

        self.erased = False
        self.flashed = True
        if self.after_flash_version is not None:
            self.version = normalize_version(self.after_flash_version)
        else:
            match = _MARKER_RE.search(image)
            if match:
                self.version = normalize_version(match.group(2).decode("ascii"))
        logger.debug(f"{self.board_name}: committed {len(image)} bytes, now v{self.version}")
        if self.silent_commit:
            return []
        return [completion_token(self.kind)]


class SimulatedLink:
    """
    The boards reachable through one serial port.

    A NET link has a CPU board answering un-addressed commands and node
    boards addressed by two-digit index. An EXP link has a bridge
    answering ``ID:`` and EXP boards keyed by bus address.
    """

    def __init__(
        self,
        root: Optional[SimulatedBoard] = None,
        boards: Optional[Dict[str, SimulatedBoard]] = None,
        nodes: Optional[List[SimulatedBoard]] = None,
    ):
        self.root = root
        self.boards = {addr.upper(): board for addr, board in (boards or {}).items()}
        self.nodes = list(nodes or [])

    def _addressed(self, address: str) -> Optional[SimulatedBoard]:
        if address.upper() in self.boards:
            return self.boards[address.upper()]
        if address.isdigit() and int(address) < len(self.nodes):
            return self.nodes[int(address)]
        return None

    def dispatch(self, line: str) -> List[str]:
        head, sep, args = line.partition(":")
        if not sep:
            return []
        cmd, _, address = head.partition("@")

        if cmd == CMD_NODE:
            try:
                index = int(args)
            except ValueError:
                return []
            if index >= len(self.nodes):
                return [NODE_NOT_FOUND]
            return self.nodes[index].nn_reply(index)

        if address:
            board = self._addressed(address)
        else:
            board = self.root
        if board is None:
            return []
        return board.handle(cmd, args)


class SimulatedSerial:
    """
    Serial-port stand-in that answers from a SimulatedLink.

    Replies are queued as soon as a command line is written, so reads never
    block; silence shows up as an immediate empty read.

    Args:
        link: Boards behind this port
        fail_after_writes: Raise SerialException on every write after this many
    """

    def __init__(self, link: SimulatedLink, fail_after_writes: Optional[int] = None):
        self.link = link
        self.fail_after_writes = fail_after_writes
        self.is_open = True
        self.timeout = None
        self.dtr = True
        self.writes = 0
        self.sent_lines: List[str] = []
        self._tx = bytearray()
        self._rx = bytearray()

    def _check_open(self) -> None:
        if not self.is_open:
            raise serial.SerialException("Port is closed")

    def write(self, data: bytes) -> int:
        self._check_open()
        self.writes += 1
        if self.fail_after_writes is not None and self.writes > self.fail_after_writes:
            raise serial.SerialException("Simulated device disconnected")
        self._tx.extend(data)
        while True:
            end = self._tx.find(TERMINATOR)
            if end < 0:
                break
            line = bytes(self._tx[:end]).decode("ascii")
            del self._tx[:end + 1]
            self.sent_lines.append(line)
            for reply in self.link.dispatch(line):
                self._rx.extend(reply.encode("ascii") + TERMINATOR)
        return len(data)

    def flush(self) -> None:
        self._check_open()

    def read_until(self, expected: bytes = TERMINATOR, size: Optional[int] = None) -> bytes:
        self._check_open()
        end = self._rx.find(expected)
        if end < 0:
            data = bytes(self._rx)
            self._rx.clear()
            return data
        data = bytes(self._rx[:end + len(expected)])
        del self._rx[:end + len(expected)]
        return data

    def reset_input_buffer(self) -> None:
        self._check_open()
        self._rx.clear()

    def reset_output_buffer(self) -> None:
        self._check_open()
        self._tx.clear()

    def close(self) -> None:
        self.is_open = False


def simulated_port(
    name: str,
    link: SimulatedLink,
    settings: Optional[LinkSettings] = None,
    fail_after_writes: Optional[int] = None,
) -> PortHandle:
    """Open a PortHandle backed by a simulated link."""
    return PortHandle(name, settings, ser=SimulatedSerial(link, fail_after_writes))


# ============================================================================
# DEMO BENCH - used by the CLI --simulate option
# ============================================================================

DEMO_LATEST_VERSIONS = {
    ("FP-CPU-2000", "NET"): "2.31",
    ("FP-CPU-2000", "EXP"): "0.52",
    ("FP-EXP-0071", "EXP"): "0.52",
    ("FP-EXP-0091", "EXP"): "0.52",
    ("FP-I/O-3208", "NET"): "1.07",
    ("FP-I/O-0804", "NET"): "1.07",
}


def demo_ports(settings: Optional[LinkSettings] = None) -> List[PortHandle]:
    """A Neuron with two node boards on SIM-NET and two EXP boards on SIM-EXP."""
    net = SimulatedLink(
        root=SimulatedBoard("FP-CPU-2000", "NET", "2.28"),
        nodes=[
            SimulatedBoard("FP-I/O-3208", "EXP", "1.05", extra_fields=["32", "08"]),
            SimulatedBoard("FP-I/O-0804", "EXP", "1.05", extra_fields=["08", "04"]),
        ],
    )
    exp = SimulatedLink(
        root=SimulatedBoard("FP-CPU-2000", "EXP", "0.48"),
        boards={
            "48": SimulatedBoard("FP-CPU-2000", "EXP", "0.48"),
            "B4": SimulatedBoard("FP-EXP-0071", "EXP", "0.48"),
            "88": SimulatedBoard("FP-EXP-0091", "EXP", "0.50"),
        },
    )
    return [
        simulated_port("SIM-NET", net, settings),
        simulated_port("SIM-EXP", exp, settings),
    ]


def write_demo_firmware(directory: Path) -> List[Path]:
    """Write one simulated image per demo board model into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    written = []
    for (board_name, protocol), version in DEMO_LATEST_VERSIONS.items():
        major, minor = normalize_version(version).split(".")
        filename = f"{board_name.replace('/', '-')}_{protocol}_firmware_v_{major}_{minor}.txt"
        path = directory / filename
        path.write_bytes(simulated_image(board_name, version))
        written.append(path)
    logger.info(f"Wrote {len(written)} simulated firmware images to {directory}")
    return written
