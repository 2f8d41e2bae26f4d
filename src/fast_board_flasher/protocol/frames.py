"""
FAST serial command codec.

Every command and reply is one ASCII line terminated by a carriage return.
Commands addressed to an EXP board or a node board carry ``@{address}``
after the command letters, as in ``ID@B4:``.

Identification:
    ID:                  -> ID:NET FP-CPU-2000 02.28
    ID@{addr}:           -> ID:EXP FP-EXP-0071 0.48
    NN:{index:02}        -> NN:03,FP-I/O-3208-2,01.05,...  |  !Node Not Found!

Firmware transfer (stop-and-wait, one ack per frame):
    BE[@addr]:{len:X},{chunks:X}           -> BE:P | BE:F
    BD[@addr]:{seq:04X},{crc:04X},{hex}    -> BD:{seq:04X},P | BD:{seq:04X},F
    BC[@addr]:{image crc:04X}              -> !B:02 (NET) | !BL2040:02 (EXP) | BC:F

Chunk payloads travel hex-encoded so a firmware byte can never be mistaken
for the line terminator. Checksums are CRC16-XMODEM over the raw bytes.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

# Command mnemonics
CMD_IDENTIFY = "ID"
CMD_NODE = "NN"
CMD_ERASE = "BE"
CMD_DATA = "BD"
CMD_COMMIT = "BC"

# Reply markers
ACK_PASS = "P"
ACK_FAIL = "F"
NODE_NOT_FOUND = "!Node Not Found!"
NET_COMPLETION_TOKEN = "!B:02"
EXP_COMPLETION_TOKEN = "!BL2040:02"

PROTOCOL_TOKENS = ("NET", "EXP")

# BD sequence numbers are four hex digits
MAX_CHUNKS = 0x10000

_VERSION_RE = re.compile(r"^\d+(\.\d+)?$")
_CHUNK_ACK_RE = re.compile(r"BD:([0-9A-Fa-f]{1,4}),([PF])\s*$")


def crc16_xmodem(data: bytes) -> int:
    """
    Calculate CRC16-XMODEM checksum (poly 0x1021, init 0).

    Args:
        data: Bytes to checksum

    Returns:
        16-bit CRC value
    """
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ 0x1021
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc


def normalize_version(raw: str) -> str:
    """
    Normalize a firmware version string to ``major.MM``.

    A leading ``v`` and trailing annotations are dropped, leading zeros are
    trimmed from the major number and the minor number is rendered with two
    digits: ``"02.28"`` -> ``"2.28"``, ``"v1.5"`` -> ``"1.05"``,
    ``"0.48,"`` -> ``"0.48"``. Strings that are not numeric are returned
    stripped but otherwise as-is.
    """
    ver = raw.strip().lstrip("vV")
    while ver and not (ver[-1].isdigit() or ver[-1] == "."):
        ver = ver[:-1]
    ver = ver.rstrip(".")
    if not _VERSION_RE.match(ver):
        return raw.strip()
    if "." in ver:
        major, minor = ver.split(".", 1)
        return f"{int(major)}.{int(minor):02d}"
    return str(int(ver))


def version_sort_key(version: str) -> Tuple[int, int]:
    """Numeric (major, minor) key for a normalized version."""
    norm = normalize_version(version)
    if not _VERSION_RE.match(norm):
        return (-1, -1)
    if "." in norm:
        major, minor = norm.split(".", 1)
        return (int(major), int(minor))
    return (int(norm), 0)


def format_command(cmd: str, args: str = "", address: Optional[str] = None) -> str:
    """Build a command line (without terminator)."""
    head = f"{cmd}@{address}" if address else cmd
    return f"{head}:{args}"


def build_identify_command(address: Optional[str] = None) -> str:
    return format_command(CMD_IDENTIFY, address=address)


def build_node_query(index: int) -> str:
    return format_command(CMD_NODE, f"{index:02d}")


def build_erase_command(image_len: int, chunk_count: int, address: Optional[str] = None) -> str:
    return format_command(CMD_ERASE, f"{image_len:X},{chunk_count:X}", address)


def build_chunk_command(seq: int, chunk: bytes, address: Optional[str] = None) -> str:
    """
    Build a BD frame for one chunk.

    Args:
        seq: Zero-based chunk sequence number (16-bit)
        chunk: Raw chunk bytes
        address: Target address, None for the CPU

    Returns:
        Command line without terminator
    """
    if not 0 <= seq < MAX_CHUNKS:
        raise ValueError(f"Chunk sequence out of range: {seq}")
    crc = crc16_xmodem(chunk)
    return format_command(CMD_DATA, f"{seq:04X},{crc:04X},{chunk.hex().upper()}", address)


def build_commit_command(image: bytes, address: Optional[str] = None) -> str:
    return format_command(CMD_COMMIT, f"{crc16_xmodem(image):04X}", address)


def completion_token(protocol: str) -> str:
    """Token a board prints once it has committed new firmware."""
    return NET_COMPLETION_TOKEN if protocol == "NET" else EXP_COMPLETION_TOKEN


def chunk_image(image: bytes, chunk_size: int) -> List[Tuple[int, bytes]]:
    """
    Split an image into (offset, chunk) tuples.

    The final chunk is short when the image is not a multiple of
    ``chunk_size``; it is never padded.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    return [
        (offset, image[offset:offset + chunk_size])
        for offset in range(0, len(image), chunk_size)
    ]


@dataclass(frozen=True)
class IdReply:
    """Parsed ``ID:`` reply."""
    protocol: str
    board_name: str
    version: str
    raw: str = ""


@dataclass(frozen=True)
class NodeReply:
    """Parsed ``NN:`` reply."""
    node_id: str
    board_name: str
    version: str
    extra_fields: List[str] = field(default_factory=list)
    raw: str = ""


def is_id_reply(line: str) -> bool:
    return f"{CMD_IDENTIFY}:" in line


def parse_id_reply(line: str) -> Optional[IdReply]:
    """
    Parse ``ID:{PROTO} {BoardName} {version}``.

    Commas after the protocol token are tolerated
    (``ID:EXP, FP-EXP-0091 v0.48``) and a leading ``v`` on the version is
    dropped.

    Returns:
        IdReply, or None when the line fails validation.
    """
    marker = f"{CMD_IDENTIFY}:"
    if marker not in line:
        return None
    after = line.split(marker, 1)[1].replace(",", " ")
    parts = after.split()
    if len(parts) < 3:
        return None
    protocol = parts[0].upper()
    if protocol not in PROTOCOL_TOKENS:
        return None
    normalized = normalize_version(parts[2])
    if not _VERSION_RE.match(normalized):
        return None
    return IdReply(protocol=protocol, board_name=parts[1], version=normalized, raw=line)


def parse_nn_reply(line: str) -> Optional[NodeReply]:
    """
    Parse ``NN:{id},{name},{version},{extra...}``.

    Returns:
        NodeReply, or None for ``!Node Not Found!`` or a malformed line.
    """
    if NODE_NOT_FOUND in line:
        return None
    marker = f"{CMD_NODE}:"
    idx = line.rfind(marker)
    if idx < 0:
        return None
    parts = [p.strip() for p in line[idx + len(marker):].split(",")]
    if len(parts) < 3 or not parts[0] or not parts[1]:
        return None
    version = normalize_version(parts[2])
    if not _VERSION_RE.match(version):
        return None
    return NodeReply(
        node_id=parts[0],
        board_name=parts[1],
        version=version,
        extra_fields=parts[3:],
        raw=line,
    )


def parse_ack(line: str, cmd: str) -> Optional[bool]:
    """
    Parse a ``{cmd}:P`` / ``{cmd}:F`` acknowledgement.

    Returns:
        True for pass, False for fail, None if the line is not an ack for ``cmd``.
    """
    marker = f"{cmd}:"
    if marker not in line:
        return None
    status = line.split(marker, 1)[1].strip().upper()
    if status == ACK_PASS:
        return True
    if status == ACK_FAIL:
        return False
    return None


def parse_chunk_ack(line: str) -> Optional[Tuple[int, bool]]:
    """
    Parse ``BD:{seq},P`` / ``BD:{seq},F``.

    Returns:
        (sequence number, accepted) or None if the line is not a chunk ack.
    """
    match = _CHUNK_ACK_RE.search(line)
    if not match:
        return None
    return int(match.group(1), 16), match.group(2) == ACK_PASS
