"""
Firmware image store.

Read-only view over the local firmware cache. The cache holds the text
firmware files from the FAST firmware archive, named

    {BoardName}_{Protocol}_firmware_v_{major}_{minor}.txt

either directly in the cache directory or one folder down (the archive
groups files per board family). Board names containing ``/`` appear with
``-`` in file names.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from fast_board_flasher.models import Board, FirmwareImage
from fast_board_flasher.protocol.frames import normalize_version, version_sort_key

logger = logging.getLogger(__name__)

FIRMWARE_DIR_ENV = "FAST_FIRMWARE_DIR"
FILE_VERSION_MARKER = "_firmware_v_"


class ImageStoreError(Exception):
    """Firmware image could not be found or read"""
    pass


def default_firmware_dir() -> Path:
    """Cache directory: ``$FAST_FIRMWARE_DIR`` or ``~/.fast/firmware``."""
    override = os.environ.get(FIRMWARE_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".fast" / "firmware"


def file_safe_name(board_name: str) -> str:
    """Board name as it appears in firmware file names."""
    return board_name.replace("/", "-")


@dataclass(frozen=True)
class ImageEntry:
    """A firmware file available in the cache."""
    board_name: str
    protocol: str
    version: str
    path: Path


def parse_image_filename(path: Path) -> Optional[ImageEntry]:
    """
    Parse a cache file name.

    Returns:
        ImageEntry, or None when the name does not follow the firmware pattern.
    """
    if path.suffix.lower() != ".txt":
        return None
    prefix, sep, version_part = path.stem.partition(FILE_VERSION_MARKER)
    if not sep:
        return None
    board_name, sep, protocol = prefix.rpartition("_")
    if not sep or not board_name or not protocol:
        return None
    pieces = version_part.split("_")
    if len(pieces) < 2 or not pieces[0].isdigit() or not pieces[1].isdigit():
        return None
    version = f"{int(pieces[0])}.{int(pieces[1]):02d}"
    return ImageEntry(board_name=board_name, protocol=protocol.upper(), version=version, path=path)


class FirmwareImageStore:
    """
    Lists and loads cached firmware images.

    The directory is rescanned on every query, so files added by a
    download are picked up without recreating the store.

    Example:
        store = FirmwareImageStore()
        versions = [e.version for e in store.list_images("FP-EXP-0071", "EXP")]
        image = store.load_image(store.latest_image("FP-EXP-0071", "EXP"))
    """

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory) if directory is not None else default_firmware_dir()

    def __repr__(self) -> str:
        return f"FirmwareImageStore({str(self.directory)!r})"

    def is_empty(self) -> bool:
        return not self._scan()

    def _scan(self) -> Dict[Tuple[str, str], Dict[str, ImageEntry]]:
        catalog: Dict[Tuple[str, str], Dict[str, ImageEntry]] = {}
        if not self.directory.is_dir():
            return catalog
        for path in sorted(self.directory.rglob("*")):
            if not path.is_file():
                continue
            entry = parse_image_filename(path)
            if entry is None:
                continue
            key = (entry.board_name, entry.protocol)
            # First file wins when two folders carry the same version
            catalog.setdefault(key, {}).setdefault(entry.version, entry)
        return catalog

    def list_images(self, board_name: str, protocol: str) -> List[ImageEntry]:
        """
        Images available for a board model, oldest version first.

        Args:
            board_name: Board model (e.g. "FP-EXP-0071")
            protocol: "NET" or "EXP"
        """
        key = (file_safe_name(board_name), protocol.upper())
        versions = self._scan().get(key, {})
        return sorted(versions.values(), key=lambda e: version_sort_key(e.version))

    def list_all(self) -> Dict[Tuple[str, str], List[str]]:
        """Every (board name, protocol) in the cache with its versions, oldest first."""
        return {
            key: sorted(versions, key=version_sort_key)
            for key, versions in sorted(self._scan().items())
        }

    def find_image(self, board_name: str, protocol: str, version: str) -> Optional[ImageEntry]:
        wanted = normalize_version(version)
        for entry in self.list_images(board_name, protocol):
            if entry.version == wanted:
                return entry
        return None

    def latest_image(self, board_name: str, protocol: str) -> Optional[ImageEntry]:
        entries = self.list_images(board_name, protocol)
        return entries[-1] if entries else None

    def best_image(self, board: Board, version: Optional[str] = None) -> Optional[ImageEntry]:
        """
        Image to flash onto ``board``.

        Args:
            board: Identified board
            version: Requested version, None for the newest available

        Returns:
            ImageEntry, or None when the cache has no matching file.
        """
        protocol = board.firmware_protocol
        if version is not None:
            return self.find_image(board.board_name, protocol, version)
        return self.latest_image(board.board_name, protocol)

    def load_image(self, entry: ImageEntry) -> FirmwareImage:
        """
        Read an image's bytes.

        Raises:
            ImageStoreError: If the file cannot be read or is empty
        """
        try:
            content = entry.path.read_bytes()
        except OSError as e:
            raise ImageStoreError(f"Cannot read firmware file {entry.path}: {e}")
        if not content:
            raise ImageStoreError(f"Firmware file is empty: {entry.path}")
        logger.debug(f"Loaded {entry.path.name} ({len(content):,} bytes)")
        return FirmwareImage(
            board_name=entry.board_name,
            protocol=entry.protocol,
            version=entry.version,
            content=content,
            path=entry.path,
        )
