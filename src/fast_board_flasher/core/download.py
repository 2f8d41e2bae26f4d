"""
Firmware archive download.

Fetches the public FAST firmware repository as a zip and extracts its
``.txt`` firmware files into the local cache, dropping the archive's
top-level folder (``fast-firmware-main/``).
"""

import io
import logging
import zipfile
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional

import requests

from .image_store import default_firmware_dir

logger = logging.getLogger(__name__)

FIRMWARE_ARCHIVE_URL = "https://github.com/fastpinball/fast-firmware/archive/refs/heads/main.zip"
DOWNLOAD_TIMEOUT = 60
_CHUNK_BYTES = 64 * 1024


class DownloadError(Exception):
    """Firmware archive could not be downloaded or extracted"""
    pass


def fetch_archive(
    url: str = FIRMWARE_ARCHIVE_URL,
    timeout: float = DOWNLOAD_TIMEOUT,
    on_progress: Optional[Callable[[int, int], None]] = None,
    session: Optional[requests.Session] = None,
) -> bytes:
    """
    Download the archive into memory.

    Args:
        url: Archive URL
        timeout: Connect/read timeout (seconds)
        on_progress: Called with (bytes received, total bytes or 0)
        session: requests session to use

    Raises:
        DownloadError: On any HTTP or network failure
    """
    http = session or requests.Session()
    logger.info(f"Downloading firmware archive from {url}")
    try:
        response = http.get(url, stream=True, timeout=timeout)
        response.raise_for_status()
        total = int(response.headers.get("content-length", 0) or 0)
        buffer = io.BytesIO()
        received = 0
        for chunk in response.iter_content(chunk_size=_CHUNK_BYTES):
            if not chunk:
                continue
            buffer.write(chunk)
            received += len(chunk)
            if on_progress is not None:
                on_progress(received, total)
    except requests.exceptions.HTTPError as e:
        raise DownloadError(f"HTTP error downloading firmware: {e}") from e
    except requests.exceptions.RequestException as e:
        raise DownloadError(f"Download failed: {e}") from e
    logger.debug(f"Downloaded {received:,} bytes")
    return buffer.getvalue()


def _relative_member_path(name: str) -> Optional[PurePosixPath]:
    """Archive member path with the top-level folder removed, None to skip."""
    parts = PurePosixPath(name).parts[1:]
    if not parts or any(part in ("..", "") for part in parts):
        return None
    return PurePosixPath(*parts)


def extract_firmware(archive: bytes, target: Path) -> List[Path]:
    """
    Extract ``.txt`` files from a firmware zip into ``target``.

    Returns:
        Paths written, in archive order.

    Raises:
        DownloadError: If the data is not a zip or cannot be written
    """
    written: List[Path] = []
    try:
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            target.mkdir(parents=True, exist_ok=True)
            for info in zf.infolist():
                if info.is_dir():
                    continue
                rel = _relative_member_path(info.filename)
                if rel is None or rel.suffix.lower() != ".txt":
                    continue
                out_path = target.joinpath(*rel.parts)
                out_path.parent.mkdir(parents=True, exist_ok=True)
                out_path.write_bytes(zf.read(info))
                written.append(out_path)
    except zipfile.BadZipFile as e:
        raise DownloadError(f"Invalid firmware archive: {e}") from e
    except OSError as e:
        raise DownloadError(f"Cannot write firmware files to {target}: {e}") from e

    if not written:
        logger.warning("No .txt firmware files were found in the archive")
    else:
        logger.info(f"Extracted {len(written)} firmware files into {target}")
    return written


def download_firmware(
    target: Optional[Path] = None,
    url: str = FIRMWARE_ARCHIVE_URL,
    on_progress: Optional[Callable[[int, int], None]] = None,
    session: Optional[requests.Session] = None,
) -> List[Path]:
    """
    Download the firmware archive and refresh the cache.

    Args:
        target: Cache directory (defaults to the configured firmware dir)
        url: Archive URL
        on_progress: Download progress callback
        session: requests session to use

    Returns:
        Firmware files written.
    """
    target = target or default_firmware_dir()
    archive = fetch_archive(url, on_progress=on_progress, session=session)
    return extract_firmware(archive, target)
