"""
Core module for FAST Board Flasher.

This module provides the single source of truth for:
- The firmware image store over the local cache (image_store.py)
- Downloading the firmware archive (download.py)
- Result objects (results.py)
- Standardized warnings/messages (messages.py)
- Discovery and update sequencing (orchestrator.py)

The CLI calls into this module rather than driving the protocol layer
itself.
"""

from .image_store import (
    FirmwareImageStore,
    ImageEntry,
    ImageStoreError,
    default_firmware_dir,
    parse_image_filename,
)
from .download import (
    FIRMWARE_ARCHIVE_URL,
    DownloadError,
    download_firmware,
    extract_firmware,
    fetch_archive,
)
from .results import UpdateResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    warning_for_reason,
    results_to_warnings,
    COMMON_WARNINGS,
)
from .orchestrator import UpdateOrchestrator

__all__ = [
    # Image store
    "FirmwareImageStore",
    "ImageEntry",
    "ImageStoreError",
    "default_firmware_dir",
    "parse_image_filename",
    # Download
    "FIRMWARE_ARCHIVE_URL",
    "DownloadError",
    "download_firmware",
    "extract_firmware",
    "fetch_archive",
    # Results
    "UpdateResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "warning_for_reason",
    "results_to_warnings",
    "COMMON_WARNINGS",
    # Orchestration
    "UpdateOrchestrator",
]
