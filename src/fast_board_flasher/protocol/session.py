"""
Flash session state machine.

Drives one board through erase, chunked transfer and commit, then confirms
the result with a fresh identification query:

    IDLE -> ERASING -> TRANSFERRING -> VERIFYING -> DONE
      \\________\\______________\\____________\\-> FAILED(reason)

Chunks are sent stop-and-wait. A rejected or unacknowledged chunk is resent
on its own, up to ``FlashSettings.chunk_attempts`` sends, so data the board
already accepted is never transferred twice. SUCCESS and VERSION_MISMATCH
come only from the post-flash identification, never from the transfer.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from fast_board_flasher.models import Board, FirmwareImage

from .frames import (
    CMD_COMMIT,
    CMD_ERASE,
    MAX_CHUNKS,
    build_chunk_command,
    build_commit_command,
    build_erase_command,
    chunk_image,
    completion_token,
    normalize_version,
    parse_ack,
    parse_chunk_ack,
)
from .identify import BoardIdentifier
from .settings import FlashSettings
from .transport import LinkIOError, LinkTimeout

logger = logging.getLogger(__name__)


class FlashState(Enum):
    IDLE = "idle"
    ERASING = "erasing"
    TRANSFERRING = "transferring"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


class UpdateOutcome(Enum):
    SUCCESS = "success"
    VERSION_MISMATCH = "version_mismatch"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureReason(Enum):
    TIMEOUT = "timeout"
    ERASE_REJECTED = "erase_rejected"
    CHUNK_REJECTED = "chunk_rejected"
    COMMIT_REJECTED = "commit_rejected"
    POST_FLASH_UNRESPONSIVE = "post_flash_unresponsive"
    IO_ERROR = "io_error"
    CANCELLED = "cancelled"
    NO_IMAGE = "no_image"
    IMAGE_TOO_LARGE = "image_too_large"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class FlashEvent:
    """
    Progress notification for display.

    ``chunk`` is 1-based and set only for chunk-acknowledged events.
    """
    target_id: str
    state: FlashState
    chunk: Optional[int] = None
    chunk_count: int = 0
    bytes_sent: int = 0
    total_bytes: int = 0
    message: str = ""


class FlashSessionError(Exception):
    """Terminal failure inside a flash session"""

    def __init__(self, reason: FailureReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class FlashSession:
    """
    One flash attempt of one image onto one board.

    A session runs once. Its fields are updated only by ``run()``.

    Example:
        session = FlashSession(board, image, on_event=print)
        outcome = session.run()
        if outcome is UpdateOutcome.FAILED:
            print(session.failure, session.detail)
    """

    def __init__(
        self,
        target: Board,
        image: FirmwareImage,
        settings: Optional[FlashSettings] = None,
        identifier: Optional[BoardIdentifier] = None,
        on_event: Optional[Callable[[FlashEvent], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.target = target
        self.image = image
        self.settings = settings or FlashSettings()
        self.identifier = identifier or BoardIdentifier(target.port.settings)
        self.on_event = on_event
        self.cancel_event = cancel_event

        self.state = FlashState.IDLE
        self.outcome: Optional[UpdateOutcome] = None
        self.failure: Optional[FailureReason] = None
        self.detail = ""
        self.retry_count = 0
        self.chunks_acked = 0
        self.chunk_count = 0
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.reported_version: Optional[str] = None

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def _emit(self, message: str = "", chunk: Optional[int] = None, bytes_sent: int = 0) -> None:
        if self.on_event is None:
            return
        self.on_event(FlashEvent(
            target_id=self.target.target_id,
            state=self.state,
            chunk=chunk,
            chunk_count=self.chunk_count,
            bytes_sent=bytes_sent,
            total_bytes=len(self.image.content),
            message=message,
        ))

    def _enter(self, state: FlashState, message: str = "") -> None:
        self.state = state
        logger.debug(f"{self.target.target_id}: {state.value}")
        self._emit(message)

    def _await_line(self, phase: str, timeout: float, match: Callable[[str], Optional[object]]):
        """
        Read lines until ``match`` returns a non-None value.

        Raises:
            LinkTimeout: If no matching line arrives within ``timeout``
        """
        port = self.target.port
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LinkTimeout(phase, timeout)
            line = port.read_line(remaining)
            if line is None:
                raise LinkTimeout(phase, timeout)
            result = match(line)
            if result is not None:
                return result
            logger.debug(f"{phase}: ignoring {line!r}")

    def run(self) -> UpdateOutcome:
        """
        Execute the session to a terminal state.

        Returns:
            SUCCESS, VERSION_MISMATCH or FAILED (see ``failure``/``detail``).

        Raises:
            RuntimeError: If the session already ran
            PortBusyError: If another operation owns the target's port
        """
        if self.state is not FlashState.IDLE:
            raise RuntimeError("FlashSession can only run once")

        port = self.target.port
        with port.exclusive():
            self.started_at = time.monotonic()
            logger.info(
                f"Flashing {self.target.board_name} at {self.target.target_id} "
                f"to v{self.image.version} ({len(self.image.content):,} bytes)"
            )
            try:
                self._erase()
                self._transfer()
                self._commit()
                self._verify()
            except FlashSessionError as e:
                self._fail(e.reason, e.detail)
            except LinkTimeout as e:
                self._fail(FailureReason.TIMEOUT, str(e))
            except LinkIOError as e:
                self._fail(FailureReason.IO_ERROR, str(e))
            finally:
                self.finished_at = time.monotonic()
        return self.outcome

    def _fail(self, reason: FailureReason, detail: str) -> None:
        self.failure = reason
        self.detail = detail
        self.outcome = UpdateOutcome.FAILED
        logger.error(f"Flash of {self.target.target_id} failed ({reason.value}): {detail}")
        self._enter(FlashState.FAILED, detail)

    def _erase(self) -> None:
        port = self.target.port
        chunks = chunk_image(self.image.content, self.settings.chunk_size)
        self.chunk_count = len(chunks)
        self._enter(FlashState.ERASING, "Preparing board")
        if self.chunk_count > MAX_CHUNKS:
            raise FlashSessionError(
                FailureReason.IMAGE_TOO_LARGE,
                f"{len(self.image.content):,} bytes needs {self.chunk_count} chunks of "
                f"{self.settings.chunk_size} bytes; at most {MAX_CHUNKS} fit the sequence field",
            )

        port.discard_input()
        port.send_line(build_erase_command(
            len(self.image.content), self.chunk_count, self.target.address,
        ))
        accepted = self._await_line(
            "erase",
            self.settings.erase_timeout,
            lambda line: parse_ack(line, CMD_ERASE),
        )
        if not accepted:
            raise FlashSessionError(FailureReason.ERASE_REJECTED, "Board refused erase")

    def _transfer(self) -> None:
        chunks = chunk_image(self.image.content, self.settings.chunk_size)
        self._enter(FlashState.TRANSFERRING, f"Sending {len(chunks)} chunks")

        sent = 0
        for seq, (_, chunk) in enumerate(chunks):
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise FlashSessionError(
                    FailureReason.CANCELLED,
                    f"Cancelled after {seq} of {len(chunks)} chunks",
                )
            self._send_chunk(seq, chunk, len(chunks))
            self.chunks_acked += 1
            sent += len(chunk)
            self._emit(chunk=seq + 1, bytes_sent=sent)

    def _send_chunk(self, seq: int, chunk: bytes, total: int) -> None:
        """Send one chunk until it is acknowledged or its attempts run out."""
        port = self.target.port
        frame = build_chunk_command(seq, chunk, self.target.address)
        attempts = self.settings.chunk_attempts
        last_reason = FailureReason.CHUNK_REJECTED
        last_detail = ""

        def match(line: str):
            ack = parse_chunk_ack(line)
            if ack is not None and ack[0] < seq:
                # Late ack for a chunk that was already accepted
                logger.debug(f"Ignoring stale ack for chunk {ack[0] + 1} while waiting for {seq + 1}")
                return None
            return ack

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self.retry_count += 1
                logger.warning(
                    f"Resending chunk {seq + 1}/{total} "
                    f"(attempt {attempt}/{attempts}): {last_detail}"
                )
            port.send_line(frame)
            try:
                ack_seq, accepted = self._await_line(
                    "transfer",
                    self.settings.ack_timeout,
                    match,
                )
            except LinkTimeout as e:
                last_reason = FailureReason.TIMEOUT
                last_detail = str(e)
                continue

            if accepted and ack_seq == seq:
                return
            last_reason = FailureReason.CHUNK_REJECTED
            if ack_seq != seq:
                last_detail = f"ack for chunk {ack_seq + 1} while waiting for {seq + 1}"
            else:
                last_detail = "board reported checksum or sequence error"

        raise FlashSessionError(
            last_reason,
            f"Chunk {seq + 1}/{total} failed after {attempts} attempts: {last_detail}",
        )

    def _commit(self) -> None:
        port = self.target.port
        self._enter(FlashState.VERIFYING, "Committing firmware")
        token = completion_token(self.target.kind.value)

        def match(line: str) -> Optional[bool]:
            if token in line:
                return True
            if parse_ack(line, CMD_COMMIT) is False:
                return False
            return None

        port.send_line(build_commit_command(self.image.content, self.target.address))
        committed = self._await_line("commit", self.settings.commit_timeout, match)
        if not committed:
            raise FlashSessionError(FailureReason.COMMIT_REJECTED, "Board refused commit")
        logger.info(f"{self.target.target_id} reported completion ({token})")

    def _verify(self) -> None:
        expected = normalize_version(self.image.version)
        result = None
        for attempt in range(1, self.settings.verify_attempts + 1):
            result = self.identifier.reidentify(self.target)
            if result.is_board:
                break
            logger.debug(
                f"Post-flash identify {attempt}/{self.settings.verify_attempts} "
                f"of {self.target.target_id}: {result.outcome.value}"
            )
            if attempt < self.settings.verify_attempts:
                time.sleep(self.settings.verify_interval)

        if result is None or not result.is_board:
            raise FlashSessionError(
                FailureReason.POST_FLASH_UNRESPONSIVE,
                "Board did not identify after flashing",
            )

        reported = result.board.reported_version
        self.reported_version = reported
        self.target.reported_version = reported
        if result.board.board_name != self.target.board_name:
            logger.warning(
                f"Board name changed after flash: expected {self.target.board_name}, "
                f"got {result.board.board_name}"
            )

        if reported == expected:
            self.outcome = UpdateOutcome.SUCCESS
            logger.info(f"Verified {self.target.target_id} reports v{reported}")
            self._enter(FlashState.DONE, f"Verified v{reported}")
        else:
            self.outcome = UpdateOutcome.VERSION_MISMATCH
            self.detail = f"expected v{expected}, board reports v{reported}"
            logger.warning(f"Version mismatch on {self.target.target_id}: {self.detail}")
            self._enter(FlashState.DONE, self.detail)
