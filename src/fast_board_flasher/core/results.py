"""
Result objects for update operations.

One UpdateResult is produced per board touched by an update. The CLI
renders them as a table or a summary; ``to_dict`` feeds JSON output.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fast_board_flasher.models import Board
from fast_board_flasher.protocol.session import (
    FailureReason,
    FlashSession,
    UpdateOutcome,
)


@dataclass
class UpdateResult:
    """
    Outcome of updating one board.

    Attributes:
        target_id: Port and hardware id of the board (e.g. "COM3@B4")
        board_name: Board model
        requested_version: Version of the image that was flashed
        outcome: SUCCESS, VERSION_MISMATCH, FAILED or SKIPPED
        reason: Failure reason when outcome is FAILED (NO_IMAGE for SKIPPED)
        reported_version: Version the board reported after the flash
        previous_version: Version the board reported before the flash
        detail: Human-readable explanation
        retries: Chunk resends during the session
        elapsed: Session duration in seconds
    """
    target_id: str
    board_name: str
    requested_version: str
    outcome: UpdateOutcome
    reason: Optional[FailureReason] = None
    reported_version: str = ""
    previous_version: str = ""
    detail: str = ""
    retries: int = 0
    elapsed: float = 0.0
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome in (UpdateOutcome.SUCCESS, UpdateOutcome.VERSION_MISMATCH)

    def to_summary(self) -> str:
        """Single-block human-readable summary."""
        status = self.outcome.value.upper()
        if self.reason is not None and self.outcome == UpdateOutcome.FAILED:
            status = f"{status}: {self.reason.value}"
        lines = [f"[{status}] {self.board_name} at {self.target_id}"]
        if self.requested_version:
            lines.append(f"  Requested: v{self.requested_version}")
        if self.previous_version:
            lines.append(f"  Previous: v{self.previous_version}")
        if self.reported_version:
            lines.append(f"  Reported: v{self.reported_version}")
        if self.retries:
            lines.append(f"  Chunk retries: {self.retries}")
        if self.detail:
            lines.append(f"  Detail: {self.detail}")
        for warn in self.warnings:
            lines.append(f"  Warning: {warn}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "target_id": self.target_id,
            "board_name": self.board_name,
            "requested_version": self.requested_version,
            "outcome": self.outcome.value,
            "reason": self.reason.value if self.reason else None,
            "reported_version": self.reported_version,
            "previous_version": self.previous_version,
            "detail": self.detail,
            "retries": self.retries,
            "elapsed": round(self.elapsed, 3),
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_session(cls, session: FlashSession, previous_version: str = "") -> "UpdateResult":
        """Build the result of a finished flash session."""
        result = cls(
            target_id=session.target.target_id,
            board_name=session.target.board_name,
            requested_version=session.image.version,
            outcome=session.outcome,
            reason=session.failure,
            reported_version=session.reported_version or "",
            previous_version=previous_version,
            detail=session.detail,
            retries=session.retry_count,
            elapsed=session.elapsed,
        )
        if session.outcome == UpdateOutcome.VERSION_MISMATCH:
            result.warnings.append(session.detail)
        return result

    @classmethod
    def failure(
        cls,
        board: Board,
        reason: FailureReason,
        detail: str,
        requested_version: str = "",
    ) -> "UpdateResult":
        """Failed result for a board whose session never completed."""
        return cls(
            target_id=board.target_id,
            board_name=board.board_name,
            requested_version=requested_version,
            outcome=UpdateOutcome.FAILED,
            reason=reason,
            previous_version=board.reported_version,
            detail=detail,
        )

    @classmethod
    def skipped(cls, board: Board, detail: str) -> "UpdateResult":
        """Result for a board that had no image to flash."""
        return cls(
            target_id=board.target_id,
            board_name=board.board_name,
            requested_version="",
            outcome=UpdateOutcome.SKIPPED,
            reason=FailureReason.NO_IMAGE,
            previous_version=board.reported_version,
            detail=detail,
        )
