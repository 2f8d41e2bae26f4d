"""Tests for update results and structured warnings."""

from unittest.mock import MagicMock

from fast_board_flasher.core.messages import (
    COMMON_WARNINGS,
    WARNING_REMEDIATIONS,
    MessageLevel,
    WarningCode,
    WarningItem,
    results_to_warnings,
    warning_for_reason,
)
from fast_board_flasher.core.results import UpdateResult
from fast_board_flasher.models import Board, BoardKind
from fast_board_flasher.protocol.session import (
    FailureReason,
    FlashSession,
    UpdateOutcome,
)
from fast_board_flasher.protocol.simulator import SimulatedBoard


def node(name="FP-I/O-3208", index=1):
    port = MagicMock()
    port.name = "COM3"
    return Board(port, BoardKind.EXP, f"{index:02d}", name, "1.05", node_index=index)


def result(outcome, reason=None, board_name="FP-EXP-0071"):
    return UpdateResult(
        target_id="COM3@B4",
        board_name=board_name,
        requested_version="0.52",
        outcome=outcome,
        reason=reason,
        detail="detail text",
    )


class TestUpdateResult:
    """Result construction and rendering."""

    def test_from_successful_session(self, exp_bench, exp_image, flash_settings):
        target, _, _ = exp_bench()
        session = FlashSession(target, exp_image, flash_settings)
        session.run()

        res = UpdateResult.from_session(session, previous_version="1.02")

        assert res.ok
        assert res.target_id == "SIM-EXP@B4"
        assert res.requested_version == "1.3"
        assert res.reported_version == "1.03"
        assert res.previous_version == "1.02"
        assert res.reason is None
        assert res.warnings == []

    def test_from_mismatched_session(self, exp_bench, exp_image, flash_settings):
        target, _, _ = exp_bench(SimulatedBoard("FP-EXP-0071", "EXP", "1.2", after_flash_version="1.1"))
        session = FlashSession(target, exp_image, flash_settings)
        session.run()

        res = UpdateResult.from_session(session)

        assert res.outcome == UpdateOutcome.VERSION_MISMATCH
        assert res.ok
        assert res.warnings == [session.detail]

    def test_skipped(self):
        res = UpdateResult.skipped(node(), "No NET firmware for FP-I/O-3208")
        assert res.outcome == UpdateOutcome.SKIPPED
        assert res.reason == FailureReason.NO_IMAGE
        assert res.target_id == "COM3@01"
        assert res.previous_version == "1.05"
        assert not res.ok

    def test_failure(self):
        res = UpdateResult.failure(node(), FailureReason.CANCELLED, "Cancelled before this node")
        assert res.outcome == UpdateOutcome.FAILED
        assert res.reason == FailureReason.CANCELLED

    def test_to_dict_uses_plain_values(self):
        data = result(UpdateOutcome.FAILED, FailureReason.TIMEOUT).to_dict()
        assert data["outcome"] == "failed"
        assert data["reason"] == "timeout"
        assert data["warnings"] == []
        assert data["elapsed"] == 0.0

    def test_summary(self):
        res = result(UpdateOutcome.FAILED, FailureReason.CHUNK_REJECTED)
        res.retries = 3
        summary = res.to_summary()
        assert summary.startswith("[FAILED: chunk_rejected] FP-EXP-0071 at COM3@B4")
        assert "Chunk retries: 3" in summary
        assert "Detail: detail text" in summary


class TestWarnings:
    """Results map onto stable warning codes."""

    def test_default_remediation(self):
        item = WarningItem.warn(WarningCode.W_NO_IMAGE, "No image")
        assert item.remediation == WARNING_REMEDIATIONS[WarningCode.W_NO_IMAGE]

    def test_every_code_has_remediation(self):
        assert set(WARNING_REMEDIATIONS) == set(WarningCode)

    def test_reason_mapping(self):
        assert warning_for_reason(FailureReason.TIMEOUT, "t").code == WarningCode.W_SERIAL_TIMEOUT
        assert warning_for_reason(FailureReason.COMMIT_REJECTED, "t").code == WarningCode.W_BOARD_REJECTED
        assert warning_for_reason(FailureReason.NO_IMAGE, "t").level == MessageLevel.WARN
        assert warning_for_reason(FailureReason.IO_ERROR, "t").level == MessageLevel.ERROR
        assert warning_for_reason(FailureReason.IMAGE_TOO_LARGE, "t").code == WarningCode.W_IMAGE_TOO_LARGE
        assert warning_for_reason(FailureReason.INTERNAL_ERROR, "t").code == WarningCode.W_UNKNOWN

    def test_all_successful(self):
        assert results_to_warnings([result(UpdateOutcome.SUCCESS)]) == []

    def test_partial_success(self):
        items = results_to_warnings([
            result(UpdateOutcome.SUCCESS),
            result(UpdateOutcome.FAILED, FailureReason.TIMEOUT),
            result(UpdateOutcome.SKIPPED, FailureReason.NO_IMAGE),
        ])
        assert [i.code for i in items] == [
            WarningCode.W_SERIAL_TIMEOUT,
            WarningCode.W_NO_IMAGE,
            WarningCode.W_PARTIAL_SUCCESS,
        ]

    def test_mismatch_is_a_warning(self):
        items = results_to_warnings([result(UpdateOutcome.VERSION_MISMATCH)])
        assert len(items) == 1
        assert items[0].code == WarningCode.W_VERSION_MISMATCH
        assert items[0].level == MessageLevel.WARN

    def test_to_dict(self):
        data = COMMON_WARNINGS["simulation_mode"].to_dict()
        assert data["level"] == "info"
        assert data["code"] == "W_SIMULATED"
