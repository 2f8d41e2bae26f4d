"""Tests for link and flash settings validation."""

import pytest

from fast_board_flasher.protocol.settings import FlashSettings, LinkSettings


class TestFlashSettings:
    """Timeouts must be positive; pauses may be zero."""

    @pytest.mark.parametrize("field", ["erase_timeout", "ack_timeout", "commit_timeout"])
    @pytest.mark.parametrize("value", [0, -0.5])
    def test_non_positive_timeout(self, field, value):
        with pytest.raises(ValueError, match=field):
            FlashSettings(**{field: value})

    def test_negative_verify_interval(self):
        with pytest.raises(ValueError):
            FlashSettings(verify_interval=-1)

    def test_zero_verify_interval_allowed(self):
        assert FlashSettings(verify_interval=0.0).verify_interval == 0.0

    def test_overrides_are_validated(self):
        with pytest.raises(ValueError):
            FlashSettings().with_overrides(ack_timeout=0)

    def test_none_overrides_keep_defaults(self):
        settings = FlashSettings().with_overrides(ack_timeout=None, chunk_size=64)
        assert settings.ack_timeout == FlashSettings().ack_timeout
        assert settings.chunk_size == 64


class TestLinkSettings:
    @pytest.mark.parametrize("field", ["read_timeout", "identify_timeout"])
    def test_non_positive_timeout(self, field):
        with pytest.raises(ValueError, match=field):
            LinkSettings(**{field: 0})

    def test_negative_retries(self):
        with pytest.raises(ValueError):
            LinkSettings(identify_retries=-1)
