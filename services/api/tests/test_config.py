"""Tests for settings validation."""

import pytest
from pydantic import ValidationError

from walletpass.config import Settings


class TestFanOutLimits:
    @pytest.mark.parametrize("field", ["push_concurrency", "push_max_attempts"])
    def test_zero_is_rejected(self, field):
        with pytest.raises(ValidationError, match=field):
            Settings(**{field: 0})

    def test_defaults_are_positive(self):
        settings = Settings()
        assert settings.push_concurrency >= 1
        assert settings.push_max_attempts >= 1


class TestProviderTokenRefresh:
    @pytest.mark.parametrize("seconds", [0, 3600])
    def test_out_of_range_is_rejected(self, seconds):
        with pytest.raises(ValidationError):
            Settings(apns_token_refresh_seconds=seconds)

    def test_apns_host_follows_sandbox_flag(self):
        assert Settings(apns_use_sandbox=True).apns_host == "https://api.sandbox.push.apple.com"
        assert Settings(apns_use_sandbox=False).apns_host == "https://api.push.apple.com"
