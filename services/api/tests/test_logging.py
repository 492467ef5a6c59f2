"""Tests for credential redaction in log output."""

from walletpass.middleware.logging import redact_secrets


class TestRedactSecrets:
    def test_apple_pass_credential(self):
        assert redact_secrets("Authorization: ApplePass vxwxd7J8AlNNFPS8k0a0") == "Authorization: ApplePass [REDACTED]"

    def test_bearer_credential(self):
        assert "eyJhbGci" not in redact_secrets("bearer eyJhbGciOiJFUzI1NiJ9.e30.sig")

    def test_push_token(self):
        text = f"push to {'0a' * 32} failed"
        assert redact_secrets(text) == "push to [REDACTED_PUSH_TOKEN] failed"

    def test_plain_text_untouched(self):
        assert redact_secrets("Pass 1234 updated") == "Pass 1234 updated"
