"""Unit tests for authentication token encryption (libsodium)."""

import base64

import nacl.exceptions
import nacl.utils
import pytest

from walletpass.config import Settings
from walletpass.services.crypto_service import CryptoService


class TestEncryptDecrypt:
    def test_roundtrip(self, crypto):
        ciphertext = crypto.encrypt("vxwxd7J8AlNNFPS8k0a0FfUFtq0ewzFdc")
        assert crypto.decrypt(ciphertext) == "vxwxd7J8AlNNFPS8k0a0FfUFtq0ewzFdc"

    def test_ciphertext_differs_from_plaintext(self, crypto):
        ciphertext = crypto.encrypt("visible-token")
        assert b"visible-token" not in ciphertext

    def test_different_encryptions_produce_different_ciphertext(self, crypto):
        assert crypto.encrypt("same-token") != crypto.encrypt("same-token")  # random nonces


class TestMatches:
    def test_matching_token(self, crypto):
        assert crypto.matches(crypto.encrypt("token-1234567890"), "token-1234567890") is True

    def test_mismatched_token(self, crypto):
        assert crypto.matches(crypto.encrypt("token-1234567890"), "WRONG") is False

    def test_undecryptable_ciphertext_never_matches(self, crypto):
        ciphertext = bytearray(crypto.encrypt("token-1234567890"))
        ciphertext[-1] ^= 0xFF
        assert crypto.matches(bytes(ciphertext), "token-1234567890") is False


class TestDecryptionFailure:
    def test_wrong_key_raises(self, crypto):
        other = CryptoService(Settings(encryption_key=base64.b64encode(nacl.utils.random(32)).decode()))
        with pytest.raises(nacl.exceptions.CryptoError):
            other.decrypt(crypto.encrypt("secret"))


class TestDevKeyFallback:
    def test_no_key_uses_random_process_key(self):
        crypto = CryptoService(Settings(encryption_key=""))
        assert crypto.decrypt(crypto.encrypt("test")) == "test"
