"""Tests for the voter credential codec."""
from __future__ import annotations

import pytest

from tally.config import require_voter_key_secret
from tally.errors import ConfigurationError, DecryptionError
from tally.security import (
    VOTER_KEY_ALPHABET,
    decrypt_voter_key,
    encrypt_voter_key,
    format_voter_key_for_display,
    generate_verification_token,
    generate_voter_key,
    hash_voter_key,
    normalize_voter_key,
)

SECRET = "unit-test-secret"


class TestGeneration:
    def test_voter_key_shape(self) -> None:
        for _ in range(50):
            key = generate_voter_key()
            assert len(key) == 10
            assert set(key) <= set(VOTER_KEY_ALPHABET)

    def test_alphabet_has_no_ambiguous_characters(self) -> None:
        assert not set("IO01") & set(VOTER_KEY_ALPHABET)

    def test_voter_keys_differ(self) -> None:
        keys = {generate_voter_key() for _ in range(200)}
        assert len(keys) == 200

    def test_verification_token_is_64_hex(self) -> None:
        token = generate_verification_token()
        assert len(token) == 64
        int(token, 16)


class TestHash:
    def test_case_and_spacing_do_not_matter(self) -> None:
        assert hash_voter_key(" ab23 cd89\t") == hash_voter_key("AB23CD89")

    def test_different_keys_differ(self) -> None:
        assert hash_voter_key("AB23CD89") != hash_voter_key("AB23CD88")

    def test_is_sha256_hex(self) -> None:
        assert len(hash_voter_key("AB23CD89")) == 64

    def test_normalize(self) -> None:
        assert normalize_voter_key(" ab 23\ncd ") == "AB23CD"

    def test_display_format(self) -> None:
        assert format_voter_key_for_display("ab23cd89xy") == "AB23 CD89 XY"


class TestEncryption:
    def test_round_trip(self) -> None:
        stored = encrypt_voter_key("AB23CD89XY", SECRET)
        assert decrypt_voter_key(stored, SECRET) == "AB23CD89XY"

    def test_stored_format_is_iv_and_ciphertext_hex(self) -> None:
        iv_hex, sep, cipher_hex = encrypt_voter_key("AB23CD89XY", SECRET).partition(":")
        assert sep == ":"
        assert len(bytes.fromhex(iv_hex)) == 16
        assert len(bytes.fromhex(cipher_hex)) % 16 == 0

    def test_fresh_iv_every_call(self) -> None:
        first = encrypt_voter_key("AB23CD89XY", SECRET)
        second = encrypt_voter_key("AB23CD89XY", SECRET)
        assert first != second
        assert first.split(":")[0] != second.split(":")[0]
        assert decrypt_voter_key(first, SECRET) == decrypt_voter_key(second, SECRET)

    def test_legacy_plaintext_passes_through(self) -> None:
        assert decrypt_voter_key("LEGACYKEY1", SECRET) == "LEGACYKEY1"

    @pytest.mark.parametrize("stored", [
        "zz:00112233445566778899aabbccddeeff",
        "00112233:00112233445566778899aabbccddeeff",
        "00112233445566778899aabbccddeeff:",
        "00112233445566778899aabbccddeeff:0011",
    ])
    def test_malformed_raises(self, stored: str) -> None:
        with pytest.raises(DecryptionError):
            decrypt_voter_key(stored, SECRET)


class TestSecretConfiguration:
    def test_missing_secret_is_fatal(self, monkeypatch) -> None:
        monkeypatch.delenv("VOTER_KEY_ENCRYPTION_KEY", raising=False)
        with pytest.raises(ConfigurationError):
            require_voter_key_secret()

    def test_secret_is_read_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("VOTER_KEY_ENCRYPTION_KEY", "from-env")
        assert require_voter_key_secret() == "from-env"
