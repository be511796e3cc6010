"""Tests for hash locks and sealed credentials."""

import hashlib
import json

import pytest
from cryptography.fernet import InvalidToken

from fusioncross.crypto import (
    CredentialSealer,
    generate_master_key,
    generate_secret,
    hash_secret,
    normalize_hash_lock,
    open_credentials,
    parse_secret,
    verify_preimage,
)
from fusioncross.resolvers.directory import ResolverDirectory


class TestHashLock:
    """Tests for secrets and hash locks."""

    def test_secret_matches_hash_lock(self):
        secret = generate_secret()
        hash_lock = hash_secret(secret)

        assert len(secret) == 32
        assert hash_lock == hashlib.sha256(secret).hexdigest()
        assert verify_preimage(secret, hash_lock)
        assert verify_preimage(secret, hash_lock.upper())

    def test_wrong_preimage(self):
        hash_lock = hash_secret(b"\x01" * 32)
        assert not verify_preimage(b"\x02" * 32, hash_lock)
        assert not verify_preimage(b"\x01" * 31, hash_lock)

    def test_normalize_hash_lock(self):
        value = "AB" * 32
        assert normalize_hash_lock("0x" + value) == "ab" * 32

        with pytest.raises(ValueError):
            normalize_hash_lock("ab" * 16)
        with pytest.raises(ValueError):
            normalize_hash_lock("zz" * 32)

    def test_parse_secret(self):
        raw = bytes(range(32))
        assert parse_secret(raw.hex()) == raw
        assert parse_secret("0x" + raw.hex()) == raw
        assert parse_secret(raw) == raw


class TestCredentialSealer:
    """Tests for Fernet-sealed resolver credentials."""

    def test_seal_and_open(self):
        sealer = CredentialSealer(generate_master_key())

        sealed = sealer.seal("SCREDENTIAL")

        assert sealed.startswith("enc:")
        assert "SCREDENTIAL" not in sealed
        assert sealer.open(sealed) == "SCREDENTIAL"
        assert sealer.open("plain") == "plain"

    def test_wrong_key(self):
        sealed = CredentialSealer(generate_master_key()).seal("secret")
        with pytest.raises(InvalidToken):
            CredentialSealer(generate_master_key()).open(sealed)

    def test_open_credentials_needs_key(self):
        sealed = CredentialSealer(generate_master_key()).seal("secret")
        with pytest.raises(ValueError, match="MASTER_KEY"):
            open_credentials({"stellar": sealed}, None)

        assert open_credentials({"stellar": "plain"}, None) == {"stellar": "plain"}

    def test_directory_opens_sealed_profiles(self):
        key = generate_master_key()
        raw = json.dumps(
            [
                {
                    "id": "r1",
                    "name": "Sealed",
                    "min_fill_percent": "10",
                    "max_fill_percent": "50",
                    "credentials": {"stellar": CredentialSealer(key).seal("SKEY")},
                }
            ]
        )

        directory = ResolverDirectory.from_json(raw, key)

        assert directory.get("r1").credentials == {"stellar": "SKEY"}
        assert "SKEY" not in repr(directory.get("r1"))
