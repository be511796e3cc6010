"""Hash-lock helpers and sealed credential storage.

Secrets are 32-byte preimages; hash locks are their sha256 digests in hex.
Resolver credentials may be stored sealed with Fernet (AES-128-CBC with HMAC)
under the configured master key.
"""

import hashlib
import hmac
import logging
import secrets
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

SECRET_SIZE = 32
SEALED_PREFIX = "enc:"


def generate_secret() -> bytes:
    """Generate a fresh 32-byte preimage."""
    return secrets.token_bytes(SECRET_SIZE)


def hash_secret(secret: bytes) -> str:
    """Compute the hash lock (hex sha256) for a preimage."""
    return hashlib.sha256(secret).hexdigest()


def normalize_hash_lock(hash_lock: str) -> str:
    """Validate and normalize a hex hash lock.

    Raises:
        ValueError: If the value is not 32 bytes of hex
    """
    value = hash_lock.lower()
    if value.startswith("0x"):
        value = value[2:]
    raw = bytes.fromhex(value)
    if len(raw) != SECRET_SIZE:
        raise ValueError(f"Hash lock must be {SECRET_SIZE} bytes, got {len(raw)}")
    return value


def parse_secret(secret: Union[str, bytes]) -> bytes:
    """Accept a preimage as raw bytes or hex (with or without 0x)."""
    if isinstance(secret, bytes):
        return secret
    value = secret[2:] if secret.lower().startswith("0x") else secret
    return bytes.fromhex(value)


def verify_preimage(preimage: bytes, hash_lock: str) -> bool:
    """Check that a preimage hashes to the hash lock (constant time)."""
    if len(preimage) != SECRET_SIZE:
        return False
    return hmac.compare_digest(hash_secret(preimage), hash_lock.lower())


def generate_master_key() -> str:
    """Generate a new master encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    return Fernet.generate_key().decode()


class CredentialSealer:
    """Seals and opens resolver credentials using Fernet.

    Usage:
        sealer = CredentialSealer(master_key)
        sealed = sealer.seal("S...secret")     # "enc:gAAAA..."
        plain = sealer.open(sealed)
    """

    def __init__(self, master_key: str):
        """Initialize with master encryption key.

        Args:
            master_key: Base64-encoded Fernet key (32 bytes)
        """
        self._fernet = Fernet(master_key.encode())

    def seal(self, value: str) -> str:
        """Encrypt a credential and tag it with the sealed prefix."""
        return SEALED_PREFIX + self._fernet.encrypt(value.encode()).decode()

    def open(self, value: str) -> str:
        """Decrypt a sealed credential; plain values pass through.

        Raises:
            InvalidToken: If decryption fails (wrong key or corrupted data)
        """
        if not value.startswith(SEALED_PREFIX):
            return value
        return self._fernet.decrypt(value[len(SEALED_PREFIX):].encode()).decode()


def open_credentials(
    credentials: dict[str, str], master_key: Optional[str]
) -> dict[str, str]:
    """Open every sealed value in a credential mapping.

    Raises:
        ValueError: If a sealed value is present but no master key is configured
    """
    sealed = [k for k, v in credentials.items() if v.startswith(SEALED_PREFIX)]
    if not sealed:
        return dict(credentials)
    if not master_key:
        raise ValueError(f"Sealed credentials for {', '.join(sealed)} need MASTER_KEY")

    sealer = CredentialSealer(master_key)
    opened = {}
    for chain, value in credentials.items():
        try:
            opened[chain] = sealer.open(value)
        except InvalidToken:
            logger.error(f"Failed to open sealed credential for chain {chain}")
            raise
    return opened
