"""Ed25519 verification of Discord interaction requests.

Discord signs every callback with the application's key. The signature
in ``X-Signature-Ed25519`` covers the ``X-Signature-Timestamp`` header
value concatenated with the raw request body.
"""

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from core.errors import ConfigError

PUBLIC_KEY_HEX_LENGTH = 64


def load_public_key(public_key_hex: str) -> Ed25519PublicKey:
    """Decode a hex application public key.

    Raises:
        ConfigError: The key is not 32 bytes of valid hex.
    """
    key = public_key_hex.strip()
    try:
        raw = bytes.fromhex(key)
    except ValueError as e:
        raise ConfigError(
            "discord public key is not valid hex",
            hint="Copy the Public Key from the Discord developer portal.",
        ) from e
    if len(raw) != 32:
        raise ConfigError(
            f"discord public key must be {PUBLIC_KEY_HEX_LENGTH} hex characters",
            hint="Copy the Public Key from the Discord developer portal.",
        )
    return Ed25519PublicKey.from_public_bytes(raw)


class SignatureVerifier:
    """Checks request signatures against one application public key."""

    def __init__(self, public_key_hex: str) -> None:
        self._key = load_public_key(public_key_hex)

    def verify(self, signature_hex: str, timestamp: str, body: bytes) -> bool:
        if not signature_hex or not timestamp:
            return False
        try:
            signature = bytes.fromhex(signature_hex)
        except ValueError:
            return False
        try:
            self._key.verify(signature, timestamp.encode() + body)
        except InvalidSignature:
            return False
        return True
