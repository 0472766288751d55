"""WireGuard key generation."""

import base64
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat


@dataclass(frozen=True)
class KeyPair:
    private_key: str
    public_key: str

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key!r})"


def generate_keypair() -> KeyPair:
    """Create a WireGuard key pair in base64 form."""
    private = x25519.X25519PrivateKey.generate()
    private_key = base64.b64encode(
        private.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    ).decode("ascii")
    return KeyPair(private_key=private_key, public_key=public_key_for(private_key))


def public_key_for(private_key: str) -> str:
    """Derive the base64 public key from a base64 private key."""
    private = x25519.X25519PrivateKey.from_private_bytes(base64.b64decode(private_key))
    public = private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return base64.b64encode(public).decode("ascii")
