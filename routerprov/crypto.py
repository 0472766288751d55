"""Encryption of secrets stored alongside router records."""

import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

_SALT = b"routerprov.secrets.v1"


def derive_key(secret: str) -> bytes:
    """Return a Fernet key for ``secret``.

    A value that is already a valid Fernet key is used as-is; anything else
    is treated as a passphrase and stretched with Scrypt.
    """
    if not secret:
        raise ValueError("No secret key configured (security.secret_key)")
    try:
        raw = base64.urlsafe_b64decode(secret.encode())
        if len(raw) == 32:
            return secret.encode()
    except (ValueError, TypeError):
        pass
    kdf = Scrypt(salt=_SALT, length=32, n=2 ** 14, r=8, p=1)
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


class SecretBox:
    """Symmetric encryption for router passwords and tunnel private keys."""

    def __init__(self, secret: str):
        self._fernet = Fernet(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Stored secret could not be decrypted with the configured key") from e

