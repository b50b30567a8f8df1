from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


class MemoryCipher:
    """Seal and open memory plaintext with a key derived per user."""

    def __init__(self, secret: str, *, user_id: str) -> None:
        if not secret:
            raise ValueError("APP_SECRET_KEY is required for memory encryption.")
        self._fernet = Fernet(self._derive_key(secret, user_id))

    def seal(self, plaintext: str) -> str:
        """Encrypt memory text into a URL-safe token."""

        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def open(self, token: str) -> str:
        """Decrypt a sealed memory token."""

        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Failed to decrypt memory blob.") from exc

    @staticmethod
    def _derive_key(secret: str, user_id: str) -> bytes:
        digest = hashlib.sha256(f"{user_id}:{secret}".encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest)
