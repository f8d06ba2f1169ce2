from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import base64
import json
from typing import Any, Dict, Optional
from mailsync.config import settings
from mailsync.exceptions import AuthenticationError, ValidationError
from mailsync.utils.logging import get_logger

logger = get_logger("credential_cipher")


class CredentialCipher:
    """Encrypts the provider credential blob stored on each account using Fernet."""

    def __init__(self, secret_key: Optional[str] = None):
        """Initialize the cipher.

        Args:
            secret_key: Fernet key or passphrase. If None, uses settings.credentials_encryption_key
        """
        key = (secret_key or settings.credentials_encryption_key).encode()

        # Fernet keys are 32 bytes base64 encoded = 44 chars; derive one from anything else
        if len(key) != 44:
            key = self._derive_key(key)

        self._fernet = Fernet(key)

    def _derive_key(self, input_key: bytes) -> bytes:
        """Derive a proper Fernet key from input key using PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"mailsync_credentials_salt",
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(input_key))

    def encrypt(self, credentials: Dict[str, Any]) -> str:
        """Serialize and encrypt a credential mapping.

        Returns:
            Fernet token as text
        """
        if not isinstance(credentials, dict) or not credentials:
            raise ValidationError("Credentials must be a non-empty mapping")
        token = self._fernet.encrypt(json.dumps(credentials, sort_keys=True).encode())
        return token.decode()

    def decrypt(self, token: str) -> Dict[str, Any]:
        """Decrypt a stored credential blob back into a mapping."""
        if not token:
            raise AuthenticationError("Account has no stored credentials")
        try:
            return json.loads(self._fernet.decrypt(token.encode()).decode())
        except InvalidToken:
            logger.error("Stored credentials could not be decrypted (key rotated or blob corrupted)")
            raise AuthenticationError("Stored credentials could not be decrypted")

    @staticmethod
    def generate_key() -> str:
        """Generate a new random Fernet key."""
        return Fernet.generate_key().decode()
