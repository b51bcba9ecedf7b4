"""
Security module for FireFund - passwords, session tokens, roles and HMAC signatures
"""

import base64
import hashlib
import hmac
import secrets
import time
from datetime import datetime, timedelta
from typing import Optional

from firefund.core.models import Role, ROLE_RANK, utcnow


TOKEN_PREFIX = "ff_"
HASH_ALGORITHM = "pbkdf2_sha256"


class SecurityService:
    """Password hashing, session tokens, role checks and webhook signatures"""

    def __init__(self, password_iterations: int = 260_000):
        self.password_iterations = password_iterations

    # Passwords

    def hash_password(self, password: str) -> str:
        """Hash a password as ``pbkdf2_sha256$iterations$salt$hash``"""
        salt = secrets.token_hex(16)
        digest = self._pbkdf2(password, salt, self.password_iterations)
        return f"{HASH_ALGORITHM}${self.password_iterations}${salt}${digest}"

    def verify_password(self, password: str, password_hash: str) -> bool:
        """Check a password against a stored hash"""
        try:
            algorithm, iterations, salt, expected = password_hash.split("$", 3)
        except ValueError:
            return False

        if algorithm != HASH_ALGORITHM:
            return False

        digest = self._pbkdf2(password, salt, int(iterations))
        return hmac.compare_digest(digest, expected)

    @staticmethod
    def _pbkdf2(password: str, salt: str, iterations: int) -> str:
        raw = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations)
        return base64.b64encode(raw).decode().strip()

    # Session tokens

    def generate_session_token(self) -> str:
        """Generate an opaque bearer token"""
        return f"{TOKEN_PREFIX}{secrets.token_urlsafe(32)}"

    def hash_token(self, token: str) -> str:
        """Hash a bearer token for storage"""
        return hashlib.sha256(token.encode()).hexdigest()

    def session_expiry(self, ttl_hours: int, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + timedelta(hours=ttl_hours)

    # Roles

    def has_role(self, role: Role, minimum: Role) -> bool:
        """True when ``role`` is at least ``minimum``"""
        return ROLE_RANK[Role(role)] >= ROLE_RANK[Role(minimum)]

    # Signatures

    def generate_signature(self, payload: str, timestamp: int, secret: str) -> str:
        """Generate HMAC signature for webhook requests"""
        message = f"{timestamp}.{payload}"
        signature = hmac.new(
            secret.encode(),
            message.encode(),
            hashlib.sha256
        ).hexdigest()
        return f"sha256={signature}"

    def verify_signature(self, payload: str, signature: str, timestamp: int,
                         secret: str, max_age: int = 300) -> bool:
        """Verify HMAC signature with timestamp check"""
        current_time = int(time.time())
        if abs(current_time - timestamp) > max_age:
            return False

        expected_signature = self.generate_signature(payload, timestamp, secret)
        return hmac.compare_digest(signature, expected_signature)


# Global security service instance
security_service = SecurityService()
