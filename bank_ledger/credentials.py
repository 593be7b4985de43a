"""
Credential Verifier Module

One-way hashing of login secrets and transaction PINs using scrypt, with a
migration path for legacy rows that still hold the plaintext secret.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass

from .errors import ValidationError


HASH_SCHEME = "scrypt"


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a secret check"""
    matched: bool
    needs_migration: bool = False

    def __bool__(self) -> bool:
        return self.matched


class CredentialVerifier:
    """
    Hash and verify secrets.

    Digests look like ``scrypt$<salt hex>$<hash hex>``. A stored value
    without the scheme prefix is treated as a legacy plaintext secret.
    """

    def __init__(self, n: int = 16384, r: int = 8, p: int = 1):
        self.n = n
        self.r = r
        self.p = p

    def _derive(self, secret: str, salt: str) -> str:
        return hashlib.scrypt(
            secret.encode(),
            salt=salt.encode(),
            n=self.n, r=self.r, p=self.p
        ).hex()

    def hash(self, secret: str) -> str:
        """
        Hash a secret with a fresh random salt

        Raises:
            ValidationError: If the secret is empty
        """
        if not secret:
            raise ValidationError("Secret must not be empty")
        salt = secrets.token_hex(16)
        return f"{HASH_SCHEME}${salt}${self._derive(secret, salt)}"

    @staticmethod
    def is_hashed(digest: str) -> bool:
        return bool(digest) and digest.startswith(HASH_SCHEME + "$")

    def verify(self, secret: str, digest: str) -> VerificationResult:
        """
        Check a secret against a stored digest.

        Legacy plaintext digests are compared directly; a match is reported
        with needs_migration=True so the caller can re-hash and persist.
        """
        if not secret or not digest:
            return VerificationResult(False)

        if not self.is_hashed(digest):
            matched = hmac.compare_digest(secret.encode(), digest.encode())
            return VerificationResult(matched, needs_migration=matched)

        try:
            _, salt, expected = digest.split("$", 2)
        except ValueError:
            return VerificationResult(False)
        actual = self._derive(secret, salt)
        return VerificationResult(hmac.compare_digest(actual, expected))

    @staticmethod
    def generate_pin(length: int = 4) -> str:
        """Random numeric PIN"""
        return "".join(secrets.choice("0123456789") for _ in range(length))
