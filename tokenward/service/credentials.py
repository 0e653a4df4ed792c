from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from tokenward.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CredentialRecord:
    subject_id: str
    password_hash: str
    algorithm: str = "argon2id"


class CredentialLookup(Protocol):
    def get_credential_record(self, identifier: str) -> Optional[CredentialRecord]: ...


class CredentialVerifier(Protocol):
    def verify(self, identifier: str, secret: str) -> Optional[str]: ...


_hasher = PasswordHasher(type=Type.ID)


def hash_secret(secret: str) -> str:
    """argon2id hash of ``secret`` suitable for a :class:`CredentialRecord`."""
    return _hasher.hash(secret)


class Argon2CredentialVerifier:
    """Checks an identifier/secret pair against argon2id hashes.

    Hash storage lives elsewhere; records come from ``lookup``.
    """

    def __init__(self, lookup: CredentialLookup) -> None:
        self.lookup = lookup
        self._pwd_hasher = _hasher
        # Verified against for unknown identifiers so response time does not reveal them
        self._dummy_hash = self._pwd_hasher.hash("tokenward-dummy-secret")

    def verify(self, identifier: str, secret: str) -> Optional[str]:
        """Return the subject id on success, None on any mismatch."""
        record = self.lookup.get_credential_record(identifier)
        if record is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, secret)
            except VerificationError:
                pass
            return None
        if record.algorithm != "argon2id":
            logger.warning(
                "password_algo_mismatch", subject_id=record.subject_id, algo=record.algorithm
            )
            return None
        try:
            self._pwd_hasher.verify(record.password_hash, secret)
        except (InvalidHashError, VerificationError):
            return None
        return record.subject_id


__all__ = [
    "Argon2CredentialVerifier",
    "CredentialLookup",
    "CredentialRecord",
    "CredentialVerifier",
    "hash_secret",
]
