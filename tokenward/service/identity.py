from __future__ import annotations

from enum import Enum
from typing import Optional


class IdentityProvider(str, Enum):
    """Where a subject's identity was verified.

    Issuers are matched exactly against their canonical id; substring
    matching would let an issuer such as ``notgoogle.com`` pass as Google.
    """

    LOCAL = "local"
    GOOGLE = "google"
    GITHUB = "github"
    MICROSOFT = "microsoft"
    APPLE = "apple"

    @classmethod
    def from_issuer(cls, issuer: Optional[str]) -> "IdentityProvider":
        if issuer is None:
            return cls.LOCAL
        provider = _ISSUERS.get(issuer.strip().lower())
        if provider is None:
            raise ValueError(f"unsupported identity issuer: {issuer!r}")
        return provider


_ISSUERS: dict[str, IdentityProvider] = {
    "google.com": IdentityProvider.GOOGLE,
    "github.com": IdentityProvider.GITHUB,
    "microsoft.com": IdentityProvider.MICROSOFT,
    "apple.com": IdentityProvider.APPLE,
}


__all__ = ["IdentityProvider"]
