"""Tests for HS256 token minting and verification."""

import base64
import json

import pytest

from tokenward.config import Settings
from tokenward.service.errors import InvalidTokenError
from tokenward.service.tokens import ACCESS, REFRESH, HmacTokenIssuer, new_family_id


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestMint:
    def test_round_trip_claims(self, issuer, clock):
        token = issuer.mint("user-1", token_type=REFRESH, ttl_seconds=600, family_id="fam")

        claims = issuer.parse(token)

        assert claims.subject_id == "user-1"
        assert claims.token_type == REFRESH
        assert claims.family_id == "fam"
        assert claims.issued_at == int(clock())
        assert claims.expires_at == int(clock()) + 600

    def test_tokens_minted_together_differ(self, issuer):
        first = issuer.mint("user-1", token_type=ACCESS, ttl_seconds=600)
        second = issuer.mint("user-1", token_type=ACCESS, ttl_seconds=600)
        assert first != second
        assert issuer.parse(first).token_id != issuer.parse(second).token_id

    def test_access_token_has_no_family(self, issuer):
        token = issuer.mint("user-1", token_type=ACCESS, ttl_seconds=600)
        assert issuer.parse(token).family_id is None

    def test_rejects_unknown_type_and_bad_ttl(self, issuer):
        with pytest.raises(ValueError):
            issuer.mint("user-1", token_type="id", ttl_seconds=600)
        with pytest.raises(ValueError):
            issuer.mint("user-1", token_type=ACCESS, ttl_seconds=0)

    def test_family_ids_are_unique(self):
        assert new_family_id() != new_family_id()


class TestParseRejects:
    def test_missing_or_malformed(self, issuer):
        for token in ("", "abc", "a.b", "a.b.c.d", "ñ.ñ.ñ"):
            with pytest.raises(InvalidTokenError):
                issuer.parse(token)

    def test_tampered_payload(self, issuer):
        token = issuer.mint("user-1", token_type=ACCESS, ttl_seconds=600)
        header, _, signature = token.split(".")
        forged = _segment({"sub": "admin", "type": ACCESS, "exp": 9999999999})
        with pytest.raises(InvalidTokenError, match="signature"):
            issuer.parse(f"{header}.{forged}.{signature}")

    def test_other_secret(self, issuer, clock):
        other = HmacTokenIssuer(Settings(jwt_secret="a-completely-different-secret-value"), clock=clock)
        token = other.mint("user-1", token_type=ACCESS, ttl_seconds=600)
        with pytest.raises(InvalidTokenError):
            issuer.parse(token)

    def test_algorithm_none(self, issuer):
        token = issuer.mint("user-1", token_type=ACCESS, ttl_seconds=600)
        _, payload, _ = token.split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        with pytest.raises(InvalidTokenError, match="algorithm"):
            issuer.parse(f"{header}.{payload}.")

    def test_wrong_audience(self, issuer, clock):
        other = HmacTokenIssuer(
            Settings(jwt_secret=issuer.settings.jwt_secret, jwt_audience="someone-else"),
            clock=clock,
        )
        token = other.mint("user-1", token_type=ACCESS, ttl_seconds=600)
        with pytest.raises(InvalidTokenError, match="audience"):
            issuer.parse(token)

    def test_wrong_issuer(self, issuer, clock):
        other = HmacTokenIssuer(
            Settings(jwt_secret=issuer.settings.jwt_secret, jwt_issuer="elsewhere"),
            clock=clock,
        )
        token = other.mint("user-1", token_type=ACCESS, ttl_seconds=600)
        with pytest.raises(InvalidTokenError, match="issuer"):
            issuer.parse(token)

    def test_expiry_honours_clock_skew(self, issuer, clock, settings):
        token = issuer.mint("user-1", token_type=ACCESS, ttl_seconds=60)
        clock.advance(60 + settings.jwt_clock_skew_seconds - 1)
        assert issuer.parse(token).subject_id == "user-1"
        clock.advance(1)
        with pytest.raises(InvalidTokenError, match="expired"):
            issuer.parse(token)
