from __future__ import annotations

import asyncio
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tokenward.api.schemas import (
    ActionResponse,
    LockoutStatusResponse,
    LogoutResponse,
    TokenResponse,
)
from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.credentials import CredentialVerifier
from tokenward.service.email import LockoutNotifier
from tokenward.service.errors import (
    AccountLockedError,
    BadCredentialsError,
    InvalidTokenError,
    RateLimitedError,
    ServiceError,
    ServiceUnavailableError,
    TokenFamilyExpiredError,
    TokenReplayDetectedError,
)
from tokenward.service.identity import IdentityProvider
from tokenward.service.lockout import LockoutGovernor
from tokenward.service.rate_limit import RateLimitDecision, RateLimiter
from tokenward.service.sessions import SessionLifecycleManager
from tokenward.service.tokens import ACCESS, REFRESH, TokenClaims, TokenIssuer, new_family_id
from tokenward.storage.common import Clock, system_clock
from tokenward.storage.errors import StoreError

logger = get_logger(__name__)

GENERIC_FAILURE_MESSAGE = "Invalid credentials"
STORE_UNAVAILABLE_MESSAGE = "Authentication is temporarily unavailable. Please try again later."


class AuthOutcomeKind(str, Enum):
    SUCCESS = "success"
    BAD_CREDENTIALS = "bad_credentials"
    ACCOUNT_LOCKED = "account_locked"
    RATE_LIMITED = "rate_limited"
    INVALID_TOKEN = "invalid_token"
    TOKEN_FAMILY_EXPIRED = "token_family_expired"
    TOKEN_REPLAY_DETECTED = "token_replay_detected"
    STORE_UNAVAILABLE = "store_unavailable"


_OUTCOME_ERRORS: dict[AuthOutcomeKind, type[ServiceError]] = {
    AuthOutcomeKind.BAD_CREDENTIALS: BadCredentialsError,
    AuthOutcomeKind.ACCOUNT_LOCKED: AccountLockedError,
    AuthOutcomeKind.RATE_LIMITED: RateLimitedError,
    AuthOutcomeKind.INVALID_TOKEN: InvalidTokenError,
    AuthOutcomeKind.TOKEN_FAMILY_EXPIRED: TokenFamilyExpiredError,
    AuthOutcomeKind.TOKEN_REPLAY_DETECTED: TokenReplayDetectedError,
    AuthOutcomeKind.STORE_UNAVAILABLE: ServiceUnavailableError,
}


@dataclass
class AuthOutcome:
    """Result of a sign-in or refresh flow; failures are values, not raises."""

    kind: AuthOutcomeKind
    tokens: Optional[TokenResponse] = None
    message: str = ""
    retry_after_seconds: Optional[int] = None
    subject_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind is AuthOutcomeKind.SUCCESS

    def raise_for_kind(self) -> None:
        """Raise the matching ``ServiceError`` unless this outcome succeeded."""
        if self.ok:
            return
        error_cls = _OUTCOME_ERRORS[self.kind]
        if error_cls in (AccountLockedError, RateLimitedError):
            raise error_cls(self.message, retry_after=self.retry_after_seconds)
        raise error_cls(self.message)


class SignInStage(str, Enum):
    START = "start"
    RATE_CHECK = "rate_check"
    LOCK_CHECK = "lock_check"
    CREDENTIAL_CHECK = "credential_check"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class AuthContext:
    subject_id: str
    token_id: str


# Authenticated principal for the current request; cleared on logout
current_auth_var: ContextVar[Optional[AuthContext]] = ContextVar("current_auth", default=None)


def get_current_auth() -> Optional[AuthContext]:
    return current_auth_var.get()


class AuthOrchestrator:
    """Sign-in, refresh, logout and access-token checks as explicit flows.

    This is the only layer that turns store and token errors into caller
    facing results. Store failures always fail closed: no tokens are issued
    and nothing validates.
    """

    def __init__(
        self,
        *,
        sessions: SessionLifecycleManager,
        lockout: LockoutGovernor,
        rate_limiter: RateLimiter,
        verifier: CredentialVerifier,
        issuer: TokenIssuer,
        settings: Settings,
        notifier: Optional[LockoutNotifier] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.sessions = sessions
        self.lockout = lockout
        self.rate_limiter = rate_limiter
        self.verifier = verifier
        self.issuer = issuer
        self.settings = settings
        self.notifier = notifier
        self._clock = clock
        self.logger = logger

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _session_ttls(self, remember_me: bool) -> tuple[int, int]:
        factor = self.settings.remember_me_multiplier if remember_me else 1
        return (
            self.settings.access_token_ttl_seconds * factor,
            self.settings.refresh_token_ttl_seconds * factor,
        )

    def _remaining_lifetime(self, claims: TokenClaims) -> int:
        return int(claims.expires_at - self._clock())

    def _store_unavailable(self, flow: str, exc: StoreError) -> AuthOutcome:
        self.logger.warning("auth_failed_closed", flow=flow, error=exc.message)
        return AuthOutcome(AuthOutcomeKind.STORE_UNAVAILABLE, message=STORE_UNAVAILABLE_MESSAGE)

    def _rate_limited(self, decision: RateLimitDecision) -> AuthOutcome:
        return AuthOutcome(
            AuthOutcomeKind.RATE_LIMITED,
            message="Rate limit exceeded. Try again later.",
            retry_after_seconds=decision.retry_after_seconds,
        )

    def _advance(self, identifier: str, current: SignInStage, nxt: SignInStage) -> SignInStage:
        self.logger.debug(
            "sign_in_stage", identifier=identifier, from_stage=current.value, to_stage=nxt.value
        )
        return nxt

    async def _issue_session(
        self, subject_id: str, *, remember_me: bool, family_id: Optional[str] = None
    ) -> TokenResponse:
        access_ttl, refresh_ttl = self._session_ttls(remember_me)
        family_id = family_id or new_family_id()
        access_token = self.issuer.mint(subject_id, token_type=ACCESS, ttl_seconds=access_ttl)
        refresh_token = self.issuer.mint(
            subject_id, token_type=REFRESH, ttl_seconds=refresh_ttl, family_id=family_id
        )
        await self.sessions.save_access_token(subject_id, access_token, access_ttl)
        await self.sessions.save_refresh_token(subject_id, refresh_token, refresh_ttl, remember_me)
        await self.sessions.open_token_family(family_id)
        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in_seconds=access_ttl,
            remember_me=remember_me,
        )

    async def _notify_locked(self, identifier: str, lockout_seconds: int) -> None:
        if self.notifier is None:
            return
        try:
            first_notice = await self.lockout.claim_lockout_notice(identifier)
        except StoreError as exc:
            self.logger.warning("lockout_notice_claim_failed", identifier=identifier, error=exc.message)
            return
        if not first_notice:
            return
        # SMTP is blocking; keep it off the event loop
        try:
            delivered = await asyncio.to_thread(
                self.notifier.notify_account_locked, identifier, lockout_seconds
            )
        except Exception as exc:
            self.logger.error(
                "lockout_notice_failed",
                identifier=identifier,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            self.logger.warning("lockout_notice_not_delivered", identifier=identifier)

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    async def sign_in(
        self,
        identifier: str,
        secret: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
    ) -> AuthOutcome:
        """Run START → RATE_CHECK → LOCK_CHECK → CREDENTIAL_CHECK → SUCCESS | FAILURE."""
        stage = SignInStage.START
        try:
            stage = self._advance(identifier, stage, SignInStage.RATE_CHECK)
            decision = await self.rate_limiter.check_login_rate_limit(identifier)
            if decision.allowed and ip_address:
                decision = await self.rate_limiter.check_ip_rate_limit(ip_address)
            if not decision.allowed:
                self.logger.warning("sign_in_rate_limited", identifier=identifier)
                return self._rate_limited(decision)

            stage = self._advance(identifier, stage, SignInStage.LOCK_CHECK)
            if await self.lockout.is_user_locked(identifier):
                remaining = await self.lockout.get_lockout_time_remaining(identifier)
                remaining = remaining or self.lockout.lockout_duration_seconds
                self.logger.warning("sign_in_rejected_locked", identifier=identifier, remaining=remaining)
                return AuthOutcome(
                    AuthOutcomeKind.ACCOUNT_LOCKED,
                    message=f"Account is temporarily locked. Try again in {remaining} seconds.",
                    retry_after_seconds=remaining,
                )

            stage = self._advance(identifier, stage, SignInStage.CREDENTIAL_CHECK)
            subject_id = self.verifier.verify(identifier, secret)
            if subject_id is None:
                stage = self._advance(identifier, stage, SignInStage.FAILURE)
                return await self._handle_bad_credentials(identifier)

            stage = self._advance(identifier, stage, SignInStage.SUCCESS)
            await self.lockout.clear_failed_logins(identifier)
            await self.rate_limiter.reset_login_limit(identifier)
            tokens = await self._issue_session(subject_id, remember_me=remember_me)
        except StoreError as exc:
            self.logger.warning("sign_in_store_error", identifier=identifier, stage=stage.value)
            return self._store_unavailable("sign_in", exc)

        self.logger.info("sign_in_succeeded", subject_id=subject_id, remember_me=remember_me)
        return AuthOutcome(AuthOutcomeKind.SUCCESS, tokens=tokens, subject_id=subject_id)

    async def _handle_bad_credentials(self, identifier: str) -> AuthOutcome:
        locked = await self.lockout.record_failed_login(identifier)
        if locked:
            lockout_seconds = self.lockout.lockout_duration_seconds
            await self._notify_locked(identifier, lockout_seconds)
            return AuthOutcome(
                AuthOutcomeKind.ACCOUNT_LOCKED,
                message=(
                    "Account locked due to too many failed attempts. "
                    f"Try again in {lockout_seconds} seconds."
                ),
                retry_after_seconds=lockout_seconds,
            )
        return AuthOutcome(AuthOutcomeKind.BAD_CREDENTIALS, message=GENERIC_FAILURE_MESSAGE)

    async def sign_in_federated(
        self,
        issuer: Optional[str],
        subject_id: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
    ) -> AuthOutcome:
        """Issue a session for a subject already verified by an identity provider."""
        try:
            provider = IdentityProvider.from_issuer(issuer)
        except ValueError:
            self.logger.warning("federated_issuer_rejected", issuer=issuer)
            return AuthOutcome(
                AuthOutcomeKind.INVALID_TOKEN, message="Unsupported identity provider"
            )
        try:
            if ip_address:
                decision = await self.rate_limiter.check_ip_rate_limit(ip_address)
                if not decision.allowed:
                    return self._rate_limited(decision)
            tokens = await self._issue_session(subject_id, remember_me=remember_me)
        except StoreError as exc:
            return self._store_unavailable("sign_in_federated", exc)
        self.logger.info(
            "federated_sign_in_succeeded",
            subject_id=subject_id,
            provider=provider.value,
            remember_me=remember_me,
        )
        return AuthOutcome(AuthOutcomeKind.SUCCESS, tokens=tokens, subject_id=subject_id)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> AuthOutcome:
        """Rotate a refresh token, revoking everything if it was already rotated."""
        try:
            claims = self.issuer.parse(refresh_token)
        except InvalidTokenError as exc:
            self.logger.info("refresh_rejected_invalid_token", reason=exc.message)
            return AuthOutcome(AuthOutcomeKind.INVALID_TOKEN, message="Invalid refresh token")
        if claims.token_type != REFRESH or not claims.family_id:
            self.logger.info("refresh_rejected_wrong_token_type", token_type=claims.token_type)
            return AuthOutcome(AuthOutcomeKind.INVALID_TOKEN, message="Invalid refresh token")
        # parse() tolerates clock skew, but the refresh slot expired at exp
        if claims.expires_at <= self._clock():
            self.logger.info("refresh_rejected_expired", subject_id=claims.subject_id)
            return AuthOutcome(AuthOutcomeKind.INVALID_TOKEN, message="Invalid refresh token")

        subject_id = claims.subject_id
        family_id = claims.family_id
        try:
            if await self.sessions.is_token_family_expired(family_id):
                self.logger.info("refresh_rejected_family_expired", subject_id=subject_id)
                return AuthOutcome(
                    AuthOutcomeKind.TOKEN_FAMILY_EXPIRED,
                    message="Session is too old. Please sign in again.",
                    subject_id=subject_id,
                )

            if not await self.sessions.validate_refresh_token(subject_id, refresh_token):
                self.logger.warning(
                    "refresh_token_reuse_detected", subject_id=subject_id, family_id=family_id
                )
                await self.sessions.revoke_all_user_tokens(subject_id)
                return AuthOutcome(
                    AuthOutcomeKind.TOKEN_REPLAY_DETECTED,
                    message="Invalid refresh token. All sessions have been terminated.",
                    subject_id=subject_id,
                )

            remember_me = await self.sessions.is_remember_me_token(refresh_token)
            access_ttl, refresh_ttl = self._session_ttls(remember_me)
            new_access = self.issuer.mint(subject_id, token_type=ACCESS, ttl_seconds=access_ttl)
            new_refresh = self.issuer.mint(
                subject_id, token_type=REFRESH, ttl_seconds=refresh_ttl, family_id=family_id
            )
            await self.sessions.save_access_token(subject_id, new_access, access_ttl)
            await self.sessions.rotate_refresh_token(
                subject_id, refresh_token, new_refresh, family_id, refresh_ttl
            )
        except StoreError as exc:
            return self._store_unavailable("refresh", exc)

        self.logger.info("tokens_refreshed", subject_id=subject_id, remember_me=remember_me)
        return AuthOutcome(
            AuthOutcomeKind.SUCCESS,
            tokens=TokenResponse(
                access_token=new_access,
                refresh_token=new_refresh,
                expires_in_seconds=access_ttl,
                remember_me=remember_me,
            ),
            subject_id=subject_id,
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    async def logout(self, refresh_token: Optional[str] = None) -> LogoutResponse:
        """Always succeeds; never reveals whether ``refresh_token`` was valid."""
        subject_id: Optional[str] = None
        if refresh_token:
            claims = self._parse_refresh_for_logout(refresh_token)
            if claims is not None:
                subject_id = claims.subject_id
                try:
                    access_token = await self.sessions.get_latest_access_token(subject_id)
                    if access_token is not None:
                        await self._blacklist_presented(access_token)
                    await self.sessions.blacklist_token(
                        refresh_token, self._remaining_lifetime(claims)
                    )
                    await self.sessions.remove_refresh_token(subject_id)
                except StoreError as exc:
                    self.logger.warning(
                        "logout_store_error", subject_id=subject_id, error=exc.message
                    )

        current_auth_var.set(None)
        if subject_id is not None:
            self.logger.info("user_logged_out", subject_id=subject_id)
        return LogoutResponse()

    def _parse_refresh_for_logout(self, token: str) -> Optional[TokenClaims]:
        try:
            claims = self.issuer.parse(token)
        except InvalidTokenError as exc:
            self.logger.info("logout_token_ignored", reason=exc.message)
            return None
        if claims.token_type != REFRESH:
            self.logger.info("logout_token_ignored", reason="not a refresh token")
            return None
        return claims

    async def _blacklist_presented(self, token: str) -> None:
        try:
            claims = self.issuer.parse(token)
        except InvalidTokenError:
            # Already expired or unreadable; nothing left to suppress
            return
        await self.sessions.blacklist_token(token, self._remaining_lifetime(claims))

    # ------------------------------------------------------------------
    # Hot path
    # ------------------------------------------------------------------

    async def authenticate(self, access_token: Optional[str]) -> Optional[AuthContext]:
        """Resolve a bearer access token to its subject, or None."""
        if not access_token:
            return None
        try:
            claims = self.issuer.parse(access_token)
        except InvalidTokenError:
            return None
        if claims.token_type != ACCESS:
            return None
        try:
            if await self.sessions.is_token_blacklisted(access_token):
                self.logger.warning("blacklisted_token_presented", subject_id=claims.subject_id)
                return None
            if not await self.sessions.is_access_token_current(claims.subject_id, access_token):
                self.logger.warning("superseded_access_token_presented", subject_id=claims.subject_id)
                return None
        except StoreError as exc:
            self.logger.warning("authenticate_failed_closed", error=exc.message)
            return None
        ctx = AuthContext(subject_id=claims.subject_id, token_id=claims.token_id)
        current_auth_var.set(ctx)
        return ctx

    # ------------------------------------------------------------------
    # Lockout administration
    # ------------------------------------------------------------------

    async def lockout_status(self, identifier: str) -> LockoutStatusResponse:
        try:
            remaining = await self.lockout.get_lockout_time_remaining(identifier)
            locked = remaining is not None or await self.lockout.is_user_locked(identifier)
        except StoreError as exc:
            raise ServiceUnavailableError(STORE_UNAVAILABLE_MESSAGE) from exc
        if not locked:
            return LockoutStatusResponse(
                identifier=identifier, locked=False, message="Account is not locked"
            )
        return LockoutStatusResponse(
            identifier=identifier,
            locked=True,
            retry_after_seconds=remaining,
            message=f"Account is temporarily locked. Try again in {remaining} seconds.",
        )

    async def unlock_account(self, identifier: str) -> ActionResponse:
        try:
            await self.lockout.unlock_user_account(identifier)
        except StoreError as exc:
            self.logger.warning("unlock_failed", identifier=identifier, error=exc.message)
            return ActionResponse(success=False, message=STORE_UNAVAILABLE_MESSAGE)
        return ActionResponse(success=True, message="Account unlocked")


__all__ = [
    "AuthContext",
    "AuthOrchestrator",
    "AuthOutcome",
    "AuthOutcomeKind",
    "SignInStage",
    "get_current_auth",
]
