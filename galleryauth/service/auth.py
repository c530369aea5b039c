from __future__ import annotations

import asyncio
import functools
import re
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

from galleryauth.config import Settings
from galleryauth.logging import email_digest, get_logger
from galleryauth.service.attempt_guard import AttemptGuard
from galleryauth.service.errors import (
    AccountInactive,
    ConflictError,
    ForbiddenError,
    InvalidCredentials,
    ServiceUnavailableError,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
    ValidationError,
    WeakPassword,
)
from galleryauth.service.hashing import PasswordHasher
from galleryauth.service.notifications import NotificationSink
from galleryauth.service.password_policy import PasswordPolicy
from galleryauth.service.reset_tokens import ResetTokenManager
from galleryauth.service.tokens import Claims, TokenPair, TokenService, TokenType
from galleryauth.storage.counters import SharedCounterStore
from galleryauth.storage.errors import ConstraintViolation, StoreUnavailable
from galleryauth.storage.models import Principal, Role, normalize_email
from galleryauth.storage.retry import retry_read

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = (
    "If an account exists for this email, a password reset link has been sent."
)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialStore(Protocol):
    def create_principal(
        self,
        email: str,
        password_hash: str,
        password_algo: str,
        *,
        role: Role = Role.USER,
        is_active: bool = True,
    ) -> Principal: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]: ...

    def touch_last_login(
        self, principal_id: str, when: Optional[datetime] = None
    ) -> None: ...

    def count_active_principals(self) -> int: ...

    def set_principal_active(
        self, principal_id: str, is_active: bool
    ) -> Optional[Principal]: ...


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    tokens: TokenPair
    bootstrapped: bool = False


def _fail_closed(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    """Surface store outages as 503s so they never read as an allow."""

    @functools.wraps(fn)
    async def wrapper(self: "AuthenticationOrchestrator", *args: Any, **kwargs: Any) -> Any:
        try:
            return await fn(self, *args, **kwargs)
        except StoreUnavailable as exc:
            logger.error(
                "auth_store_unavailable",
                operation=fn.__name__,
                backend=exc.backend,
                store_operation=exc.operation,
            )
            raise ServiceUnavailableError(
                "authentication is temporarily unavailable",
                detail={"backend": exc.backend},
            ) from exc

    return wrapper


class AuthenticationOrchestrator:
    """Login, token and password flows over the credential and counter stores."""

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        counters: SharedCounterStore,
        *,
        notifier: Optional[NotificationSink] = None,
        hasher: Optional[PasswordHasher] = None,
        policy: Optional[PasswordPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.counters = counters
        self.notifier = notifier
        self.hasher = hasher or PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )
        self.policy = policy or PasswordPolicy()
        self._clock = clock
        self.tokens = TokenService(settings, counters, clock=clock)
        self.guard = AttemptGuard(settings, counters, clock=clock)
        self.resets = ResetTokenManager(
            settings,
            store,
            counters,
            self.tokens,
            policy=self.policy,
            hasher=self.hasher,
            clock=clock,
        )
        self._pending_notifications: Set[asyncio.Task] = set()

    async def _read(self, operation: str, fn: Callable[[], Any]) -> Any:
        return await retry_read(
            operation,
            fn,
            retries=self.settings.store_read_retries,
            base_delay=self.settings.store_retry_base_delay_seconds,
        )

    def _is_default_admin_attempt(self, email: str, password: str) -> bool:
        return (
            self.settings.bootstrap_admin_enabled
            and email == normalize_email(self.settings.default_admin_email)
            and password == self.settings.default_admin_password
        )

    # login
    @_fail_closed
    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        remember_me: bool = False,
    ) -> LoginResult:
        email = normalize_email(email)
        identifier = self.guard.identifier_for(email, ip_addr)
        await self.guard.check_allowed(identifier)

        bootstrapped = False
        if self._is_default_admin_attempt(email, password):
            bootstrapped = await self.bootstrap_default_admin() is not None

        principal = await self._read(
            "get_principal_by_email", lambda: self.store.get_principal_by_email(email)
        )
        if principal is None:
            # Same hashing cost as a real check so unknown emails are not distinguishable
            await self.hasher.burn_async(password)
            counter = await self.guard.record_failure(identifier)
            logger.warning(
                "login_failed",
                email_digest=email_digest(email),
                reason="unknown_email",
                fail_count=counter.fail_count,
            )
            raise InvalidCredentials()

        record = await self._read(
            "get_password_record", lambda: self.store.get_password_record(principal.id)
        )
        if not await self.hasher.verify_async(record, password):
            counter = await self.guard.record_failure(identifier)
            logger.warning(
                "login_failed",
                principal_id=principal.id,
                reason="bad_password",
                fail_count=counter.fail_count,
            )
            raise InvalidCredentials()

        if not principal.is_active:
            await self.guard.record_failure(identifier)
            logger.warning("login_failed", principal_id=principal.id, reason="inactive")
            raise AccountInactive()

        await self.guard.record_success(identifier)
        now = self._clock()
        self.store.touch_last_login(principal.id, now)
        principal = replace(principal, last_login=now)
        tokens = self.tokens.issue(
            principal, refresh_ttl=self.tokens.refresh_ttl_for(remember_me=remember_me)
        )
        logger.info(
            "login_succeeded",
            principal_id=principal.id,
            role=principal.role.value,
            remember_me=remember_me,
        )
        return LoginResult(principal=principal, tokens=tokens, bootstrapped=bootstrapped)

    @_fail_closed
    async def bootstrap_default_admin(self) -> Optional[Principal]:
        """Provision the configured default admin once, on an empty system.

        Returns the new principal, or ``None`` when provisioning is disabled or
        any active principal already exists.
        """
        if not self.settings.bootstrap_admin_enabled:
            return None
        active = await self._read(
            "count_active_principals", self.store.count_active_principals
        )
        if active:
            return None
        password_hash, algo = await self.hasher.hash_async(
            self.settings.default_admin_password
        )
        try:
            principal = self.store.create_principal(
                self.settings.default_admin_email,
                password_hash,
                algo,
                role=Role.ADMIN,
            )
        except ConstraintViolation:
            logger.info("bootstrap_admin_already_present")
            return None
        logger.warning(
            "bootstrap_admin_created",
            principal_id=principal.id,
            email_digest=email_digest(principal.email),
        )
        return principal

    # tokens
    @_fail_closed
    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = await self.tokens.verify(refresh_token, TokenType.REFRESH)
        principal = await self._read(
            "get_principal", lambda: self.store.get_principal(claims.sub)
        )
        if principal is None:
            raise TokenInvalid("token subject no longer exists")
        if not principal.is_active:
            raise AccountInactive()
        tokens = await self.tokens.rotate_refresh(refresh_token, principal=principal)
        logger.info("tokens_refreshed", principal_id=principal.id)
        return tokens

    @_fail_closed
    async def logout(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        """Revoke the access token and, when given, its refresh token.

        An expired access token still lets a valid refresh token be revoked.
        """
        claims: Optional[Claims] = None
        try:
            claims = await self.tokens.verify(access_token, TokenType.ACCESS)
        except TokenExpired:
            if not refresh_token:
                raise
        else:
            await self.tokens.revoke_claims(claims)

        subject = claims.sub if claims else None
        if refresh_token:
            try:
                refresh_claims = await self.tokens.verify(refresh_token, TokenType.REFRESH)
            except (TokenExpired, TokenInvalid, TokenRevoked) as exc:
                if claims is None:
                    raise
                logger.info("logout_refresh_ignored", reason=exc.error_code)
            else:
                if claims is None or refresh_claims.sub == claims.sub:
                    await self.tokens.revoke_claims(refresh_claims)
                    subject = refresh_claims.sub
        logger.info("logout", principal_id=subject, access_expired=claims is None)

    @_fail_closed
    async def logout_all(self, principal_id: str) -> None:
        await self.tokens.revoke_all(principal_id)

    @_fail_closed
    async def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[Role] = None
    ) -> Claims:
        scheme, _, token = (authorization or "").strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise TokenInvalid("missing or malformed bearer token")
        claims = await self.tokens.verify(token, TokenType.ACCESS)
        principal = await self._read(
            "get_principal", lambda: self.store.get_principal(claims.sub)
        )
        if principal is None:
            raise TokenInvalid("token subject no longer exists")
        if not principal.is_active:
            raise AccountInactive()
        if required_role and not principal.is_admin and principal.role != Role(required_role):
            logger.warning(
                "authorization_denied",
                principal_id=principal.id,
                role=principal.role.value,
                required_role=Role(required_role).value,
            )
            raise ForbiddenError("insufficient role for this action")
        return claims

    # accounts
    @_fail_closed
    async def register(
        self, email: str, password: str, *, role: Role = Role.USER
    ) -> LoginResult:
        email = normalize_email(email)
        if not _EMAIL_RE.match(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        check = self.policy.validate(password)
        if not check.valid:
            raise WeakPassword(check.violations)
        existing = await self._read(
            "get_principal_by_email", lambda: self.store.get_principal_by_email(email)
        )
        if existing:
            raise ConflictError("email already registered", detail={"field": "email"})
        password_hash, algo = await self.hasher.hash_async(password)
        try:
            principal = self.store.create_principal(email, password_hash, algo, role=role)
        except ConstraintViolation:
            raise ConflictError("email already registered", detail={"field": "email"})
        logger.info(
            "principal_registered",
            principal_id=principal.id,
            role=principal.role.value,
            password_strength=check.strength.value,
        )
        return LoginResult(principal=principal, tokens=self.tokens.issue(principal))

    @_fail_closed
    async def change_password(
        self, principal_id: str, current_password: str, new_password: str
    ) -> None:
        check = self.policy.validate(new_password)
        if not check.valid:
            raise WeakPassword(check.violations)
        principal = await self._read(
            "get_principal", lambda: self.store.get_principal(principal_id)
        )
        if principal is None:
            raise InvalidCredentials()
        if not principal.is_active:
            raise AccountInactive()
        record = await self._read(
            "get_password_record", lambda: self.store.get_password_record(principal_id)
        )
        if not await self.hasher.verify_async(record, current_password):
            logger.warning("password_change_rejected", principal_id=principal_id)
            raise InvalidCredentials("current password is incorrect")
        password_hash, algo = await self.hasher.hash_async(new_password)
        self.store.save_password(principal_id, password_hash, algo)
        await self.tokens.revoke_all(principal_id)
        logger.info(
            "password_changed",
            principal_id=principal_id,
            password_strength=check.strength.value,
        )
        self._notify_reset_confirmation(principal)

    # password reset
    @_fail_closed
    async def initiate_password_reset(self, email: str) -> str:
        initiation = await self.resets.initiate(email)
        if initiation.issued and self.notifier:
            self._schedule(
                "password_reset_link",
                self.notifier.send_password_reset_link(
                    initiation.principal, initiation.raw_token
                ),
            )
        return RESET_REQUESTED_MESSAGE

    @_fail_closed
    async def complete_password_reset(self, token: str, new_password: str) -> Principal:
        principal = await self.resets.complete(token, new_password)
        self._notify_reset_confirmation(principal)
        return principal

    # notifications
    def _notify_reset_confirmation(self, principal: Principal) -> None:
        if self.notifier:
            self._schedule(
                "password_reset_confirmation",
                self.notifier.send_password_reset_confirmation(principal),
            )

    def _schedule(self, kind: str, coro: Awaitable[bool]) -> None:
        task = asyncio.create_task(self._deliver(kind, coro))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _deliver(self, kind: str, coro: Awaitable[bool]) -> None:
        try:
            delivered = await coro
        except Exception as exc:
            logger.error(
                "notification_failed",
                kind=kind,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return
        if delivered is False:
            logger.warning("notification_not_delivered", kind=kind)

    async def drain_notifications(self) -> None:
        """Wait for scheduled notifications; used at shutdown and in tests."""
        while self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications))
