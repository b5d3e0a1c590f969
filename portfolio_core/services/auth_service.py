# =============================================================================
# portfolio_core/services/auth_service.py
# Session Management over the Remote Auth Service
# =============================================================================
"""
AuthService - login, registration and token lifecycle.

Features:
- Credential checks before any network call
- Lockout after repeated failed logins
- Token refresh scheduled ``refresh_margin`` seconds before expiry
- Last signed-in profile kept in local settings for offline use

Tokens are held in memory only; the local database never stores them.
"""

from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from portfolio_core.data.supabase_client import AuthSession, RemoteService
from portfolio_core.errors import (
    AuthorizationError,
    PortfolioCoreError,
    TransientNetworkError,
    ValidationError,
)
from portfolio_core.offline.local_database import LocalDatabase
from portfolio_core.offline.scheduler import Scheduler
from portfolio_core.services.base_service import BaseService, Result, ServiceHealth
from portfolio_core.services.request_executor import RequestExecutor

LAST_USER_SETTING = "auth.last_user"
REFRESH_JOB = "auth-token-refresh"

MIN_PASSWORD_LENGTH = 6
MIN_NAME_LENGTH = 2


@dataclass
class LoginAttempts:
    failures: int = 0
    locked_until: float = 0.0


class AuthService(BaseService):
    """
    Authentication against the remote service.

    Usage:
        auth = AuthService(remote, executor, local_db, scheduler=scheduler)
        await auth.login("student@uni.edu", "secret123")
        auth.is_authenticated()
        user = auth.get_current_user()
    """

    name = "auth"

    def __init__(
        self,
        remote: RemoteService,
        executor: RequestExecutor,
        local_db: LocalDatabase,
        scheduler: Optional[Scheduler] = None,
        refresh_margin: float = 300.0,
        max_login_attempts: int = 5,
        lockout_duration: float = 900.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            remote: Remote auth provider
            executor: Executor for remote calls
            local_db: Local settings store for the last user profile
            scheduler: Scheduler for automatic token refresh
            refresh_margin: Seconds before expiry at which the token is refreshed
            max_login_attempts: Failed logins before the account is locked
            lockout_duration: Lockout length in seconds
            clock: Unix time source (injectable for tests)
        """
        super().__init__()
        self.remote = remote
        self.executor = executor
        self.local_db = local_db
        self.scheduler = scheduler
        self.refresh_margin = refresh_margin
        self.max_login_attempts = max_login_attempts
        self.lockout_duration = lockout_duration
        self._clock = clock or time.time

        self._session: Optional[AuthSession] = None
        self._attempts: Dict[str, LoginAttempts] = {}
        self._refreshes = 0
        self._refresh_failures = 0

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    # =========================================================================
    # LOGIN / REGISTER / LOGOUT
    # =========================================================================

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Sign in with email and password.

        Returns:
            Dict with ``user`` and ``expires_at``

        Raises:
            ValidationError: Malformed credentials
            AuthorizationError: Wrong credentials or account locked
            TransientNetworkError: Remote unreachable
        """
        email = (email or "").strip().lower()
        self._validate_email(email)
        if not password:
            raise ValidationError("Password is required", field="password")
        self._check_lockout(email)

        result = await self.executor.execute(lambda: self.remote.sign_in(email, password))
        if not result.success:
            error = self._login_error(result)
            if isinstance(error, AuthorizationError):
                self._record_failure(email)
            raise error

        self._attempts.pop(email, None)
        self._start_session(result.data)
        self.logger.info(f"User {email} signed in")
        return self._public_session()

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        role: str = "student",
        department: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create an account and sign it in."""
        email = (email or "").strip().lower()
        if not name or len(name.strip()) < MIN_NAME_LENGTH:
            raise ValidationError(
                f"Name must be at least {MIN_NAME_LENGTH} characters",
                field="name",
            )
        self._validate_email(email)
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                field="password",
            )

        metadata = {"name": name.strip(), "role": role}
        if department:
            metadata["department"] = department

        result = await self.executor.execute(lambda: self.remote.sign_up(email, password, metadata))
        if not result.success:
            raise result.exception

        self._start_session(result.data)
        self.logger.info(f"User {email} registered")
        return self._public_session()

    async def logout(self) -> bool:
        """End the session locally; remote sign-out is best effort."""
        self._cancel_refresh()
        if self._session is not None:
            result = await self.executor.execute(self.remote.sign_out, max_retries=1)
            if not result.success:
                self.logger.warning(f"Remote sign-out failed, clearing local session anyway: {result.error}")
        self._session = None
        self.local_db.delete_setting(LAST_USER_SETTING)
        self.logger.info("Signed out")
        return True

    # =========================================================================
    # TOKEN LIFECYCLE
    # =========================================================================

    async def refresh_token(self) -> Dict[str, Any]:
        """
        Exchange the refresh token for a new session.

        An AuthorizationError ends the session; a network error keeps it
        and retries after ``refresh_margin / 2`` seconds while the token is
        still valid.
        """
        if self._session is None:
            raise AuthorizationError("No active session")

        refresh = self._session.refresh_token
        async with self.log_operation("Refreshing access token"):
            result = await self.executor.execute(lambda: self.remote.refresh_session(refresh))
        if not result.success:
            self._refresh_failures += 1
            error = result.exception
            if isinstance(error, TransientNetworkError) and self.is_authenticated():
                self._schedule_refresh(delay=self.refresh_margin / 2)
            else:
                self.logger.warning(f"Session ended after failed refresh: {result.error}")
                self._cancel_refresh()
                self._session = None
            raise error

        self._refreshes += 1
        self._start_session(result.data)
        return self._public_session()

    async def _scheduled_refresh(self) -> None:
        try:
            await self.refresh_token()
        except PortfolioCoreError as e:
            self.logger.warning(f"Scheduled token refresh failed: {e.message}")

    def _start_session(self, session: AuthSession) -> None:
        self._session = session
        self.local_db.set_setting(LAST_USER_SETTING, session.user)
        self._schedule_refresh()

    def _schedule_refresh(self, delay: Optional[float] = None) -> None:
        if self.scheduler is None or self._session is None:
            return
        if delay is None:
            delay = max(0.0, self._session.expires_in(self._clock()) - self.refresh_margin)
        self.scheduler.call_later(delay, self._scheduled_refresh, name=REFRESH_JOB)
        self.logger.debug(f"Token refresh scheduled in {delay:.0f}s")

    def _cancel_refresh(self) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel(REFRESH_JOB)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_current_user(self) -> Optional[Dict[str, Any]]:
        """Signed-in user, or the last known profile while offline."""
        if self._session is not None:
            return dict(self._session.user)
        return self.local_db.get_setting(LAST_USER_SETTING)

    def is_authenticated(self) -> bool:
        return self._session is not None and self._session.expires_in(self._clock()) > 0

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _validate_email(self, email: str) -> None:
        if not email or "@" not in email:
            raise ValidationError("Valid email is required", field="email", actual=email or None)

    def _check_lockout(self, email: str) -> None:
        attempts = self._attempts.get(email)
        if attempts is None or not attempts.locked_until:
            return
        remaining = attempts.locked_until - self._clock()
        if remaining > 0:
            raise AuthorizationError(
                f"Account temporarily locked, try again in {int(remaining // 60) + 1} minute(s)",
                details={"locked_for_s": round(remaining)},
            )
        self._attempts.pop(email, None)

    def _record_failure(self, email: str) -> None:
        attempts = self._attempts.setdefault(email, LoginAttempts())
        attempts.failures += 1
        if attempts.failures >= self.max_login_attempts:
            attempts.locked_until = self._clock() + self.lockout_duration
            self.logger.warning(f"Account {email} locked after {attempts.failures} failed logins")

    def _login_error(self, result: Result) -> PortfolioCoreError:
        error = result.exception
        # The auth API answers bad credentials with a plain 400
        if isinstance(error, ValidationError):
            return AuthorizationError("Invalid login credentials", details=dict(error.details))
        return error

    def _public_session(self) -> Dict[str, Any]:
        return {"user": dict(self._session.user), "expires_at": self._session.expires_at}

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def health(self) -> ServiceHealth:
        # A session that expired without being refreshed means refresh is failing
        if self._session is not None and not self.is_authenticated():
            return ServiceHealth.DEGRADED
        return ServiceHealth.HEALTHY

    async def reset(self) -> None:
        self._cancel_refresh()
        self._session = None
        self._attempts.clear()

    def metrics(self) -> Dict[str, Any]:
        return {
            "authenticated": self.is_authenticated(),
            "refreshes": self._refreshes,
            "refresh_failures": self._refresh_failures,
            "locked_accounts": sum(1 for a in self._attempts.values() if a.locked_until > self._clock()),
        }
