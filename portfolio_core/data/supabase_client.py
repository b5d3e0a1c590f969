# =============================================================================
# portfolio_core/data/supabase_client.py
# Remote Service Adapters: Supabase (async) and an In-Memory Stand-in
# Handles collection CRUD, session auth and the reachability probe
# =============================================================================
"""
Remote service adapters.

Every adapter exposes the same narrow surface the resilience layer needs:

    select(collection, filters)            -> list of records
    insert(collection, record)             -> stored record
    update(collection, record_id, changes) -> stored record
    delete(collection, record_id)          -> None
    sign_in / sign_up / sign_out / refresh_session / get_user
    ping()                                 -> raises when unreachable

Adapters raise raw library exceptions; classification into the error
taxonomy happens in the request executor.

Expects credentials in the secrets file:
    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"
"""

from __future__ import annotations
import asyncio
import copy
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

import httpx
from supabase import AsyncClient, acreate_client

from portfolio_core.errors import AuthorizationError, ConfigurationError, ValidationError
from portfolio_core.data.utils import clean_record, matches

logger = logging.getLogger(__name__)


@dataclass
class AuthSession:
    """Authenticated session as returned by the remote auth service."""
    user: Dict[str, Any]
    access_token: str
    refresh_token: str
    expires_at: float                  # Unix timestamp (seconds)

    def expires_in(self, now: Optional[float] = None) -> float:
        """Seconds until the access token expires (negative once expired)."""
        return self.expires_at - (time.time() if now is None else now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
        }


class RemoteService(ABC):
    """Interface of the hosted backend as seen by the resilience layer."""

    @abstractmethod
    async def select(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update(self, collection: str, record_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def delete(self, collection: str, record_id: Any) -> None:
        ...

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthSession:
        ...

    @abstractmethod
    async def sign_up(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> AuthSession:
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        ...

    @abstractmethod
    async def refresh_session(self, refresh_token: str) -> AuthSession:
        ...

    @abstractmethod
    async def get_user(self, access_token: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Return normally when the backend is reachable, raise otherwise."""

    async def close(self) -> None:
        """Release network resources."""


def _user_to_dict(user: Any) -> Dict[str, Any]:
    if user is None:
        return {}
    if isinstance(user, dict):
        return dict(user)
    return {
        "id": str(getattr(user, "id", "")),
        "email": getattr(user, "email", None),
        "role": getattr(user, "role", None),
        "metadata": dict(getattr(user, "user_metadata", None) or {}),
    }


def _session_from_response(response: Any) -> AuthSession:
    """Build an AuthSession from a gotrue AuthResponse."""
    session = getattr(response, "session", None)
    if session is None:
        raise AuthorizationError("Remote auth returned no session")

    expires_at = getattr(session, "expires_at", None)
    if expires_at is None:
        expires_at = time.time() + float(getattr(session, "expires_in", 3600) or 3600)

    user = getattr(response, "user", None) or getattr(session, "user", None)
    return AuthSession(
        user=_user_to_dict(user),
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_at=float(expires_at),
    )


class SupabaseRemote(RemoteService):
    """
    Supabase backend over the async client.

    The client is created on first use so constructing the adapter never
    touches the network.
    """

    REST_PATH = "/rest/v1/"

    def __init__(self, url: str, key: str, probe_timeout: float = 5.0):
        """
        Args:
            url: Project URL (https://<project>.supabase.co)
            key: Anon or service key
            probe_timeout: Timeout of the reachability probe in seconds
        """
        if not url or not key:
            raise ConfigurationError(
                "Supabase credentials missing: set SUPABASE_URL and SUPABASE_KEY "
                "or the [supabase] section of the secrets file",
                config_key="supabase",
            )
        self.url = url.rstrip("/")
        self.key = key
        self.probe_timeout = probe_timeout
        self._client: Optional[AsyncClient] = None
        self._http: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()

    async def _get_client(self) -> AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = await acreate_client(self.url, self.key)
                logger.info(f"Supabase client created for {self.url}")
            return self._client

    # =========================================================================
    # COLLECTION CRUD
    # =========================================================================

    async def select(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        client = await self._get_client()
        query = client.table(collection).select("*")
        for col, val in (filters or {}).items():
            query = query.eq(col, val)
        response = await query.execute()
        return list(response.data or [])

    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        response = await client.table(collection).insert(clean_record(record)).execute()
        return response.data[0] if response.data else dict(record)

    async def update(self, collection: str, record_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        response = await (
            client.table(collection)
            .update(clean_record(changes))
            .eq("id", record_id)
            .execute()
        )
        if not response.data:
            raise ValidationError(
                f"No '{collection}' record with id {record_id}",
                field="id",
                actual=str(record_id),
            )
        return response.data[0]

    async def delete(self, collection: str, record_id: Any) -> None:
        client = await self._get_client()
        await client.table(collection).delete().eq("id", record_id).execute()

    # =========================================================================
    # AUTH
    # =========================================================================

    async def sign_in(self, email: str, password: str) -> AuthSession:
        client = await self._get_client()
        response = await client.auth.sign_in_with_password({"email": email, "password": password})
        return _session_from_response(response)

    async def sign_up(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> AuthSession:
        client = await self._get_client()
        credentials: Dict[str, Any] = {"email": email, "password": password}
        if metadata:
            credentials["options"] = {"data": clean_record(metadata)}
        response = await client.auth.sign_up(credentials)
        return _session_from_response(response)

    async def sign_out(self) -> None:
        client = await self._get_client()
        await client.auth.sign_out()

    async def refresh_session(self, refresh_token: str) -> AuthSession:
        client = await self._get_client()
        response = await client.auth.refresh_session(refresh_token)
        return _session_from_response(response)

    async def get_user(self, access_token: str) -> Dict[str, Any]:
        client = await self._get_client()
        response = await client.auth.get_user(access_token)
        if response is None or response.user is None:
            raise AuthorizationError("Access token is no longer valid")
        return _user_to_dict(response.user)

    # =========================================================================
    # CONNECTIVITY
    # =========================================================================

    async def ping(self) -> None:
        """GET the REST root; any non-5xx answer means the backend is up."""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.probe_timeout)
        response = await self._http.get(
            f"{self.url}{self.REST_PATH}",
            headers={"apikey": self.key, "Authorization": f"Bearer {self.key}"},
        )
        if response.status_code >= 500:
            response.raise_for_status()

    async def close(self) -> None:
        """Explicitly close HTTP connections held by the adapter."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        if self._client is not None:
            postgrest = getattr(self._client, "postgrest", None)
            if postgrest is not None and hasattr(postgrest, "aclose"):
                await postgrest.aclose()
            self._client = None
        logger.debug("Supabase connections closed")


class InMemoryRemote(RemoteService):
    """
    Process-local backend with a reachability switch.

    Used by the test-suite and for offline demos: flip ``reachable`` to
    simulate an outage, ``latency`` to simulate a slow link, and
    ``fail_next()`` to inject a specific error.

    Usage:
        remote = InMemoryRemote()
        remote.reachable = False    # every call now raises httpx.ConnectError
    """

    def __init__(self, latency: float = 0.0, token_ttl: float = 3600.0):
        self.reachable = True
        self.latency = latency
        self.token_ttl = token_ttl
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[str] = []
        self._users: Dict[str, Dict[str, Any]] = {}
        self._tokens: Dict[str, str] = {}
        self._refresh_tokens: Dict[str, str] = {}
        self._failures: List[BaseException] = []

    # =========================================================================
    # TEST HOOKS
    # =========================================================================

    def fail_next(self, error: BaseException, times: int = 1) -> None:
        """Make the next ``times`` calls raise ``error``."""
        self._failures.extend([error] * times)

    def seed(self, collection: str, records: List[Dict[str, Any]]) -> None:
        """Store records directly, bypassing call accounting."""
        table = self.collections.setdefault(collection, {})
        for record in records:
            table[str(record["id"])] = copy.deepcopy(record)

    def rows(self, collection: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self.collections.get(collection, {}).values()]

    async def _enter(self, call: str) -> None:
        self.calls.append(call)
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.reachable:
            raise httpx.ConnectError(f"Remote unreachable ({call})")
        if self._failures:
            raise self._failures.pop(0)

    # =========================================================================
    # COLLECTION CRUD
    # =========================================================================

    async def select(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        await self._enter(f"select:{collection}")
        return [
            copy.deepcopy(record)
            for record in self.collections.get(collection, {}).values()
            if matches(record, filters)
        ]

    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter(f"insert:{collection}")
        stored = clean_record(record)
        stored.setdefault("id", str(uuid.uuid4()))
        self.collections.setdefault(collection, {})[str(stored["id"])] = stored
        return copy.deepcopy(stored)

    async def update(self, collection: str, record_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter(f"update:{collection}")
        table = self.collections.get(collection, {})
        if str(record_id) not in table:
            raise ValidationError(
                f"No '{collection}' record with id {record_id}",
                field="id",
                actual=str(record_id),
            )
        table[str(record_id)].update(clean_record(changes))
        return copy.deepcopy(table[str(record_id)])

    async def delete(self, collection: str, record_id: Any) -> None:
        await self._enter(f"delete:{collection}")
        self.collections.get(collection, {}).pop(str(record_id), None)

    # =========================================================================
    # AUTH
    # =========================================================================

    def _issue(self, email: str) -> AuthSession:
        user = self._users[email]
        access = f"access-{uuid.uuid4().hex}"
        refresh = f"refresh-{uuid.uuid4().hex}"
        self._tokens[access] = email
        self._refresh_tokens[refresh] = email
        return AuthSession(
            user={k: v for k, v in user.items() if k != "password"},
            access_token=access,
            refresh_token=refresh,
            expires_at=time.time() + self.token_ttl,
        )

    async def sign_in(self, email: str, password: str) -> AuthSession:
        await self._enter("auth:sign_in")
        user = self._users.get(email)
        if user is None or user["password"] != password:
            raise AuthorizationError("Invalid login credentials", status_code=400)
        return self._issue(email)

    async def sign_up(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> AuthSession:
        await self._enter("auth:sign_up")
        if email in self._users:
            raise ValidationError("User already registered", field="email", actual=email)
        self._users[email] = {
            "id": str(uuid.uuid4()),
            "email": email,
            "role": "authenticated",
            "metadata": dict(metadata or {}),
            "password": password,
        }
        return self._issue(email)

    async def sign_out(self) -> None:
        await self._enter("auth:sign_out")

    async def refresh_session(self, refresh_token: str) -> AuthSession:
        await self._enter("auth:refresh")
        email = self._refresh_tokens.pop(refresh_token, None)
        if email is None:
            raise AuthorizationError("Invalid refresh token", status_code=401)
        return self._issue(email)

    async def get_user(self, access_token: str) -> Dict[str, Any]:
        await self._enter("auth:get_user")
        email = self._tokens.get(access_token)
        if email is None:
            raise AuthorizationError("Access token is no longer valid", status_code=401)
        return {k: v for k, v in self._users[email].items() if k != "password"}

    async def ping(self) -> None:
        """Honours ``reachable`` and ``latency`` but not injected failures."""
        self.calls.append("ping")
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.reachable:
            raise httpx.ConnectError("Remote unreachable (ping)")
