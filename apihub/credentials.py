"""
Caller identity resolution.

The gateway asks a ``CredentialResolver`` who is calling and gets back a
``Credential``. Which scheme answers (API key header, session cookie, or
either) is picked once from ``AUTH_MODE`` by ``build_credential_resolver``.

Resolvers return ``Credential.none()`` when the caller presented nothing. A
credential that was presented but is unusable raises ``AuthInvalid`` or
``AuthExpired`` so the two cases stay distinguishable for API consumers.
"""

import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import redis.asyncio as redis
from fastapi import Request

from .config import API_KEY_HEADER, SESSION_NAMESPACE, Settings
from .errors import AuthExpired, AuthInvalid, KEY_HELP
from .models import APIKey
from .registry import RegistryStore
from .security import client_ip, is_expired, mask_key

logger = logging.getLogger(__name__)

NONE = "none"
SESSION = "session"
API_KEY = "api_key"


@dataclass(frozen=True)
class Credential:
    kind: str
    user_id: Optional[str] = None
    api_key: Optional[APIKey] = None

    @classmethod
    def none(cls) -> "Credential":
        return cls(kind=NONE)

    @property
    def is_none(self) -> bool:
        return self.kind == NONE


class CredentialResolver(Protocol):
    async def resolve(self, request: Request) -> Credential: ...


class ApiKeyCredentialResolver:
    def __init__(self, store: RegistryStore):
        self._store = store

    async def resolve(self, request: Request) -> Credential:
        presented = request.headers.get(API_KEY_HEADER)
        if not presented:
            return Credential.none()

        api_key = await self._store.get_api_key(presented)
        if api_key is None or not api_key.is_active:
            logger.warning(
                f"Invalid API key {mask_key(presented)} for {request.method} {request.url.path} from {client_ip(request)}"
            )
            raise AuthInvalid()

        if is_expired(api_key.expires_at):
            logger.warning(f"Expired API key {mask_key(presented)} used from {client_ip(request)}")
            raise AuthExpired(KEY_HELP)

        return Credential(kind=API_KEY, api_key=api_key)


class SessionCredentialResolver:
    """
    Sessions are written by the login flow as JSON ``{"userId", "expiresAt"}``
    under ``auth:session:{sid}``. A session past half its lifetime gets its
    expiry pushed out by a full max-age on read.
    """

    def __init__(self, redis_client: redis.Redis, cookie_name: str, max_age_seconds: int, clock=time.time):
        self._redis = redis_client
        self._cookie_name = cookie_name
        self._max_age = max_age_seconds
        self._clock = clock

    def _session_id(self, request: Request) -> Optional[str]:
        session_id = request.cookies.get(self._cookie_name)
        if session_id:
            return session_id
        authorization = request.headers.get("authorization", "")
        if authorization.startswith("Bearer "):
            return authorization[7:].strip() or None
        return None

    async def resolve(self, request: Request) -> Credential:
        session_id = self._session_id(request)
        if not session_id:
            return Credential.none()

        redis_key = f"{SESSION_NAMESPACE}{session_id}"
        raw = await self._redis.get(redis_key)
        if raw is None:
            return Credential.none()

        try:
            session = json.loads(raw)
            user_id = session["userId"]
            expires_at = float(session["expiresAt"])
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Discarding malformed session {session_id[:8]}")
            await self._redis.delete(redis_key)
            return Credential.none()

        now = self._clock()
        if expires_at <= now:
            await self._redis.delete(redis_key)
            return Credential.none()

        if expires_at - now < self._max_age / 2:
            session["expiresAt"] = now + self._max_age
            await self._redis.set(redis_key, json.dumps(session), ex=self._max_age)

        return Credential(kind=SESSION, user_id=str(user_id))


class ChainedCredentialResolver:
    def __init__(self, resolvers: Sequence[CredentialResolver]):
        self._resolvers = list(resolvers)

    async def resolve(self, request: Request) -> Credential:
        for resolver in self._resolvers:
            credential = await resolver.resolve(request)
            if not credential.is_none:
                return credential
        return Credential.none()


async def create_session(
    redis_client: redis.Redis,
    user_id,
    max_age_seconds: int,
    clock=time.time,
) -> str:
    session_id = str(uuid.uuid4()) + secrets.token_hex(8)
    payload = {"userId": str(user_id), "expiresAt": clock() + max_age_seconds}
    await redis_client.set(f"{SESSION_NAMESPACE}{session_id}", json.dumps(payload), ex=max_age_seconds)
    return session_id


async def destroy_session(redis_client: redis.Redis, session_id: str):
    await redis_client.delete(f"{SESSION_NAMESPACE}{session_id}")


def build_session_resolver(settings: Settings, redis_client: redis.Redis) -> SessionCredentialResolver:
    return SessionCredentialResolver(
        redis_client, settings.SESSION_COOKIE_NAME, settings.SESSION_MAX_AGE_SECONDS
    )


def build_credential_resolver(settings: Settings, store: RegistryStore, redis_client: redis.Redis) -> CredentialResolver:
    mode = settings.AUTH_MODE.lower()
    if mode == "api_key":
        return ApiKeyCredentialResolver(store)
    if mode == "session":
        return build_session_resolver(settings, redis_client)
    if mode == "any":
        return ChainedCredentialResolver([
            ApiKeyCredentialResolver(store),
            build_session_resolver(settings, redis_client),
        ])
    raise ValueError(f"Unknown AUTH_MODE: {settings.AUTH_MODE!r}")
