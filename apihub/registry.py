"""
Registry store: persistence for registered APIs, endpoints, API keys and
usage records.

The gateway depends only on the ``RegistryStore`` protocol; ``SqlRegistryStore``
is the PostgreSQL implementation built on the async session factory created at
startup.
"""

import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from .errors import EndpointConflict, SlugConflict
from .models import APIKey, Endpoint, RegisteredApi, UsageRecord


class RegistryStore(Protocol):
    async def get_api_by_slug(self, slug: str) -> Optional[RegisteredApi]: ...

    async def get_api(self, api_id: uuid.UUID) -> Optional[RegisteredApi]: ...

    async def list_public_apis(self) -> List[RegisteredApi]: ...

    async def create_api(self, api: RegisteredApi, endpoints: Iterable[Endpoint]) -> RegisteredApi: ...

    async def update_api(self, api_id: uuid.UUID, changes: dict) -> Optional[RegisteredApi]: ...

    async def delete_api(self, api_id: uuid.UUID) -> bool: ...

    async def add_endpoint(self, endpoint: Endpoint) -> Endpoint: ...

    async def update_endpoint(self, api_id: uuid.UUID, endpoint_id: uuid.UUID, changes: dict) -> Optional[Endpoint]: ...

    async def delete_endpoint(self, api_id: uuid.UUID, endpoint_id: uuid.UUID) -> bool: ...

    async def get_api_key(self, key: str) -> Optional[APIKey]: ...

    async def find_live_ip_key(self, ip_address: str, now: datetime) -> Optional[APIKey]: ...

    async def create_api_key(self, api_key: APIKey) -> APIKey: ...

    async def insert_usage_records(self, records: List[UsageRecord]) -> None: ...

    async def ping(self) -> None: ...


async def _commit(session: AsyncSession, conflict):
    """Commit, turning a unique-constraint violation into ``conflict``."""
    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise conflict(str(e.orig))


class SqlRegistryStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_api_by_slug(self, slug: str) -> Optional[RegisteredApi]:
        query = (
            select(RegisteredApi)
            .where(RegisteredApi.slug == slug)
            .options(selectinload(RegisteredApi.endpoints))
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalars().one_or_none()

    async def get_api(self, api_id: uuid.UUID) -> Optional[RegisteredApi]:
        query = (
            select(RegisteredApi)
            .where(RegisteredApi.id == api_id)
            .options(selectinload(RegisteredApi.endpoints))
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalars().one_or_none()

    async def list_public_apis(self) -> List[RegisteredApi]:
        query = (
            select(RegisteredApi)
            .where(RegisteredApi.is_public.is_(True), RegisteredApi.is_active.is_(True))
            .order_by(RegisteredApi.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def create_api(self, api: RegisteredApi, endpoints: Iterable[Endpoint]) -> RegisteredApi:
        async with self._session_factory() as session:
            api.endpoints = list(endpoints)
            session.add(api)
            await _commit(session, SlugConflict)
        return await self.get_api(api.id)

    async def update_api(self, api_id: uuid.UUID, changes: dict) -> Optional[RegisteredApi]:
        async with self._session_factory() as session:
            api = await session.get(RegisteredApi, api_id)
            if api is None:
                return None
            for field, value in changes.items():
                setattr(api, field, value)
            await _commit(session, SlugConflict)
        return await self.get_api(api_id)

    async def delete_api(self, api_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            api = await session.get(RegisteredApi, api_id)
            if api is None:
                return False
            await session.delete(api)
            await session.commit()
            return True

    async def add_endpoint(self, endpoint: Endpoint) -> Endpoint:
        async with self._session_factory() as session:
            session.add(endpoint)
            await _commit(session, EndpointConflict)
            await session.refresh(endpoint)
            return endpoint

    async def _get_endpoint(self, session: AsyncSession, api_id: uuid.UUID, endpoint_id: uuid.UUID) -> Optional[Endpoint]:
        result = await session.execute(
            select(Endpoint).where(Endpoint.id == endpoint_id, Endpoint.api_id == api_id)
        )
        return result.scalars().one_or_none()

    async def update_endpoint(self, api_id: uuid.UUID, endpoint_id: uuid.UUID, changes: dict) -> Optional[Endpoint]:
        async with self._session_factory() as session:
            endpoint = await self._get_endpoint(session, api_id, endpoint_id)
            if endpoint is None:
                return None
            for field, value in changes.items():
                setattr(endpoint, field, value)
            await _commit(session, EndpointConflict)
            await session.refresh(endpoint)
            return endpoint

    async def delete_endpoint(self, api_id: uuid.UUID, endpoint_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            endpoint = await self._get_endpoint(session, api_id, endpoint_id)
            if endpoint is None:
                return False
            await session.delete(endpoint)
            await session.commit()
            return True

    async def get_api_key(self, key: str) -> Optional[APIKey]:
        async with self._session_factory() as session:
            result = await session.execute(select(APIKey).where(APIKey.key == key))
            return result.scalars().one_or_none()

    async def find_live_ip_key(self, ip_address: str, now: datetime) -> Optional[APIKey]:
        query = (
            select(APIKey)
            .where(
                APIKey.ip_address == ip_address,
                APIKey.owner_id.is_(None),
                APIKey.is_active.is_(True),
                APIKey.expires_at > now,
            )
            .order_by(APIKey.created_at)
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalars().first()

    async def create_api_key(self, api_key: APIKey) -> APIKey:
        async with self._session_factory() as session:
            session.add(api_key)
            await session.commit()
            await session.refresh(api_key)
            return api_key

    async def insert_usage_records(self, records: List[UsageRecord]) -> None:
        async with self._session_factory() as session:
            session.add_all(records)
            await session.commit()

    async def ping(self) -> None:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
