import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import Settings
from .deps import current_user_id, enforce_rate_limit, get_settings, get_store
from .errors import AuthRequired, EndpointConflict, PermissionDenied, ResourceNotFound, SlugConflict
from .models import Endpoint, RegisteredApi
from .registry import RegistryStore

logger = logging.getLogger(__name__)

SLUG_PATTERN = r"^[a-z0-9-]+$"

HttpMethod = Literal["GET", "POST", "PUT", "DELETE", "PATCH"]


def _check_base_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("base_url must be an absolute http(s) URL")
    return value


class EndpointIn(BaseModel):
    path: str = Field(description='Endpoint path (e.g. "/forecast" or "/weather/{city}")')
    method: HttpMethod
    name: str
    description: Optional[str] = None
    parameters: Optional[Any] = None
    queryParams: Optional[Any] = None
    pathParams: Optional[Any] = None

    def parameters_blob(self):
        if self.parameters is not None:
            return self.parameters
        blob = {}
        if self.queryParams is not None:
            blob["queryParams"] = self.queryParams
        if self.pathParams is not None:
            blob["pathParams"] = self.pathParams
        return blob or None


class EndpointUpdate(BaseModel):
    path: Optional[str] = None
    method: Optional[HttpMethod] = None
    name: Optional[str] = None
    description: Optional[str] = None
    parameters: Optional[Any] = None
    is_active: Optional[bool] = None


class RegisterApiRequest(BaseModel):
    slug: str = Field(pattern=SLUG_PATTERN, description='URL-friendly identifier (e.g. "weather-api")')
    name: str
    description: Optional[str] = None
    base_url: str
    category: Optional[str] = None
    headers: Optional[Dict[str, str]] = Field(default=None, description="Headers sent upstream on every proxied call")
    is_public: bool = True
    endpoints: List[EndpointIn] = []

    @field_validator("base_url")
    @classmethod
    def check_base_url(cls, value):
        return _check_base_url(value)


class UpdateApiRequest(BaseModel):
    slug: Optional[str] = Field(default=None, pattern=SLUG_PATTERN)
    name: Optional[str] = None
    description: Optional[str] = None
    base_url: Optional[str] = None
    category: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    is_active: Optional[bool] = None
    is_public: Optional[bool] = None

    @field_validator("base_url")
    @classmethod
    def check_base_url(cls, value):
        return _check_base_url(value)


class EndpointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    path: str
    method: str
    name: str
    description: Optional[str] = None
    parameters: Optional[Any] = None
    is_active: bool


class ApiOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: Optional[uuid.UUID] = None
    slug: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    base_url: str
    is_active: bool
    is_public: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


router = APIRouter(
    prefix="/api",
    tags=["APIs"],
    dependencies=[Depends(enforce_rate_limit)],
)


def proxy_url(settings: Settings, slug: str) -> str:
    return f"{settings.BASE_URL.rstrip('/')}/proxy/{slug}"


def describe_api(api: RegisteredApi, settings: Settings, with_endpoints: bool = False) -> dict:
    data = ApiOut.model_validate(api).model_dump(mode="json")
    data["proxy_url"] = proxy_url(settings, api.slug)
    if with_endpoints:
        data["endpoints"] = [
            EndpointOut.model_validate(endpoint).model_dump(mode="json") for endpoint in api.active_endpoints
        ]
    return data


def _writer(user_id: Optional[str], settings: Settings) -> Optional[str]:
    if user_id is None and settings.auth_required:
        raise AuthRequired("You must be logged in to perform this action", error="Authentication required")
    return user_id


def _owner_uuid(user_id: Optional[str]) -> Optional[uuid.UUID]:
    if user_id is None:
        return None
    try:
        return uuid.UUID(user_id)
    except ValueError:
        raise PermissionDenied("This account cannot own APIs")


async def _owned_api(store: RegistryStore, api_id: uuid.UUID, user_id: Optional[str], settings: Settings) -> RegisteredApi:
    api = await store.get_api(api_id)
    if api is None:
        raise ResourceNotFound(error="API not found")
    if api.owner_id is not None and user_id != str(api.owner_id) and user_id not in settings.ADMIN_USER_IDS:
        raise PermissionDenied("Only the owner of this API can change it")
    return api


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_api(
    payload: RegisterApiRequest,
    store: RegistryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
    user_id: Optional[str] = Depends(current_user_id),
):
    owner = _writer(user_id, settings)

    if await store.get_api_by_slug(payload.slug) is not None:
        raise SlugConflict()

    seen = set()
    for endpoint in payload.endpoints:
        if (endpoint.method, endpoint.path) in seen:
            raise EndpointConflict(f"{endpoint.method} {endpoint.path} is declared twice")
        seen.add((endpoint.method, endpoint.path))

    api = RegisteredApi(
        id=uuid.uuid4(),
        owner_id=_owner_uuid(owner),
        slug=payload.slug,
        name=payload.name,
        description=payload.description,
        category=payload.category,
        base_url=payload.base_url,
        custom_headers=payload.headers,
        is_active=True,
        is_public=payload.is_public,
    )
    # one transaction shares a single now(), so declaration order is stamped client-side
    registered_at = datetime.now(timezone.utc)
    endpoints = [
        Endpoint(
            id=uuid.uuid4(),
            api_id=api.id,
            path=endpoint.path,
            method=endpoint.method,
            name=endpoint.name,
            description=endpoint.description,
            parameters=endpoint.parameters_blob(),
            is_active=True,
            created_at=registered_at + timedelta(microseconds=position),
        )
        for position, endpoint in enumerate(payload.endpoints)
    ]
    created = await store.create_api(api, endpoints)
    logger.info(f"Registered API {created.slug!r} with {len(endpoints)} endpoint(s)")

    return {
        "id": str(created.id),
        "slug": created.slug,
        "name": created.name,
        "proxy_url": proxy_url(settings, created.slug),
        "endpoints_count": len(endpoints),
        "message": "API registered successfully",
    }


@router.get("")
async def list_apis(
    store: RegistryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    apis = await store.list_public_apis()
    return {"apis": [describe_api(api, settings) for api in apis]}


@router.get("/{api_id}")
async def get_api(
    api_id: uuid.UUID,
    store: RegistryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    api = await store.get_api(api_id)
    if api is None:
        raise ResourceNotFound(error="API not found")
    return describe_api(api, settings, with_endpoints=True)


@router.patch("/{api_id}")
async def update_api(
    api_id: uuid.UUID,
    payload: UpdateApiRequest,
    store: RegistryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
    user_id: Optional[str] = Depends(current_user_id),
):
    user_id = _writer(user_id, settings)
    api = await _owned_api(store, api_id, user_id, settings)

    changes = payload.model_dump(exclude_unset=True)
    if "headers" in changes:
        changes["custom_headers"] = changes.pop("headers")
    if "slug" in changes and changes["slug"] != api.slug:
        if await store.get_api_by_slug(changes["slug"]) is not None:
            raise SlugConflict()

    updated = await store.update_api(api_id, changes)
    if updated is None:
        raise ResourceNotFound(error="API not found")
    logger.info(f"Updated API {updated.slug!r}: {sorted(changes)}")
    return {**describe_api(updated, settings, with_endpoints=True), "message": "API updated successfully"}


@router.delete("/{api_id}")
async def delete_api(
    api_id: uuid.UUID,
    store: RegistryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
    user_id: Optional[str] = Depends(current_user_id),
):
    user_id = _writer(user_id, settings)
    api = await _owned_api(store, api_id, user_id, settings)
    if not await store.delete_api(api_id):
        raise ResourceNotFound(error="API not found")
    logger.info(f"Deleted API {api.slug!r}")
    return {"message": "API deleted successfully"}


@router.post("/{api_id}/endpoints", status_code=status.HTTP_201_CREATED)
async def add_endpoint(
    api_id: uuid.UUID,
    payload: EndpointIn,
    store: RegistryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
    user_id: Optional[str] = Depends(current_user_id),
):
    user_id = _writer(user_id, settings)
    api = await _owned_api(store, api_id, user_id, settings)

    # unique per API whether active or not; reactivate instead of re-adding
    existing = next((e for e in api.endpoints if e.method == payload.method and e.path == payload.path), None)
    if existing is not None:
        state = "" if existing.is_active else " (inactive, PATCH is_active to restore it)"
        raise EndpointConflict(f"{payload.method} {payload.path} is already declared{state}")

    endpoint = await store.add_endpoint(Endpoint(
        id=uuid.uuid4(),
        api_id=api.id,
        path=payload.path,
        method=payload.method,
        name=payload.name,
        description=payload.description,
        parameters=payload.parameters_blob(),
        is_active=True,
        created_at=datetime.now(timezone.utc),
    ))
    return {**EndpointOut.model_validate(endpoint).model_dump(mode="json"), "message": "Endpoint added successfully"}


@router.patch("/{api_id}/endpoints/{endpoint_id}")
async def update_endpoint(
    api_id: uuid.UUID,
    endpoint_id: uuid.UUID,
    payload: EndpointUpdate,
    store: RegistryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
    user_id: Optional[str] = Depends(current_user_id),
):
    user_id = _writer(user_id, settings)
    api = await _owned_api(store, api_id, user_id, settings)

    changes = payload.model_dump(exclude_unset=True)
    method = changes.get("method")
    path = changes.get("path")
    if method or path:
        current = next((e for e in api.endpoints if e.id == endpoint_id), None)
        if current is not None:
            method = method or current.method
            path = path or current.path
            clash = any(
                e.id != endpoint_id and e.method == method and e.path == path for e in api.endpoints
            )
            if clash:
                raise EndpointConflict(f"{method} {path} is already declared")

    endpoint = await store.update_endpoint(api_id, endpoint_id, changes)
    if endpoint is None:
        raise ResourceNotFound(error="Endpoint not found")
    return {**EndpointOut.model_validate(endpoint).model_dump(mode="json"), "message": "Endpoint updated successfully"}


@router.delete("/{api_id}/endpoints/{endpoint_id}")
async def delete_endpoint(
    api_id: uuid.UUID,
    endpoint_id: uuid.UUID,
    store: RegistryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
    user_id: Optional[str] = Depends(current_user_id),
):
    user_id = _writer(user_id, settings)
    await _owned_api(store, api_id, user_id, settings)
    if not await store.delete_endpoint(api_id, endpoint_id):
        raise ResourceNotFound(error="Endpoint not found")
    return {"message": "Endpoint deleted successfully"}
