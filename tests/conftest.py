"""
Pytest fixtures: in-memory registry store and Redis doubles, a mock upstream
and an in-process client for the gateway app.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from apihub.config import Settings
from apihub.errors import EndpointConflict, SlugConflict
from apihub.main import create_app
from apihub.models import APIKey, Endpoint, RegisteredApi

CLIENT_IP = "203.0.113.7"


class FakeStore:
    def __init__(self):
        self.apis = {}
        self.keys = {}
        self.usage_records = []
        self.fail_usage = False
        self.down = False

    def _check(self):
        if self.down:
            raise OSError("database unreachable")

    async def get_api_by_slug(self, slug):
        self._check()
        return next((api for api in self.apis.values() if api.slug == slug), None)

    async def get_api(self, api_id):
        self._check()
        return self.apis.get(api_id)

    async def list_public_apis(self):
        return [api for api in self.apis.values() if api.is_public and api.is_active]

    def _slug_taken(self, slug, api_id):
        return any(other.slug == slug and other.id != api_id for other in self.apis.values())

    async def create_api(self, api, endpoints):
        self._check()
        if self._slug_taken(api.slug, api.id):
            raise SlugConflict()
        api.endpoints = list(endpoints)
        self.apis[api.id] = api
        return api

    async def update_api(self, api_id, changes):
        api = self.apis.get(api_id)
        if api is None:
            return None
        if "slug" in changes and self._slug_taken(changes["slug"], api_id):
            raise SlugConflict()
        for field, value in changes.items():
            setattr(api, field, value)
        return api

    async def delete_api(self, api_id):
        return self.apis.pop(api_id, None) is not None

    async def add_endpoint(self, endpoint):
        if any(e.method == endpoint.method and e.path == endpoint.path for e in self.apis[endpoint.api_id].endpoints):
            raise EndpointConflict()
        self.apis[endpoint.api_id].endpoints.append(endpoint)
        return endpoint

    def _endpoint(self, api_id, endpoint_id):
        api = self.apis.get(api_id)
        if api is None:
            return None, None
        return api, next((e for e in api.endpoints if e.id == endpoint_id), None)

    async def update_endpoint(self, api_id, endpoint_id, changes):
        api, endpoint = self._endpoint(api_id, endpoint_id)
        if endpoint is None:
            return None
        method = changes.get("method", endpoint.method)
        path = changes.get("path", endpoint.path)
        if any(e is not endpoint and e.method == method and e.path == path for e in api.endpoints):
            raise EndpointConflict()
        for field, value in changes.items():
            setattr(endpoint, field, value)
        return endpoint

    async def delete_endpoint(self, api_id, endpoint_id):
        api, endpoint = self._endpoint(api_id, endpoint_id)
        if endpoint is None:
            return False
        api.endpoints.remove(endpoint)
        return True

    async def get_api_key(self, key):
        self._check()
        return self.keys.get(key)

    async def find_live_ip_key(self, ip_address, now):
        live = [
            k for k in self.keys.values()
            if k.ip_address == ip_address and k.owner_id is None and k.is_active
            and k.expires_at is not None and k.expires_at > now
        ]
        live.sort(key=lambda k: k.created_at)
        return live[0] if live else None

    async def create_api_key(self, api_key):
        self.keys[api_key.key] = api_key
        return api_key

    async def insert_usage_records(self, records):
        if self.fail_usage:
            raise RuntimeError("usage table is locked")
        self.usage_records.extend(records)

    async def ping(self):
        self._check()


class FakePipeline:
    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def zremrangebyscore(self, key, minimum, maximum):
        self._ops.append(lambda: self._redis._zremrangebyscore(key, minimum, maximum))
        return self

    def zadd(self, key, mapping):
        self._ops.append(lambda: self._redis._zadd(key, mapping))
        return self

    def zcard(self, key):
        self._ops.append(lambda: len(self._redis.sorted_sets.get(key, {})))
        return self

    def zrange(self, key, start, end, withscores=False):
        self._ops.append(lambda: self._redis._zrange(key, start, end, withscores))
        return self

    def expire(self, key, seconds):
        self._ops.append(lambda: self._redis.ttls.__setitem__(key, seconds) or True)
        return self

    async def execute(self):
        if self._redis.down:
            raise RedisConnectionError("Error connecting to redis")
        return [op() for op in self._ops]


class FakeRedis:
    def __init__(self):
        self.sorted_sets = {}
        self.values = {}
        self.ttls = {}
        self.down = False

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def _zremrangebyscore(self, key, minimum, maximum):
        members = self.sorted_sets.get(key, {})
        doomed = [m for m, score in members.items() if minimum <= score <= maximum]
        for member in doomed:
            del members[member]
        return len(doomed)

    def _zadd(self, key, mapping):
        self.sorted_sets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def _zrange(self, key, start, end, withscores):
        ordered = sorted(self.sorted_sets.get(key, {}).items(), key=lambda item: item[1])
        end = len(ordered) if end == -1 else end + 1
        window = ordered[start:end]
        return window if withscores else [member for member, _ in window]

    async def zrem(self, key, *members):
        removed = 0
        for member in members:
            if self.sorted_sets.get(key, {}).pop(member, None) is not None:
                removed += 1
        return removed

    async def get(self, key):
        if self.down:
            raise RedisConnectionError("Error connecting to redis")
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        return sum(1 for key in keys if self.values.pop(key, None) is not None)

    async def ping(self):
        if self.down:
            raise RedisConnectionError("Error connecting to redis")
        return True

    async def aclose(self):
        pass


class Upstream:
    """Mock upstream API. Records every request it receives."""

    def __init__(self):
        self.requests = []
        self.handler = lambda request: httpx.Response(200, json={"temp": 21})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def make_api(store, slug="weather-api", base_url="https://example.test", endpoints=(), **fields):
    api_id = uuid.uuid4()
    api = RegisteredApi(
        id=api_id,
        owner_id=fields.pop("owner_id", None),
        slug=slug,
        name=fields.pop("name", slug.replace("-", " ").title()),
        description=None,
        category=None,
        base_url=base_url,
        custom_headers=fields.pop("custom_headers", None),
        is_active=fields.pop("is_active", True),
        is_public=fields.pop("is_public", True),
    )
    api.endpoints = [
        Endpoint(id=uuid.uuid4(), api_id=api_id, method=method, path=path, name=f"{method} {path}", is_active=True)
        for method, path in endpoints
    ]
    store.apis[api_id] = api
    return api


def make_key(store, key="test-key-0001", **fields):
    now = datetime.now(timezone.utc)
    api_key = APIKey(
        id=uuid.uuid4(),
        key=key,
        name=fields.pop("name", "Test Key"),
        owner_id=fields.pop("owner_id", None),
        ip_address=fields.pop("ip_address", None),
        is_active=fields.pop("is_active", True),
        allowed_routes=fields.pop("allowed_routes", None),
        rate_limit_per_hour=fields.pop("rate_limit_per_hour", 100),
        created_at=fields.pop("created_at", now),
        expires_at=fields.pop("expires_at", now + timedelta(days=7)),
    )
    store.keys[key] = api_key
    return api_key


def make_session(redis, user_id, expires_in=3600):
    session_id = uuid.uuid4().hex
    payload = {"userId": str(user_id), "expiresAt": datetime.now(timezone.utc).timestamp() + expires_in}
    redis.values[f"auth:session:{session_id}"] = json.dumps(payload)
    return session_id


@pytest.fixture
def settings():
    return Settings(
        ENVIRONMENT="production",
        AUTH_MODE="api_key",
        ENDPOINT_MATCH_MODE="exact",
        BASE_URL="http://gateway.test",
        INTERNAL_SERVICE_TOKEN="internal-secret",
        RATE_LIMIT_ANONYMOUS_MAX=50,
        ADMIN_USER_IDS=[],
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def upstream():
    return Upstream()


@pytest_asyncio.fixture
async def app(settings, store, fake_redis, upstream):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    application = create_app(settings, store=store, redis_client=fake_redis, http_client=http_client)
    async with application.router.lifespan_context(application):
        yield application
    await http_client.aclose()


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app, client=(CLIENT_IP, 51000))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
