import uuid

import httpx
import pytest

from conftest import CLIENT_IP, make_api, make_session

OWNER_ID = "3f1c2c1e-8f0c-4c6b-9b8e-1d2a6f7e9a10"
OTHER_ID = "7b0d5a44-3c1e-4f2a-8d6b-0e9c1a2b3c4d"

WEATHER_API = {
    "slug": "weather-api",
    "name": "Weather API",
    "base_url": "https://example.test",
    "headers": {"Authorization": "Bearer upstream-token"},
    "endpoints": [
        {"path": "/forecast", "method": "GET", "name": "Forecast", "queryParams": [{"name": "city"}]},
        {"path": "/alerts", "method": "GET", "name": "Alerts"},
    ],
}


def login(redis, user_id=OWNER_ID):
    return {"cookie": f"sessionId={make_session(redis, user_id)}"}


@pytest.mark.asyncio
async def test_register_api(client, store, fake_redis):
    response = await client.post("/api/register", json=WEATHER_API, headers=login(fake_redis))

    assert response.status_code == 201, f"Expected 201, got {response.status_code}"
    body = response.json()
    assert body["slug"] == "weather-api"
    assert body["proxy_url"] == "http://gateway.test/proxy/weather-api"
    assert body["endpoints_count"] == 2

    api = next(iter(store.apis.values()))
    assert str(api.owner_id) == OWNER_ID
    assert api.custom_headers == {"Authorization": "Bearer upstream-token"}
    assert api.endpoints[0].parameters == {"queryParams": [{"name": "city"}]}


@pytest.mark.asyncio
async def test_register_keeps_endpoint_declaration_order(client, store, fake_redis):
    payload = {**WEATHER_API, "endpoints": [
        {"path": f"/v1/{name}", "method": "GET", "name": name} for name in ("zulu", "alpha", "mike", "bravo")
    ]}

    response = await client.post("/api/register", json=payload, headers=login(fake_redis))

    assert response.status_code == 201
    api = next(iter(store.apis.values()))
    stamps = [e.created_at for e in api.endpoints]
    assert [e.name for e in sorted(api.endpoints, key=lambda e: e.created_at)] == ["zulu", "alpha", "mike", "bravo"]
    assert len(set(stamps)) == len(stamps)


@pytest.mark.asyncio
async def test_register_requires_login(client, store):
    response = await client.post("/api/register", json=WEATHER_API)

    assert response.status_code == 401
    assert response.json()["error"] == "Authentication required"
    assert store.apis == {}


@pytest.mark.asyncio
async def test_register_duplicate_slug_conflicts(client, store, fake_redis):
    make_api(store)

    response = await client.post("/api/register", json=WEATHER_API, headers=login(fake_redis))

    assert response.status_code == 409
    assert len(store.apis) == 1


@pytest.mark.asyncio
async def test_register_duplicate_endpoint_conflicts(client, store, fake_redis):
    payload = {**WEATHER_API, "endpoints": [
        {"path": "/forecast", "method": "GET", "name": "One"},
        {"path": "/forecast", "method": "GET", "name": "Two"},
    ]}

    response = await client.post("/api/register", json=payload, headers=login(fake_redis))

    assert response.status_code == 409
    assert response.json()["error"] == "Endpoint already exists"


@pytest.mark.asyncio
@pytest.mark.parametrize("field,value", [
    ("slug", "Weather API"),
    ("base_url", "example.test/no-scheme"),
    ("base_url", "ftp://example.test"),
])
async def test_register_rejects_invalid_fields(client, fake_redis, field, value):
    response = await client.post("/api/register", json={**WEATHER_API, field: value}, headers=login(fake_redis))

    assert response.status_code == 422
    assert response.json()["error"] == "Validation failed"


@pytest.mark.asyncio
async def test_list_hides_private_inactive_and_custom_headers(client, store):
    make_api(store, custom_headers={"Authorization": "secret"})
    make_api(store, slug="private-api", is_public=False)
    make_api(store, slug="retired-api", is_active=False)

    response = await client.get("/api")

    assert response.status_code == 200
    apis = response.json()["apis"]
    assert [api["slug"] for api in apis] == ["weather-api"]
    assert "custom_headers" not in apis[0]
    assert "secret" not in response.text


@pytest.mark.asyncio
async def test_get_api_with_active_endpoints(client, store):
    api = make_api(store, endpoints=[("GET", "/forecast"), ("GET", "/alerts")])
    api.endpoints[1].is_active = False

    response = await client.get(f"/api/{api.id}")

    assert response.status_code == 200
    body = response.json()
    assert [e["path"] for e in body["endpoints"]] == ["/forecast"]
    assert body["proxy_url"].endswith("/proxy/weather-api")


@pytest.mark.asyncio
async def test_get_unknown_api_is_404(client):
    response = await client.get(f"/api/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["error"] == "API not found"


@pytest.mark.asyncio
async def test_owner_can_update_api(client, store, fake_redis):
    api = make_api(store, owner_id=uuid.UUID(OWNER_ID))

    response = await client.patch(
        f"/api/{api.id}",
        json={"base_url": "https://v2.example.test", "is_active": False},
        headers=login(fake_redis),
    )

    assert response.status_code == 200
    assert api.base_url == "https://v2.example.test"
    assert api.is_active is False


@pytest.mark.asyncio
async def test_other_users_cannot_update_api(client, store, fake_redis):
    api = make_api(store, owner_id=uuid.UUID(OWNER_ID))

    response = await client.patch(f"/api/{api.id}", json={"name": "Mine now"}, headers=login(fake_redis, OTHER_ID))

    assert response.status_code == 403
    assert api.name == "Weather Api"


@pytest.mark.asyncio
async def test_admin_can_update_any_api(client, store, fake_redis, settings):
    settings.ADMIN_USER_IDS = [OTHER_ID]
    api = make_api(store, owner_id=uuid.UUID(OWNER_ID))

    response = await client.patch(f"/api/{api.id}", json={"name": "Moderated"}, headers=login(fake_redis, OTHER_ID))

    assert response.status_code == 200
    assert api.name == "Moderated"


@pytest.mark.asyncio
async def test_slug_change_to_taken_slug_conflicts(client, store, fake_redis):
    api = make_api(store, owner_id=uuid.UUID(OWNER_ID))
    make_api(store, slug="billing-api")

    response = await client.patch(f"/api/{api.id}", json={"slug": "billing-api"}, headers=login(fake_redis))

    assert response.status_code == 409
    assert api.slug == "weather-api"


@pytest.mark.asyncio
async def test_delete_api(client, store, fake_redis):
    api = make_api(store, owner_id=uuid.UUID(OWNER_ID))

    response = await client.delete(f"/api/{api.id}", headers=login(fake_redis))

    assert response.status_code == 200
    assert store.apis == {}


@pytest.mark.asyncio
async def test_endpoint_lifecycle(client, store, fake_redis, upstream):
    api = make_api(store, owner_id=uuid.UUID(OWNER_ID), endpoints=[("GET", "/forecast")])
    headers = login(fake_redis)

    created = await client.post(
        f"/api/{api.id}/endpoints", json={"path": "/alerts", "method": "GET", "name": "Alerts"}, headers=headers
    )
    assert created.status_code == 201
    endpoint_id = created.json()["id"]

    duplicate = await client.post(
        f"/api/{api.id}/endpoints", json={"path": "/alerts", "method": "GET", "name": "Again"}, headers=headers
    )
    assert duplicate.status_code == 409

    renamed = await client.patch(f"/api/{api.id}/endpoints/{endpoint_id}", json={"path": "/warnings"}, headers=headers)
    assert renamed.status_code == 200
    assert renamed.json()["path"] == "/warnings"

    clash = await client.patch(f"/api/{api.id}/endpoints/{endpoint_id}", json={"path": "/forecast"}, headers=headers)
    assert clash.status_code == 409

    deleted = await client.delete(f"/api/{api.id}/endpoints/{endpoint_id}", headers=headers)
    assert deleted.status_code == 200
    assert [e.path for e in api.endpoints] == ["/forecast"]

    missing = await client.delete(f"/api/{api.id}/endpoints/{endpoint_id}", headers=headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_registered_api_is_reachable_through_the_proxy(client, fake_redis, upstream):
    await client.post("/api/register", json=WEATHER_API, headers=login(fake_redis))
    key = (await client.post("/api/keys/generate")).json()["key"]

    response = await client.get("/proxy/weather-api/forecast?city=seoul", headers={"x-api-key": key})

    assert response.status_code == 200
    assert str(upstream.last.url) == "https://example.test/forecast?city=seoul"
    assert upstream.last.headers["authorization"] == "Bearer upstream-token"


@pytest.mark.asyncio
async def test_deactivated_endpoint_cannot_be_added_again(client, store, fake_redis):
    api = make_api(store, owner_id=uuid.UUID(OWNER_ID), endpoints=[("GET", "/forecast"), ("GET", "/alerts")])
    headers = login(fake_redis)
    alerts = api.endpoints[1]

    hidden = await client.patch(f"/api/{api.id}/endpoints/{alerts.id}", json={"is_active": False}, headers=headers)
    assert hidden.status_code == 200

    again = await client.post(
        f"/api/{api.id}/endpoints", json={"path": "/alerts", "method": "GET", "name": "Alerts"}, headers=headers
    )
    assert again.status_code == 409
    assert again.json()["error"] == "Endpoint already exists"
    assert "inactive" in again.json()["message"]

    moved = await client.patch(
        f"/api/{api.id}/endpoints/{api.endpoints[0].id}", json={"path": "/alerts"}, headers=headers
    )
    assert moved.status_code == 409
    assert [e.path for e in api.endpoints] == ["/forecast", "/alerts"]

    restored = await client.patch(f"/api/{api.id}/endpoints/{alerts.id}", json={"is_active": True}, headers=headers)
    assert restored.status_code == 200
    assert alerts.is_active is True


@pytest.mark.asyncio
async def test_slug_taken_between_check_and_insert_conflicts(client, store, fake_redis, monkeypatch):
    make_api(store)

    async def not_yet_visible(slug):
        return None

    monkeypatch.setattr(store, "get_api_by_slug", not_yet_visible)

    response = await client.post("/api/register", json=WEATHER_API, headers=login(fake_redis))

    assert response.status_code == 409
    assert response.json()["error"] == "API with this slug already exists"
    assert len(store.apis) == 1


@pytest.mark.asyncio
async def test_register_during_store_outage_is_json_500(client, store, fake_redis):
    store.down = True

    response = await client.post("/api/register", json=WEATHER_API, headers=login(fake_redis))

    assert response.status_code == 500
    assert response.headers["content-type"] == "application/json"
    assert response.json() == {"error": "Registry lookup failed", "message": "database unreachable"}


@pytest.mark.asyncio
async def test_unexpected_error_is_json_500(app, store, fake_redis, monkeypatch):
    async def broken(api, endpoints):
        raise RuntimeError("mapper exploded")

    monkeypatch.setattr(store, "create_api", broken)
    transport = httpx.ASGITransport(app=app, client=(CLIENT_IP, 51000), raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        response = await c.post("/api/register", json=WEATHER_API, headers=login(fake_redis))

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}
    assert "mapper exploded" not in response.text
