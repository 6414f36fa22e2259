import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import TEST_USER_AGENT
from .deps import get_forwarder, get_gateway, require_user_id
from .errors import GatewayError
from .forwarder import Forwarder, build_upstream_url
from .gateway import Gateway

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


class ProxyTestRequest(BaseModel):
    baseUrl: str = Field(description="Base URL of the API")
    path: str = Field(description='Path to test (e.g. "/forecast")')
    method: str = Field(description="HTTP method")
    headers: Optional[Dict[str, str]] = None
    body: Optional[Any] = None


router = APIRouter(
    prefix="/proxy",
    tags=["Proxy"]
)


@router.post("/test")
async def test_endpoint(
    payload: ProxyTestRequest,
    user_id: str = Depends(require_user_id),
    forwarder: Forwarder = Depends(get_forwarder),
):
    """Try an endpoint against an arbitrary base URL without an API key."""
    headers = {"user-agent": TEST_USER_AGENT}
    headers.update(payload.headers or {})
    content = None
    if payload.body is not None:
        content = json.dumps(payload.body).encode("utf-8")
        headers.setdefault("content-type", "application/json")

    logger.info(f"User {user_id} testing {payload.method.upper()} {payload.baseUrl}{payload.path}")
    start = time.perf_counter()
    try:
        result = await forwarder.send(build_upstream_url(payload.baseUrl, payload.path), payload.method, headers, content)
    except GatewayError as e:
        duration = int((time.perf_counter() - start) * 1000)
        return JSONResponse(
            status_code=500,
            content={"error": "Request failed", "message": e.message or str(e), "duration": duration},
        )

    return {
        "status": result.status,
        "statusText": result.reason,
        "headers": result.headers,
        "data": result.data,
        "duration": result.elapsed_ms,
    }


@router.api_route("/{slug}/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_request(
    slug: str,
    path: str,
    request: Request,
    gateway: Gateway = Depends(get_gateway),
) -> Response:
    return await gateway.handle(request, slug, path)
