import json
import logging
import time
from dataclasses import dataclass
from typing import Mapping, Optional

import httpx

from .config import PROXY_USER_AGENT, Settings
from .errors import UpstreamTransportFailure

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/json"
BODYLESS_METHODS = ("GET", "HEAD")

# hop-by-hop headers describe the upstream connection, not the payload
HOP_BY_HOP_HEADERS = (
    "connection",
    "keep-alive",
    "transfer-encoding",
    "content-encoding",
    "content-length",
    "upgrade",
)


@dataclass
class ForwardResult:
    status: int
    reason: str
    headers: dict
    body: bytes
    content_type: str
    elapsed_ms: int

    @property
    def is_json(self) -> bool:
        return "json" in self.content_type.lower()

    @property
    def data(self):
        """Parsed JSON for JSON responses, text otherwise."""
        text = self.body.decode("utf-8", errors="replace")
        if self.is_json and text:
            try:
                return json.loads(text)
            except ValueError:
                return text
        return text


def build_upstream_url(base_url: str, path: str, query: str = "") -> str:
    url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    if query:
        url = f"{url}?{query}"
    return url


def build_upstream_headers(
    inbound_headers: Mapping[str, str],
    custom_headers: Optional[Mapping[str, str]],
    client_ip: Optional[str],
) -> dict:
    """
    Later entries win: proxy user agent, the API's custom headers, the caller's
    content-type, then x-forwarded-for. Nothing else is copied from the caller,
    so platform credentials (x-api-key, cookies, authorization) never leave.
    """
    headers = {"user-agent": PROXY_USER_AGENT}
    for name, value in (custom_headers or {}).items():
        headers[name.lower()] = str(value)
    content_type = inbound_headers.get("content-type")
    if content_type:
        headers["content-type"] = content_type
    if client_ip:
        headers["x-forwarded-for"] = client_ip
    return headers


def build_timeout(settings: Settings) -> httpx.Timeout:
    return httpx.Timeout(settings.UPSTREAM_TIMEOUT, connect=settings.UPSTREAM_CONNECT_TIMEOUT)


class Forwarder:
    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def send(
        self,
        url: str,
        method: str,
        headers: Mapping[str, str],
        body: Optional[bytes],
    ) -> ForwardResult:
        method = method.upper()
        content = None if method in BODYLESS_METHODS else (body or None)

        start = time.perf_counter()
        # RequestError also covers bodies that fail to decode (bad content-encoding)
        try:
            response = await self._client.request(method, url, headers=dict(headers), content=content)
        except httpx.RequestError as e:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            logger.error(f"Upstream call failed after {elapsed_ms}ms: {method} {url}: {e!r}")
            raise UpstreamTransportFailure(str(e) or e.__class__.__name__)
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        response_headers = {
            name: value for name, value in response.headers.items() if name.lower() not in HOP_BY_HOP_HEADERS
        }
        logger.info(f"Proxying request: {method} {url} - Status: {response.status_code} ({elapsed_ms}ms)")

        return ForwardResult(
            status=response.status_code,
            reason=response.reason_phrase,
            headers=response_headers,
            body=response.content,
            content_type=response.headers.get("content-type") or DEFAULT_CONTENT_TYPE,
            elapsed_ms=elapsed_ms,
        )

    async def forward(
        self,
        upstream_url: str,
        method: str,
        inbound_headers: Mapping[str, str],
        custom_headers: Optional[Mapping[str, str]],
        inbound_body: Optional[bytes],
        client_ip: Optional[str] = None,
    ) -> ForwardResult:
        headers = build_upstream_headers(inbound_headers, custom_headers, client_ip)
        return await self.send(upstream_url, method, headers, inbound_body)
