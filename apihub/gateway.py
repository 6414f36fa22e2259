"""
Gateway orchestrator for ``/proxy/{slug}/{path}``.

Per request::

    resolve credential -> rate limit -> look up API -> match endpoint
        -> forward upstream -> respond  (+ usage record, not awaited)

Each step short-circuits with a ``GatewayError`` carrying the exact status and
message clients see. The usage record is handed to the ``UsageRecorder`` queue
once the upstream answered, whatever its status; writing it never delays or
alters the response.
"""

import asyncio
import logging
from typing import Optional

from fastapi import Request, Response

from .config import Settings
from .credentials import Credential, CredentialResolver
from .errors import (
    ApiNotFound,
    AuthRequired,
    EndpointNotFound,
    GatewayError,
    KEY_HELP,
    PayloadTooLarge,
    RegistryFailure,
    RouteForbidden,
)
from .forwarder import ForwardResult, Forwarder, build_upstream_url
from .matcher import match_endpoint
from .models import RegisteredApi
from .rate_limit import RateLimitDecision, RateLimitGate
from .registry import RegistryStore
from .security import client_ip
from .usage import UsageEntry, UsageRecorder

logger = logging.getLogger(__name__)


async def _wait_for_disconnect(request: Request):
    # only called after the request body has been consumed, so the next
    # message the server hands us is the disconnect
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


class Gateway:
    def __init__(
        self,
        settings: Settings,
        store: RegistryStore,
        credentials: CredentialResolver,
        rate_limits: RateLimitGate,
        forwarder: Forwarder,
        usage: UsageRecorder,
    ):
        self.settings = settings
        self.store = store
        self.credentials = credentials
        self.rate_limits = rate_limits
        self.forwarder = forwarder
        self.usage = usage

    async def authenticate(self, request: Request) -> Credential:
        try:
            credential = await self.credentials.resolve(request)
        except GatewayError:
            raise
        except Exception as e:
            logger.error(f"Credential lookup failed: {e}", exc_info=True)
            raise RegistryFailure(str(e))

        if credential.is_none:
            if self.settings.auth_required:
                logger.warning(f"Missing credentials for {request.method} {request.url.path} from {client_ip(request)}")
                if self.settings.AUTH_MODE.lower() == "session":
                    raise AuthRequired("You must be logged in to perform this action", error="Authentication required")
                raise AuthRequired(KEY_HELP)
            return credential

        api_key = credential.api_key
        if api_key is not None and api_key.allowed_routes:
            path = request.url.path
            if not any(path.startswith(route) for route in api_key.allowed_routes):
                logger.warning(f"Route {path} not allowed for key {api_key.name!r} from {client_ip(request)}")
                raise RouteForbidden()
        return credential

    async def lookup_api(self, slug: str) -> RegisteredApi:
        try:
            api = await self.store.get_api_by_slug(slug)
        except Exception as e:
            logger.error(f"Registry lookup for {slug!r} failed: {e}", exc_info=True)
            raise RegistryFailure(str(e))
        if api is None or not api.is_active:
            raise ApiNotFound()
        return api

    async def _forward_unless_disconnected(self, request: Request, **kwargs) -> Optional[ForwardResult]:
        forward_task = asyncio.ensure_future(self.forwarder.forward(**kwargs))
        disconnect_task = asyncio.ensure_future(_wait_for_disconnect(request))
        aborted = False
        try:
            done, _ = await asyncio.wait({forward_task, disconnect_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            disconnect_task.cancel()
            if not forward_task.done():
                forward_task.cancel()
                aborted = True
        if disconnect_task in done and disconnect_task.exception() is not None:
            logger.warning(f"Lost track of client connection: {disconnect_task.exception()!r}")
        if aborted:
            logger.info(f"Client went away, aborted upstream call for {request.method} {request.url.path}")
            return None
        return forward_task.result()

    async def handle(self, request: Request, slug: str, path: str) -> Response:
        method = request.method.upper()
        caller_ip = client_ip(request)

        credential = await self.authenticate(request)
        decision: Optional[RateLimitDecision] = await self.rate_limits.enforce(request, credential)

        api = await self.lookup_api(slug)

        request_path = f"/{path}"
        match = match_endpoint(api.active_endpoints, method, request_path, self.settings.ENDPOINT_MATCH_MODE)
        if not match.allowed:
            logger.warning(f"No endpoint of {slug!r} matches {method} {request_path}")
            raise EndpointNotFound(method, request_path)

        body = await request.body()
        if len(body) > self.settings.MAX_REQUEST_SIZE:
            raise PayloadTooLarge(f"Request body exceeds {self.settings.MAX_REQUEST_SIZE} bytes")

        query = request.url.query
        upstream_url = build_upstream_url(api.base_url, path, query)
        result = await self._forward_unless_disconnected(
            request,
            upstream_url=upstream_url,
            method=method,
            inbound_headers=request.headers,
            custom_headers=api.custom_headers,
            inbound_body=body,
            client_ip=caller_ip,
        )
        if result is None:
            # nobody is listening any more
            return Response(status_code=499)

        self.usage.record(UsageEntry(
            api_id=api.id,
            api_key_id=credential.api_key.id if credential.api_key is not None else None,
            endpoint_id=match.endpoint.id if match.endpoint is not None else None,
            method=method,
            path=f"{request_path}?{query}" if query else request_path,
            status_code=result.status,
            response_time_ms=result.elapsed_ms,
        ))

        headers = {
            "content-type": result.content_type,
            "x-response-time": f"{result.elapsed_ms}ms",
        }
        if decision is not None:
            headers.update(decision.headers())
        return Response(content=result.body, status_code=result.status, headers=headers)
