"""
FastAPI dependencies. Everything here reads the components the lifespan put
on ``app.state``; no module-level clients.
"""

from typing import Optional

from fastapi import Depends, Request

from .config import Settings
from .credentials import SessionCredentialResolver
from .errors import AuthRequired
from .forwarder import Forwarder
from .gateway import Gateway
from .registry import RegistryStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def get_store(request: Request) -> RegistryStore:
    return request.app.state.gateway.store


def get_forwarder(request: Request) -> Forwarder:
    return request.app.state.gateway.forwarder


def get_sessions(request: Request) -> SessionCredentialResolver:
    return request.app.state.sessions


async def enforce_rate_limit(request: Request, gateway: Gateway = Depends(get_gateway)):
    decision = await gateway.rate_limits.enforce(request)
    request.state.rate_limit = decision
    return decision


async def current_user_id(
    request: Request,
    sessions: SessionCredentialResolver = Depends(get_sessions),
) -> Optional[str]:
    credential = await sessions.resolve(request)
    return credential.user_id


async def require_user_id(user_id: Optional[str] = Depends(current_user_id)) -> str:
    if user_id is None:
        raise AuthRequired("You must be logged in to perform this action", error="Authentication required")
    return user_id
