import logging
from datetime import datetime, timezone
import uuid

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from .config import Settings
from .deps import enforce_rate_limit, get_settings, get_store
from .models import APIKey
from .registry import RegistryStore
from .security import client_ip, generate_api_key, mask_key, temporary_key_expiry

logger = logging.getLogger(__name__)


class APIKeyGenerateResponse(BaseModel):
    key: str
    expires_at: datetime
    rate_limit: int
    message: str


router = APIRouter(
    prefix="/api/keys",
    tags=["API Keys"]
)


@router.post("/generate", response_model=APIKeyGenerateResponse, dependencies=[Depends(enforce_rate_limit)])
async def generate_temporary_key(
    request: Request,
    store: RegistryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """
    Temporary key for anonymous callers, scoped to their IP address. While a
    live key exists for the IP it is returned instead of minting another.
    """
    ip_address = client_ip(request)
    now = datetime.now(timezone.utc)

    existing = await store.find_live_ip_key(ip_address, now)
    if existing is not None:
        return {
            "key": existing.key,
            "expires_at": existing.expires_at,
            "rate_limit": existing.rate_limit_per_hour,
            "message": "Using existing API key",
        }

    new_key = await store.create_api_key(APIKey(
        id=uuid.uuid4(),
        key=generate_api_key(),
        name="Temporary API Key",
        owner_id=None,
        ip_address=ip_address,
        is_active=True,
        allowed_routes=None,
        rate_limit_per_hour=settings.TEMP_KEY_RATE_LIMIT,
        created_at=now,
        expires_at=temporary_key_expiry(settings.TEMP_KEY_TTL_DAYS, now),
    ))
    logger.info(f"Issued temporary key {mask_key(new_key.key)} for {ip_address}")

    return {
        "key": new_key.key,
        "expires_at": new_key.expires_at,
        "rate_limit": new_key.rate_limit_per_hour,
        "message": "API key generated successfully",
    }
