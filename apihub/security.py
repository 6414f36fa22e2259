import hmac
import ipaddress
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from fastapi import Request

TEMP_KEY_PREFIX = "temp_"


def generate_api_key(prefix: str = TEMP_KEY_PREFIX) -> str:
    # 5 + 32 chars, inside the 64 char column
    return f"{prefix}{secrets.token_hex(16)}"


def temporary_key_expiry(days: int, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(days=days)


def mask_key(key: str) -> str:
    """Log-safe form of an API key."""
    if len(key) <= 8:
        return "[REDACTED]"
    return f"{key[:6]}...{key[-2:]}"


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at < now


def client_ip(request: Request) -> str:
    """
    The caller's address as seen by the platform: first x-forwarded-for entry,
    then x-real-ip, then the socket peer.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def peer_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def parse_networks(cidrs: Iterable[str]) -> List[ipaddress._BaseNetwork]:
    return [ipaddress.ip_network(cidr, strict=False) for cidr in cidrs]


def ip_in_networks(address: Optional[str], networks: Iterable[ipaddress._BaseNetwork]) -> bool:
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip.version == network.version and ip in network for network in networks)


def tokens_match(presented: Optional[str], expected: str) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
