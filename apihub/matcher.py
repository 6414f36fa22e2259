"""
Endpoint matching for proxied requests.

An API registered without endpoints accepts any method and path under its
slug. Once endpoints are declared, a request must hit one of them.

Two modes:

* ``exact`` (default): method equality plus string equality of the path,
  ignoring only a missing leading slash on the stored path. ``{param}``
  placeholders are documentation and never match a concrete segment, so
  ``/users/{id}`` does not accept ``/users/42``.
* ``template``: as above, and ``{name}`` placeholders additionally match a
  single path segment. Captured values are returned in ``MatchResult.params``.
"""

import functools
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from .models import Endpoint

MATCH_MODES = ("exact", "template")


@dataclass(frozen=True)
class MatchResult:
    allowed: bool
    endpoint: Optional[Endpoint] = None
    params: Dict[str, str] = field(default_factory=dict)


def _with_leading_slash(path: str) -> str:
    return path if path.startswith("/") else f"/{path}"


@functools.lru_cache(maxsize=1024)
def path_to_regex(pattern: str) -> re.Pattern:
    """
    "/users/{id}" -> ^/users/(?P<id>[^/]+)$. Placeholders whose name is not a
    valid identifier are matched literally.
    """
    parts = []
    for segment in re.split(r"(\{[^}]+\})", _with_leading_slash(pattern)):
        if re.match(r"^\{[^}]+\}$", segment):
            name = segment[1:-1]
            parts.append(f"(?P<{name}>[^/]+)" if name.isidentifier() else re.escape(segment))
        else:
            parts.append(re.escape(segment))
    return re.compile("^" + "".join(parts) + "$")


def _path_matches(stored: str, request_path: str) -> bool:
    return stored == request_path or _with_leading_slash(stored) == request_path


def match_endpoint(
    endpoints: Sequence[Endpoint],
    method: str,
    request_path: str,
    mode: str = "exact",
) -> MatchResult:
    if mode not in MATCH_MODES:
        raise ValueError(f"Unknown endpoint match mode: {mode!r}")

    if not endpoints:
        return MatchResult(allowed=True)

    method = method.upper()
    request_path = _with_leading_slash(request_path)

    for endpoint in endpoints:
        if endpoint.method.upper() != method:
            continue
        if _path_matches(endpoint.path, request_path):
            return MatchResult(allowed=True, endpoint=endpoint)
        if mode == "template":
            try:
                found = path_to_regex(endpoint.path).match(request_path)
            except re.error:
                continue
            if found:
                return MatchResult(allowed=True, endpoint=endpoint, params=found.groupdict())

    return MatchResult(allowed=False)
