"""
Rate Limit Identifiers

Functions that map a request to the string a rate limit window is kept
under. The limiter itself never interprets identifiers.
"""

import hashlib
import inspect
from typing import Any, Callable, Optional

from starlette.requests import Request


def by_client_ip(request: Request) -> str:
    """Client address, honouring proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return f"ip:{forwarded_for.split(',')[0].strip()}"

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return f"ip:{real_ip.strip()}"

    return f"ip:{request.client.host if request.client else 'unknown'}"


def principal_of(request: Request) -> Optional[str]:
    """Authenticated principal set by upstream auth, if any."""
    principal = getattr(request.state, "principal", None)
    if principal:
        return str(principal)

    user_id = request.headers.get("X-User-ID")
    if user_id:
        return user_id

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer ") and len(auth_header) > 7:
        # Never keep raw tokens in the store
        return "token:" + hashlib.sha256(auth_header[7:].encode()).hexdigest()[:32]
    return None


def by_principal(request: Request) -> str:
    principal = principal_of(request)
    return f"user:{principal}" if principal else "user:anonymous"


def by_principal_or_ip(request: Request) -> str:
    """Principal when authenticated, client address otherwise."""
    principal = principal_of(request)
    return f"user:{principal}" if principal else by_client_ip(request)


def by_route_and_principal(request: Request) -> str:
    """Composite of method, path and caller."""
    return f"{request.method}:{request.url.path}:{by_principal_or_ip(request)}"


async def resolve_identifier(identifier_fn: Callable[[Request], Any], request: Request) -> str:
    """Call a sync or async identifier function."""
    identifier = identifier_fn(request)
    if inspect.isawaitable(identifier):
        identifier = await identifier
    return str(identifier)
