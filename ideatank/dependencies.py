from fastapi import Request

from ideatank.config.loader import get_api_settings
from ideatank.services.registry import ServiceRegistry


def get_registry(request: Request) -> ServiceRegistry:
    return request.app.state.registry


def client_key(request: Request) -> str:
    """Address used for throttling.

    ``X-Forwarded-For`` is only honoured when the direct peer is a configured
    proxy; the right-most hop that is not itself a proxy is the client.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = set(get_api_settings()["trusted_proxies"])
    if peer not in trusted:
        return peer
    hops = [
        hop.strip()
        for hop in request.headers.get("x-forwarded-for", "").split(",")
        if hop.strip()
    ]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer
