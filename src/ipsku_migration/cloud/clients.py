from __future__ import annotations

import os
import threading
from typing import Any, Dict, Tuple

from ..auth.providers import AuthContext
from ..util.errors import AuthenticationError

try:
    from azure.mgmt.network import NetworkManagementClient  # type: ignore
except Exception:  # pragma: no cover
    NetworkManagementClient = None  # type: ignore

try:
    from azure.mgmt.resource import SubscriptionClient  # type: ignore
except Exception:  # pragma: no cover
    SubscriptionClient = None  # type: ignore

_CLIENT_CACHE: Dict[Tuple[str, str, int], Any] = {}
_CLIENT_CACHE_LOCK = threading.Lock()


def _cache_disabled() -> bool:
    return (os.getenv("IPSKU_DISABLE_CLIENT_CACHE") or "").strip().lower() in {"1", "true", "yes"}


def clear_client_cache() -> None:
    with _CLIENT_CACHE_LOCK:
        _CLIENT_CACHE.clear()


def _cached(service: str, ctx: AuthContext, scope: str, factory: Any) -> Any:
    if _cache_disabled():
        return factory()
    key = (service, scope, id(ctx.credential))
    with _CLIENT_CACHE_LOCK:
        client = _CLIENT_CACHE.get(key)
        if client is None:
            client = factory()
            _CLIENT_CACHE[key] = client
        return client


def get_network_client(ctx: AuthContext, subscription_id: str) -> Any:
    """
    NetworkManagementClient bound to one subscription. Clients are cached per
    (subscription, credential) so each call is routed by its explicit subscription id.
    """
    if NetworkManagementClient is None:  # pragma: no cover
        raise AuthenticationError("azure-mgmt-network is not installed.")
    if not subscription_id:
        raise ValueError("subscription_id is required for network operations")
    return _cached(
        "network",
        ctx,
        subscription_id.lower(),
        lambda: NetworkManagementClient(ctx.credential, subscription_id),
    )


def get_subscription_client(ctx: AuthContext) -> Any:
    if SubscriptionClient is None:  # pragma: no cover
        raise AuthenticationError("azure-mgmt-resource is not installed.")
    return _cached("subscriptions", ctx, "", lambda: SubscriptionClient(ctx.credential))
