from __future__ import annotations

from typing import List

from ..auth.providers import AuthContext
from ..logging import get_logger
from ..util.errors import map_provider_error
from .base import SubscriptionContext
from .clients import get_subscription_client

LOG = get_logger(__name__)


def _state(sub: object) -> str:
    state = getattr(sub, "state", None)
    return str(getattr(state, "value", state) or "")


def list_subscriptions(ctx: AuthContext) -> List[SubscriptionContext]:
    """
    Return the subscriptions visible to the credential, minimal schema, sorted by
    display name then id. Subscriptions that are not Enabled are skipped.
    """
    client = get_subscription_client(ctx)
    try:
        items = list(client.subscriptions.list())
    except Exception as e:
        mapped = map_provider_error(e, "Azure SDK error while listing subscriptions")
        if mapped:
            raise mapped from e
        raise

    results: List[SubscriptionContext] = []
    seen = set()
    for item in items:
        sub_id = str(getattr(item, "subscription_id", None) or "")
        if not sub_id or sub_id.lower() in seen:
            continue
        seen.add(sub_id.lower())
        state = _state(item)
        name = str(getattr(item, "display_name", None) or "")
        if state and state.lower() != "enabled":
            LOG.warning("Skipping subscription that is not enabled", extra={"subscription": sub_id, "state": state})
            continue
        results.append(
            SubscriptionContext(
                subscription_id=sub_id,
                display_name=name,
                tenant_id=getattr(item, "tenant_id", None),
                state=state or "Enabled",
            )
        )
    results.sort(key=lambda s: (s.display_name.lower(), s.subscription_id.lower()))
    return results
