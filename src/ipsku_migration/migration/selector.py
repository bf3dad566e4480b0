from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from ..cloud.base import ResourceClient, SubscriptionContext
from ..logging import get_logger
from ..util.errors import ConfigurationError, NoSubscriptionsAvailable

LOG = get_logger(__name__)


def _folded(values: Iterable[str]) -> set:
    return {str(v).strip().casefold() for v in values if str(v).strip()}


def _matches(sub: SubscriptionContext, keys: set) -> bool:
    return sub.subscription_id.casefold() in keys or (bool(sub.display_name) and sub.display_name.casefold() in keys)


def select_subscriptions(
    available: Sequence[SubscriptionContext],
    *,
    scan_all: bool,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
    default: Optional[str] = None,
) -> List[SubscriptionContext]:
    """
    Filter the visible subscriptions down to the working set.

    - scan_all False: exactly the default subscription (by id or display name).
    - scan_all True: everything, narrowed by include, then minus exclude.
    Exclude always wins over include. Matching is case-insensitive on id or name.
    Result is de-duplicated by id and sorted by (display name, id).
    """
    if not scan_all:
        wanted = (default or "").strip()
        if not wanted:
            raise ConfigurationError(
                "No default subscription configured. Set subscriptionId/subscriptionName, "
                "AZURE_SUBSCRIPTION_ID, or enable scanAllSubscriptions."
            )
        keys = _folded([wanted])
        for sub in available:
            if _matches(sub, keys):
                return [sub]
        raise ConfigurationError(f"Default subscription '{wanted}' is not accessible with the current credentials")

    include_keys = _folded(include)
    exclude_keys = _folded(exclude)

    selected = {}
    for sub in available:
        if include_keys and not _matches(sub, include_keys):
            continue
        if exclude_keys and _matches(sub, exclude_keys):
            LOG.info("Subscription excluded by filter", extra={"subscription": sub.subscription_id})
            continue
        selected.setdefault(sub.subscription_id.casefold(), sub)

    if not selected:
        raise NoSubscriptionsAvailable("No subscriptions left to process after applying include/exclude filters")
    return sorted(selected.values(), key=lambda s: (s.display_name.casefold(), s.subscription_id.casefold()))


def resolve_subscriptions(
    client: ResourceClient,
    *,
    scan_all: bool,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
    default: Optional[str] = None,
) -> List[SubscriptionContext]:
    available = client.list_subscriptions()
    selected = select_subscriptions(available, scan_all=scan_all, include=include, exclude=exclude, default=default)
    LOG.info(
        "Subscriptions in scope",
        extra={"step": "subscriptions", "phase": "complete", "subscriptions": [s.subscription_id for s in selected]},
    )
    return selected
