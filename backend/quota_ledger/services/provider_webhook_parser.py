"""
Stripe-shaped webhook payload parsing.

Turns an already signature-verified provider event into one of the typed
billing events the lifecycle engine consumes:

- checkout.session.completed      -> PurchaseCompleted
- customer.subscription.updated   -> GrantUpdated
- customer.subscription.deleted   -> GrantEnded

Any other event type returns None. The provider event id is carried as
the delivery id used for deduplication.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from quota_ledger.config.tiers import TierCatalog, get_tier_catalog
from quota_ledger.errors import MalformedBillingEventError
from quota_ledger.services.billing_events import (
    BillingEvent,
    GrantEnded,
    GrantUpdated,
    PurchaseCompleted,
)

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

SubscriptionLookup = Callable[[str], Optional[Dict[str, Any]]]


def _from_epoch(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedBillingEventError(f"Invalid timestamp: {value!r}") from e


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        raise MalformedBillingEventError(
            f"Subscription {subscription.get('id')} has no items"
        )
    return items[0]


def _period(subscription: Dict[str, Any], key: str) -> Optional[datetime]:
    # Newer API versions report the period on the subscription item.
    value = subscription.get(key)
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get(key)
    return _from_epoch(value)


def _parse_checkout(
    event_id: Optional[str],
    session: Dict[str, Any],
    tier_catalog: TierCatalog,
    subscription_lookup: Optional[SubscriptionLookup],
) -> Optional[PurchaseCompleted]:
    if session.get("mode") != "subscription":
        logger.info("Ignoring non-subscription checkout", extra={
            "event_id": event_id,
            "mode": session.get("mode"),
        })
        return None

    metadata = session.get("metadata") or {}
    tenant_id = metadata.get("tenant_id") or session.get("client_reference_id")
    if not tenant_id:
        raise MalformedBillingEventError("Checkout session has no tenant_id metadata")

    subscription = session.get("subscription")
    if not subscription:
        raise MalformedBillingEventError("Checkout session has no subscription")

    if isinstance(subscription, str):
        if subscription_lookup is None:
            raise MalformedBillingEventError(
                f"Subscription {subscription} is not expanded and no lookup is configured",
                tenant_id=tenant_id,
            )
        expanded = subscription_lookup(subscription)
        if not expanded:
            raise MalformedBillingEventError(
                f"Subscription {subscription} could not be retrieved",
                tenant_id=tenant_id,
            )
        subscription = expanded

    price_id = (_first_item(subscription).get("price") or {}).get("id")
    tier = tier_catalog.tier_for_price_ref(price_id) if price_id else None
    if tier is None:
        raise MalformedBillingEventError(
            f"Unknown price reference: {price_id!r}",
            tenant_id=tenant_id,
        )

    return PurchaseCompleted(
        event_id=event_id,
        tenant_id=tenant_id,
        external_ref=subscription["id"],
        tier=tier,
        period_start=_period(subscription, "current_period_start"),
        period_end=_period(subscription, "current_period_end"),
    )


def parse_provider_event(
    payload: Dict[str, Any],
    subscription_lookup: Optional[SubscriptionLookup] = None,
    tier_catalog: Optional[TierCatalog] = None,
) -> Optional[BillingEvent]:
    """
    Convert a provider event payload into a typed billing event.

    Args:
        payload: Decoded provider event (type, id, data.object)
        subscription_lookup: Fetches a subscription object by id when a
            checkout session carries an unexpanded subscription reference
        tier_catalog: Catalog used to map price ids to tiers

    Returns:
        The typed event, or None for event types the ledger does not consume

    Raises:
        MalformedBillingEventError: If the payload is missing required fields
    """
    if not isinstance(payload, dict):
        raise MalformedBillingEventError("Provider event must be an object")

    event_type = payload.get("type")
    event_id = payload.get("id")
    catalog = tier_catalog or get_tier_catalog()

    try:
        obj = payload["data"]["object"]
    except (KeyError, TypeError) as e:
        raise MalformedBillingEventError("Provider event has no data.object") from e

    try:
        if event_type == CHECKOUT_COMPLETED:
            return _parse_checkout(event_id, obj, catalog, subscription_lookup)

        if event_type == SUBSCRIPTION_UPDATED:
            return GrantUpdated(
                event_id=event_id,
                external_ref=obj["id"],
                status=obj["status"],
                period_start=_period(obj, "current_period_start"),
                period_end=_period(obj, "current_period_end"),
                cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
                cancel_at=_from_epoch(obj.get("cancel_at")),
            )

        if event_type == SUBSCRIPTION_DELETED:
            return GrantEnded(event_id=event_id, external_ref=obj["id"])

    except (KeyError, TypeError, AttributeError) as e:
        raise MalformedBillingEventError(
            f"Malformed {event_type} payload: missing {e}"
        ) from e
    except ValidationError as e:
        raise MalformedBillingEventError(
            f"Malformed {event_type} payload: {e.error_count()} validation error(s)"
        ) from e

    logger.info("Unhandled provider event type", extra={
        "event_type": event_type,
        "event_id": event_id,
    })
    return None
