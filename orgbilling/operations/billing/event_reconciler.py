"""Applies processor subscription events onto local subscription rows."""

from enum import Enum
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from ...logger import get_logger, log_billing_event
from ...models.billing import Subscription
from .payment_provider import RemoteSubscription

logger = get_logger(__name__)


class SubscriptionEventKind(str, Enum):
  UPDATED = "updated"
  DELETED = "deleted"


STRIPE_EVENT_KINDS = {
  "customer.subscription.updated": SubscriptionEventKind.UPDATED,
  "customer.subscription.deleted": SubscriptionEventKind.DELETED,
}


def event_kind_for(event_type: Optional[str]) -> Optional[SubscriptionEventKind]:
  """Reconciler kind for a Stripe event type, None for types it ignores."""
  return STRIPE_EVENT_KINDS.get(event_type or "")


class SubscriptionEventReconciler:
  """Overwrites local subscription state with the processor's view.

  Events may arrive out of order and more than once. Each application is a
  plain overwrite under a row lock, so replaying an event converges on the
  same state. Events for subscriptions this service never created are
  logged and dropped.
  """

  def __init__(self, session: Session):
    self.session = session

  def apply(
    self,
    stripe_subscription_id: str,
    kind: SubscriptionEventKind,
    payload: Optional[RemoteSubscription] = None,
    event_id: Optional[str] = None,
  ) -> Optional[Subscription]:
    """Apply one event.

    Args:
        stripe_subscription_id: Processor subscription the event refers to
        kind: Updated or deleted
        payload: Subscription state carried by the event (required for updates)
        event_id: Processor event ID, for logging

    Returns:
        The updated Subscription, or None when no local row matches
    """
    kind = SubscriptionEventKind(kind)
    subscription = Subscription.get_by_stripe_subscription_id(
      stripe_subscription_id, self.session, for_update=True
    )

    if not subscription:
      self.session.rollback()
      logger.warning(
        f"No subscription found for Stripe subscription {stripe_subscription_id}",
        extra={
          "stripe_subscription_id": stripe_subscription_id,
          "event_kind": kind.value,
          "event_id": event_id,
        },
      )
      return None

    previous_status = subscription.status

    if kind == SubscriptionEventKind.DELETED:
      subscription.mark_canceled()
    else:
      if payload is None:
        self.session.rollback()
        raise ValueError("Updated events require a subscription payload")
      self._overwrite(subscription, payload)

    self.session.commit()

    log_billing_event(
      logger,
      f"subscription_{kind.value}_event",
      subscription_id=subscription.id,
      metadata={
        "stripe_subscription_id": stripe_subscription_id,
        "event_id": event_id,
        "previous_status": previous_status,
        "status": subscription.status,
        "cancel_at_period_end": subscription.cancel_at_period_end,
      },
    )
    return subscription

  def apply_stripe_object(
    self,
    kind: SubscriptionEventKind,
    data: Mapping[str, Any],
    event_id: Optional[str] = None,
  ) -> Optional[Subscription]:
    """Apply an event from the raw Stripe subscription object."""
    payload = RemoteSubscription.from_stripe(data)
    return self.apply(payload.id, kind, payload, event_id=event_id)

  def _overwrite(self, subscription: Subscription, payload: RemoteSubscription):
    status = payload.local_status
    if status is None:
      logger.warning(
        f"Unmapped Stripe status '{payload.status}' for {subscription.id}, "
        f"keeping {subscription.status}",
        extra={
          "subscription_id": subscription.id,
          "stripe_subscription_id": payload.id,
        },
      )
    else:
      subscription.status = status.value

    # Absent period fields mean the event shape lacked them, not a reset
    if payload.current_period_start is not None:
      subscription.current_period_start = payload.current_period_start
    if payload.current_period_end is not None:
      subscription.current_period_end = payload.current_period_end
    subscription.cancel_at_period_end = payload.cancel_at_period_end
