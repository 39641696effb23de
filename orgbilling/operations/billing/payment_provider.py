"""Payment provider abstraction layer.

This module provides the interface the billing core uses to talk to the
external billing processor, plus the Stripe implementation. The processor is
the source of truth for payment state; every call here is a blocking round
trip and failures surface as ``ProcessorUnavailableError`` without retries.
"""

import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import stripe

from ...config import env
from ...config.logging import log_error
from ...exceptions import ProcessorUnavailableError
from ...logger import get_logger
from ...models.billing import SubscriptionStatus

logger = get_logger(__name__)


class ProrationPolicy(str, Enum):
  """How a mid-period price change is billed."""

  INVOICE_IMMEDIATELY = "always_invoice"
  PRORATE_NEXT_INVOICE = "create_prorations"
  NONE = "none"


PROCESSOR_STATUS_MAP: Dict[str, SubscriptionStatus] = {
  "incomplete": SubscriptionStatus.INCOMPLETE,
  "active": SubscriptionStatus.ACTIVE,
  "trialing": SubscriptionStatus.ACTIVE,
  "past_due": SubscriptionStatus.PAST_DUE,
  "unpaid": SubscriptionStatus.UNPAID,
  "canceled": SubscriptionStatus.CANCELED,
  "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_processor_status(status: Optional[str]) -> Optional[SubscriptionStatus]:
  """Translate a processor status; None when it has no local equivalent."""
  if not status:
    return None
  return PROCESSOR_STATUS_MAP.get(status)


def _to_datetime(value: Any) -> Optional[datetime]:
  if value is None:
    return None
  if isinstance(value, datetime):
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
  return datetime.fromtimestamp(int(value), tz=timezone.utc)


@dataclass(frozen=True)
class RemoteSubscription:
  """Processor-side view of a subscription."""

  id: str
  status: str
  current_period_start: Optional[datetime] = None
  current_period_end: Optional[datetime] = None
  cancel_at_period_end: bool = False
  customer_id: Optional[str] = None
  price_id: Optional[str] = None
  item_id: Optional[str] = None

  @property
  def local_status(self) -> Optional[SubscriptionStatus]:
    return map_processor_status(self.status)

  @classmethod
  def from_stripe(cls, data: Mapping[str, Any]) -> "RemoteSubscription":
    """Build from a Stripe subscription object or its webhook JSON.

    Period bounds live on the first subscription item in recent API
    versions and on the subscription itself in older ones.
    """
    items = (data.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}

    period_start = first_item.get("current_period_start") or data.get(
      "current_period_start"
    )
    period_end = first_item.get("current_period_end") or data.get(
      "current_period_end"
    )

    customer = data.get("customer")
    if isinstance(customer, Mapping):
      customer = customer.get("id")

    return cls(
      id=data["id"],
      status=data.get("status") or "",
      current_period_start=_to_datetime(period_start),
      current_period_end=_to_datetime(period_end),
      cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
      customer_id=customer,
      price_id=price.get("id") if isinstance(price, Mapping) else price,
      item_id=first_item.get("id"),
    )


class PaymentProvider(ABC):
  """Abstract payment provider interface."""

  @abstractmethod
  def create_or_get_customer(self, org_id: str, email: str, name: str) -> str:
    """Create the processor customer for an organization, or return the existing one.

    Args:
        org_id: Internal organization ID, used as the lookup key
        email: Billing contact email
        name: Customer display name

    Returns:
        provider_customer_id: Customer ID in payment provider system
    """
    pass

  @abstractmethod
  def create_subscription(
    self,
    customer_id: str,
    price_id: str,
    payment_method_id: Optional[str] = None,
  ) -> RemoteSubscription:
    """Create a subscription for a customer.

    Args:
        customer_id: Provider customer ID
        price_id: Provider price ID of the plan
        payment_method_id: Tokenized payment method to charge

    Returns:
        The subscription as reported by the provider right after creation
    """
    pass

  @abstractmethod
  def get_subscription(self, subscription_id: str) -> RemoteSubscription:
    """Retrieve a subscription."""
    pass

  @abstractmethod
  def update_subscription(
    self,
    subscription_id: str,
    price_id: Optional[str] = None,
    proration_policy: Optional[ProrationPolicy] = None,
    cancel_at_period_end: Optional[bool] = None,
  ) -> RemoteSubscription:
    """Change a subscription's price and/or cancellation flag.

    Args:
        subscription_id: Provider subscription ID
        price_id: New price for the subscription item
        proration_policy: Billing rule for the price change
        cancel_at_period_end: New value for the end-of-period cancellation flag

    Returns:
        The subscription after the update
    """
    pass

  @abstractmethod
  def cancel_subscription(
    self, subscription_id: str, at_period_end: bool = True
  ) -> RemoteSubscription:
    """Cancel at period end, or immediately when ``at_period_end`` is False."""
    pass

  @abstractmethod
  def verify_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
    """Verify and parse webhook event.

    Args:
        payload: Raw webhook payload
        signature: Webhook signature header

    Returns:
        Parsed webhook event

    Raises:
        ValueError: Invalid payload or signature
    """
    pass


class StripePaymentProvider(PaymentProvider):
  """Stripe implementation of payment provider."""

  SUBSCRIPTION_EXPAND = ["latest_invoice", "latest_invoice.payment_intent"]

  def __init__(self):
    """Initialize Stripe with API key from environment."""
    stripe.api_key = env.STRIPE_SECRET_KEY
    stripe.api_version = env.STRIPE_API_VERSION
    stripe.default_http_client = stripe.new_default_http_client(
      timeout=env.STRIPE_TIMEOUT_SECONDS
    )
    self.stripe = stripe
    logger.info("Initialized Stripe payment provider")

  @contextmanager
  def _processor_call(self, operation: str, **context):
    """Translate Stripe failures into ProcessorUnavailableError."""
    try:
      yield
    except stripe.StripeError as e:
      http_status = getattr(e, "http_status", None)
      retryable = isinstance(
        e, (stripe.APIConnectionError, stripe.RateLimitError)
      ) or bool(http_status and http_status >= 500)
      log_error(
        logger,
        e,
        component="stripe",
        action=operation,
        error_category="processor",
        metadata={"retryable": retryable, **context},
      )
      raise ProcessorUnavailableError(
        operation,
        reason=getattr(e, "user_message", None) or str(e),
        retryable=retryable,
        **context,
      ) from e

  def create_or_get_customer(self, org_id: str, email: str, name: str) -> str:
    """Find the Stripe customer tagged with this org, creating it if absent."""
    with self._processor_call("create_or_get_customer", org_id=org_id):
      existing = self.stripe.Customer.search(
        query=f'metadata["organizationId"]:"{org_id}"', limit=1
      )
      if existing["data"]:
        customer = existing["data"][0]
        logger.info(
          f"Found existing Stripe customer {customer['id']} for org {org_id}",
          extra={"org_id": org_id, "stripe_customer_id": customer["id"]},
        )
        return customer["id"]

      customer = self.stripe.Customer.create(
        email=email,
        name=name,
        metadata={"organizationId": org_id},
        idempotency_key=f"customer-create-{org_id}",
      )

    logger.info(
      f"Created Stripe customer {customer['id']} for org {org_id}",
      extra={"org_id": org_id, "stripe_customer_id": customer["id"]},
    )
    return customer["id"]

  def create_subscription(
    self,
    customer_id: str,
    price_id: str,
    payment_method_id: Optional[str] = None,
  ) -> RemoteSubscription:
    """Create Stripe subscription, confirming payment once when a method is given."""
    params: Dict[str, Any] = {
      "customer": customer_id,
      "items": [{"price": price_id}],
      "payment_behavior": "default_incomplete",
      "payment_settings": {
        "save_default_payment_method": "on_subscription",
        "payment_method_types": ["card"],
      },
      "expand": ["latest_invoice.payment_intent"],
    }
    if payment_method_id:
      params["default_payment_method"] = payment_method_id
      params["payment_behavior"] = "allow_incomplete"

    with self._processor_call("create_subscription", customer_id=customer_id):
      subscription = self.stripe.Subscription.create(**params)

    logger.info(
      f"Created Stripe subscription {subscription['id']}",
      extra={
        "stripe_subscription_id": subscription["id"],
        "stripe_customer_id": customer_id,
        "metadata": {"status": subscription.get("status")},
      },
    )

    if subscription.get("status") == "incomplete" and payment_method_id:
      confirmed = self._confirm_initial_payment(subscription, payment_method_id)
      if confirmed is not None:
        subscription = confirmed

    return RemoteSubscription.from_stripe(subscription)

  def _confirm_initial_payment(self, subscription, payment_method_id: str):
    """Confirm the first invoice's payment intent; None when not confirmable."""
    invoice = subscription.get("latest_invoice")
    payment_intent = invoice.get("payment_intent") if invoice else None
    if not payment_intent or isinstance(payment_intent, str):
      return None
    if payment_intent.get("status") != "requires_payment_method":
      return None

    try:
      self.stripe.PaymentIntent.confirm(
        payment_intent["id"], payment_method=payment_method_id
      )
      refreshed = self.stripe.Subscription.retrieve(
        subscription["id"], expand=["latest_invoice.payment_intent"]
      )
    except stripe.StripeError as e:
      logger.warning(
        f"Failed to confirm payment for subscription {subscription['id']}: {e}",
        extra={"stripe_subscription_id": subscription["id"]},
      )
      return None

    logger.info(
      f"Payment confirmed for subscription {refreshed['id']}",
      extra={
        "stripe_subscription_id": refreshed["id"],
        "metadata": {"status": refreshed.get("status")},
      },
    )
    return refreshed

  def get_subscription(self, subscription_id: str) -> RemoteSubscription:
    with self._processor_call(
      "get_subscription", stripe_subscription_id=subscription_id
    ):
      subscription = self.stripe.Subscription.retrieve(subscription_id)
    return RemoteSubscription.from_stripe(subscription)

  def update_subscription(
    self,
    subscription_id: str,
    price_id: Optional[str] = None,
    proration_policy: Optional[ProrationPolicy] = None,
    cancel_at_period_end: Optional[bool] = None,
  ) -> RemoteSubscription:
    """Update Stripe subscription item price and/or cancellation flag."""
    params: Dict[str, Any] = {}

    with self._processor_call(
      "update_subscription", stripe_subscription_id=subscription_id
    ):
      if price_id is not None:
        current = RemoteSubscription.from_stripe(
          self.stripe.Subscription.retrieve(subscription_id)
        )
        params["items"] = [{"id": current.item_id, "price": price_id}]

        policy = proration_policy or ProrationPolicy.NONE
        params["proration_behavior"] = policy.value
        if policy == ProrationPolicy.INVOICE_IMMEDIATELY:
          params["proration_date"] = int(time.time())
        elif policy == ProrationPolicy.PRORATE_NEXT_INVOICE:
          # Tolerate a failed charge rather than rejecting the plan change
          params["payment_behavior"] = "allow_incomplete"

      if cancel_at_period_end is not None:
        params["cancel_at_period_end"] = cancel_at_period_end

      subscription = self.stripe.Subscription.modify(
        subscription_id, expand=self.SUBSCRIPTION_EXPAND, **params
      )

    logger.info(
      f"Updated Stripe subscription {subscription_id}",
      extra={
        "stripe_subscription_id": subscription_id,
        "metadata": {
          "status": subscription.get("status"),
          "proration_behavior": params.get("proration_behavior"),
          "cancel_at_period_end": params.get("cancel_at_period_end"),
        },
      },
    )

    if proration_policy == ProrationPolicy.INVOICE_IMMEDIATELY and price_id:
      self._collect_proration_invoice(subscription)
      subscription = self._reread_after_change(subscription)

    return RemoteSubscription.from_stripe(subscription)

  def _reread_after_change(self, subscription):
    """Re-read after invoice collection; the modify response is the fallback.

    The price change has already been applied remotely at this point, so a
    failed read must not surface as a failed update.
    """
    try:
      return self.stripe.Subscription.retrieve(
        subscription["id"], expand=self.SUBSCRIPTION_EXPAND
      )
    except stripe.StripeError as e:
      logger.warning(
        f"Could not re-read subscription {subscription['id']} after upgrade: {e}",
        extra={"stripe_subscription_id": subscription["id"]},
      )
      return subscription

  def _collect_proration_invoice(self, subscription) -> None:
    """Finalize and pay the proration invoice created by an upgrade.

    Failures are logged only: Stripe retries collection on its own and
    reports the outcome through subscription events.
    """
    invoice = subscription.get("latest_invoice")
    if not invoice:
      return
    if isinstance(invoice, str):
      try:
        invoice = self.stripe.Invoice.retrieve(invoice)
      except stripe.StripeError as e:
        logger.warning(f"Could not load upgrade invoice {invoice}: {e}")
        return

    if invoice.get("amount_due", 0) <= 0:
      return

    if invoice.get("status") == "draft":
      try:
        invoice = self.stripe.Invoice.finalize_invoice(invoice["id"])
        logger.info(f"Finalized upgrade invoice {invoice['id']}")
      except stripe.StripeError as e:
        logger.warning(f"Failed to finalize upgrade invoice {invoice['id']}: {e}")
        return

    if invoice.get("status") == "open":
      try:
        paid = self.stripe.Invoice.pay(invoice["id"])
        logger.info(
          f"Paid upgrade invoice {paid['id']}",
          extra={"metadata": {"amount_paid": paid.get("amount_paid")}},
        )
      except stripe.StripeError as e:
        logger.warning(f"Could not auto-pay upgrade invoice {invoice['id']}: {e}")

  def cancel_subscription(
    self, subscription_id: str, at_period_end: bool = True
  ) -> RemoteSubscription:
    with self._processor_call(
      "cancel_subscription",
      stripe_subscription_id=subscription_id,
      at_period_end=at_period_end,
    ):
      if at_period_end:
        subscription = self.stripe.Subscription.modify(
          subscription_id, cancel_at_period_end=True
        )
      else:
        subscription = self.stripe.Subscription.cancel(subscription_id)

    logger.info(
      f"Canceled Stripe subscription {subscription_id}",
      extra={
        "stripe_subscription_id": subscription_id,
        "metadata": {
          "at_period_end": at_period_end,
          "status": subscription.get("status"),
        },
      },
    )
    return RemoteSubscription.from_stripe(subscription)

  def verify_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
    """Verify Stripe webhook signature and parse event."""
    try:
      event = self.stripe.Webhook.construct_event(
        payload, signature, env.STRIPE_WEBHOOK_SECRET
      )
      logger.debug(
        f"Verified Stripe webhook: {event['type']}",
        extra={"event_id": event["id"]},
      )
      return event
    except ValueError as e:
      logger.error(f"Invalid webhook payload: {e}")
      raise
    except stripe.SignatureVerificationError as e:
      logger.error(f"Invalid webhook signature: {e}")
      raise ValueError("Invalid webhook signature") from e


def get_payment_provider(provider_name: str = "stripe") -> PaymentProvider:
  """Factory function to get payment provider instance.

  Args:
      provider_name: Name of payment provider (default: "stripe")

  Returns:
      PaymentProvider implementation

  Raises:
      ValueError: Unknown provider name
  """
  if provider_name == "stripe":
    return StripePaymentProvider()
  raise ValueError(f"Unknown payment provider: {provider_name}")
