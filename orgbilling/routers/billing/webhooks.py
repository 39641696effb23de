"""Stripe webhook entry point feeding the subscription event reconciler."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ...database import get_db_session
from ...logger import get_logger
from ...models.api.billing import WebhookResponse
from ...operations.billing import (
  PaymentProvider,
  SubscriptionEventReconciler,
  event_kind_for,
)
from .dependencies import get_provider

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

INVOICE_EVENTS = {"invoice.payment_succeeded", "invoice.payment_failed"}


@router.post(
  "/stripe",
  response_model=WebhookResponse,
  status_code=status.HTTP_200_OK,
  summary="Stripe Webhook Handler",
  description="""Handle Stripe webhook events.

Processed events:
- customer.subscription.updated - Overwrite local status and billing period
- customer.subscription.deleted - Mark the local subscription canceled

Invoice payment events are logged; subscription status changes they cause
arrive as subscription updates. Other event types are acknowledged and ignored.

**SECURITY**: Requests are authenticated by Stripe's webhook signature.""",
  operation_id="handleStripeWebhook",
)
async def handle_stripe_webhook(
  request: Request,
  db: Session = Depends(get_db_session),
  provider: PaymentProvider = Depends(get_provider),
):
  """Verify and apply a Stripe event."""
  payload = await request.body()
  signature = request.headers.get("stripe-signature")

  if not signature:
    logger.warning(
      "Stripe webhook rejected: missing signature",
      extra={"metadata": {"payload_size_bytes": len(payload)}},
    )
    raise HTTPException(status_code=400, detail="Missing stripe-signature header")

  try:
    event = provider.verify_webhook(payload, signature)
  except ValueError as e:
    logger.error(f"Invalid webhook signature: {e}")
    raise HTTPException(status_code=400, detail="Invalid webhook signature")

  event_type = event.get("type")
  event_id = event.get("id")
  event_data = event.get("data", {}).get("object", {})

  kind = event_kind_for(event_type)
  if kind is not None:
    reconciler = SubscriptionEventReconciler(db)
    subscription = reconciler.apply_stripe_object(kind, event_data, event_id=event_id)
    if subscription is None:
      return WebhookResponse(
        status="ignored", message="No matching subscription for event"
      )
    return WebhookResponse(
      status="success", message=f"Subscription {kind.value} applied"
    )

  if event_type in INVOICE_EVENTS:
    log = logger.info if event_type == "invoice.payment_succeeded" else logger.warning
    log(
      f"Stripe invoice event {event_type} for subscription "
      f"{event_data.get('subscription')}",
      extra={
        "event_id": event_id,
        "stripe_subscription_id": event_data.get("subscription"),
        "stripe_customer_id": event_data.get("customer"),
        "metadata": {
          "invoice_id": event_data.get("id"),
          "amount_due": event_data.get("amount_due"),
          "amount_paid": event_data.get("amount_paid"),
        },
      },
    )
    return WebhookResponse(status="success", message="Invoice event logged")

  logger.debug(f"Ignoring Stripe event type {event_type}", extra={"event_id": event_id})
  return WebhookResponse(status="ignored", message=f"Unhandled event type {event_type}")
