"""Billing API models.

Request and response bodies for the billing endpoints under
``/billing/{org_id}`` and the processor webhook.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, EmailStr, Field

from ..billing import BillingAccount, Plan, Subscription, SubscriptionStatus


class InitializeBillingRequest(BaseModel):
  """Request to set up billing for an organization."""

  contact_email: EmailStr = Field(..., description="Billing contact email")
  contact_name: str | None = Field(
    None, description="Fallback customer name when the organization has none"
  )


class BillingAccountResponse(BaseModel):
  """Billing account of an organization."""

  id: str = Field(..., description="Billing account ID")
  org_id: str = Field(..., description="Organization ID")
  stripe_customer_id: str = Field(..., description="Stripe customer ID")
  billing_email: str | None = Field(None, description="Billing contact email")
  created_at: datetime = Field(..., description="Creation time")

  @classmethod
  def from_model(cls, account: BillingAccount) -> "BillingAccountResponse":
    return cls(
      id=account.id,
      org_id=account.org_id,
      stripe_customer_id=account.stripe_customer_id,
      billing_email=account.billing_email,
      created_at=account.created_at,
    )


class PlanResponse(BaseModel):
  """Plan catalog entry."""

  key: str = Field(..., description="Machine key of the plan")
  name: str = Field(..., description="Plan name")
  display_name: str | None = Field(None, description="Display name")
  description: str | None = Field(None, description="Plan description")
  price: Decimal = Field(..., description="Price per interval")
  interval: str = Field(..., description="Billing interval")
  limits: dict[str, int | None] = Field(
    ..., description="Resource limits; null means unlimited"
  )

  @classmethod
  def from_model(cls, plan: Plan) -> "PlanResponse":
    return cls(
      key=plan.key,
      name=plan.name,
      display_name=plan.display_name,
      description=plan.description,
      price=plan.price,
      interval=plan.interval,
      limits=plan.resource_limits(),
    )


class SubscriptionResponse(BaseModel):
  """Current subscription of an organization."""

  id: str = Field(..., description="Subscription ID")
  status: SubscriptionStatus = Field(..., description="Subscription status")
  plan: PlanResponse = Field(..., description="Subscribed plan")
  stripe_subscription_id: str = Field(..., description="Stripe subscription ID")
  current_period_start: datetime | None = Field(
    None, description="Start of the current billing period"
  )
  current_period_end: datetime | None = Field(
    None, description="End of the current billing period"
  )
  cancel_at_period_end: bool = Field(
    ..., description="Whether the subscription ends with the current period"
  )

  @classmethod
  def from_model(cls, subscription: Subscription) -> "SubscriptionResponse":
    return cls(
      id=subscription.id,
      status=SubscriptionStatus(subscription.status),
      plan=PlanResponse.from_model(subscription.plan),
      stripe_subscription_id=subscription.stripe_subscription_id,
      current_period_start=subscription.current_period_start,
      current_period_end=subscription.current_period_end,
      cancel_at_period_end=subscription.cancel_at_period_end,
    )


class CreateSubscriptionRequest(BaseModel):
  """Request to purchase a plan."""

  plan_key: str = Field(..., description="Plan to subscribe to")
  payment_method_id: str | None = Field(
    None, description="Tokenized Stripe payment method"
  )


class UpdateSubscriptionRequest(BaseModel):
  """Request to change plan or correct status."""

  plan_key: str | None = Field(None, description="Target plan key")
  status: SubscriptionStatus | None = Field(
    None, description="Administrative status override"
  )


class CancelSubscriptionRequest(BaseModel):
  """Request to cancel a subscription."""

  immediate: bool = Field(
    False, description="Cancel now instead of at the end of the billing period"
  )


class DowngradeIssueResponse(BaseModel):
  type: str = Field(..., description="Resource type")
  current: int = Field(..., description="Current usage")
  new_limit: int = Field(..., description="Limit on the target plan")
  message: str = Field(..., description="Explanation for the user")


class DowngradeAssessmentResponse(BaseModel):
  """Result of a downgrade eligibility check."""

  can_downgrade: bool = Field(..., description="Whether the downgrade is allowed")
  blockers: list[DowngradeIssueResponse] = Field(
    default_factory=list, description="Resources over the target limits"
  )
  warnings: list[DowngradeIssueResponse] = Field(
    default_factory=list, description="Resources close to the target limits"
  )


class WebhookResponse(BaseModel):
  """Outcome of processing a webhook event."""

  status: str = Field(..., description="Processing status")
  message: str = Field(..., description="What was done with the event")
