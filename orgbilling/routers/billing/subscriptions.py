"""Billing endpoints for managing an organization's subscription."""

from fastapi import APIRouter, Depends, HTTPException, status

from ...exceptions import OrgBillingError
from ...logger import get_logger
from ...models.api.billing import (
  BillingAccountResponse,
  CancelSubscriptionRequest,
  CreateSubscriptionRequest,
  DowngradeAssessmentResponse,
  InitializeBillingRequest,
  PlanResponse,
  SubscriptionResponse,
  UpdateSubscriptionRequest,
)
from ...operations.billing import BillingAccountService, SubscriptionService
from .dependencies import get_account_service, get_subscription_service

logger = get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


def _internal_error(action: str, org_id: str, error: Exception) -> HTTPException:
  logger.error(
    f"Failed to {action} for org {org_id}: {error}",
    exc_info=True,
    extra={"org_id": org_id, "action": action},
  )
  return HTTPException(status_code=500, detail=f"Failed to {action}")


@router.post(
  "/{org_id}/initialize",
  response_model=BillingAccountResponse,
  summary="Initialize Billing",
  description="""Create the billing account and Stripe customer for an organization.

Calling this again returns the existing account without contacting Stripe.""",
  operation_id="initializeBilling",
)
async def initialize_billing(
  org_id: str,
  request: InitializeBillingRequest,
  service: BillingAccountService = Depends(get_account_service),
):
  """Initialize billing for the organization."""
  try:
    account = service.initialize(org_id, request.contact_email, request.contact_name)
    return BillingAccountResponse.from_model(account)
  except OrgBillingError:
    raise
  except Exception as e:
    raise _internal_error("initialize billing", org_id, e)


@router.get(
  "/{org_id}/account",
  response_model=BillingAccountResponse,
  summary="Get Billing Account",
  operation_id="getBillingAccount",
)
async def get_billing_account(
  org_id: str,
  service: SubscriptionService = Depends(get_subscription_service),
):
  """Get the billing account of the organization."""
  return BillingAccountResponse.from_model(service.get_billing_account(org_id))


@router.get(
  "/{org_id}/subscription",
  response_model=SubscriptionResponse | None,
  summary="Get Current Subscription",
  description="""Get the organization's subscription.

Returns null when the organization is on the free tier.""",
  operation_id="getSubscription",
)
async def get_subscription(
  org_id: str,
  service: SubscriptionService = Depends(get_subscription_service),
):
  """Get the current subscription, if any."""
  subscription = service.get_subscription(org_id)
  if subscription is None:
    return None
  return SubscriptionResponse.from_model(subscription)


@router.post(
  "/{org_id}/subscription",
  response_model=SubscriptionResponse,
  status_code=status.HTTP_201_CREATED,
  summary="Create Subscription",
  description="""Subscribe the organization to a plan.

**Requirements:**
- Billing must be initialized for the organization
- The organization must not already have a subscription""",
  operation_id="createSubscription",
)
async def create_subscription(
  org_id: str,
  request: CreateSubscriptionRequest,
  service: SubscriptionService = Depends(get_subscription_service),
):
  """Create a subscription."""
  try:
    subscription = service.create(org_id, request.plan_key, request.payment_method_id)
    return SubscriptionResponse.from_model(subscription)
  except OrgBillingError:
    raise
  except Exception as e:
    raise _internal_error("create subscription", org_id, e)


@router.patch(
  "/{org_id}/subscription",
  response_model=SubscriptionResponse,
  summary="Update Subscription",
  description="""Change the subscription plan or override its status.

Upgrades are invoiced immediately. Downgrades are checked against current
usage and rejected with the list of blockers when usage exceeds the target
plan's limits.""",
  operation_id="updateSubscription",
)
async def update_subscription(
  org_id: str,
  request: UpdateSubscriptionRequest,
  service: SubscriptionService = Depends(get_subscription_service),
):
  """Update the subscription."""
  try:
    subscription = service.update_subscription(
      org_id, plan_key=request.plan_key, status=request.status
    )
    return SubscriptionResponse.from_model(subscription)
  except OrgBillingError:
    raise
  except Exception as e:
    raise _internal_error("update subscription", org_id, e)


@router.post(
  "/{org_id}/subscription/cancel",
  response_model=SubscriptionResponse,
  summary="Cancel Subscription",
  description="""Cancel the subscription.

By default the subscription stays active until the end of the current billing
period. Pass `immediate: true` to cancel now.""",
  operation_id="cancelSubscription",
)
async def cancel_subscription(
  org_id: str,
  request: CancelSubscriptionRequest | None = None,
  service: SubscriptionService = Depends(get_subscription_service),
):
  """Cancel the subscription."""
  immediate = request.immediate if request else False
  try:
    subscription = service.cancel_subscription(org_id, at_period_end=not immediate)
    return SubscriptionResponse.from_model(subscription)
  except OrgBillingError:
    raise
  except Exception as e:
    raise _internal_error("cancel subscription", org_id, e)


@router.post(
  "/{org_id}/subscription/reactivate",
  response_model=SubscriptionResponse,
  summary="Reactivate Subscription",
  description="Undo a pending end-of-period cancellation.",
  operation_id="reactivateSubscription",
)
async def reactivate_subscription(
  org_id: str,
  service: SubscriptionService = Depends(get_subscription_service),
):
  """Reactivate the subscription."""
  try:
    subscription = service.reactivate_subscription(org_id)
    return SubscriptionResponse.from_model(subscription)
  except OrgBillingError:
    raise
  except Exception as e:
    raise _internal_error("reactivate subscription", org_id, e)


@router.get(
  "/{org_id}/downgrade-validation/{plan_key}",
  response_model=DowngradeAssessmentResponse,
  summary="Check Downgrade Eligibility",
  description="Check whether current usage fits within a plan's limits.",
  operation_id="validateDowngrade",
)
async def validate_downgrade(
  org_id: str,
  plan_key: str,
  service: SubscriptionService = Depends(get_subscription_service),
):
  """Preview a downgrade without changing the subscription."""
  assessment = service.preview_downgrade(org_id, plan_key)
  return DowngradeAssessmentResponse(**assessment.to_dict())


@router.get(
  "/plans",
  response_model=list[PlanResponse],
  summary="List Plans",
  description="List active plans that can be purchased, in display order.",
  operation_id="listPlans",
)
async def list_plans(
  service: SubscriptionService = Depends(get_subscription_service),
):
  """List purchasable plans."""
  return [PlanResponse.from_model(plan) for plan in service.catalog.list_active()]
