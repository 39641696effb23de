"""Subscription lifecycle commands: create, change plan, cancel, reactivate.

Every mutation locks the affected row (``SELECT ... FOR UPDATE``), calls the
billing processor, and only then writes locally. A processor failure rolls
the transaction back, so local state is untouched when a command fails.
Processor events mutate the same row through ``SubscriptionEventReconciler``
under the same lock.
"""

from enum import Enum
from typing import Optional, Union

from sqlalchemy.orm import Session

from ...exceptions import (
  AlreadySubscribedError,
  BillingAccountNotFoundError,
  ConfigurationError,
  DowngradeBlockedError,
  NoActiveSubscriptionError,
  NotCanceledError,
  PlanNotFoundError,
  PlanNotPurchasableError,
  ProcessorUnavailableError,
)
from ...logger import get_logger, log_billing_event
from ...models.billing import BillingAccount, Plan, Subscription, SubscriptionStatus
from .catalog import PlanCatalog, SqlPlanCatalog
from .downgrade_validation import DowngradeAssessment, DowngradeValidator
from .payment_provider import PaymentProvider, ProrationPolicy, RemoteSubscription

logger = get_logger(__name__)


class PlanChange(str, Enum):
  UPGRADE = "upgrade"
  DOWNGRADE = "downgrade"
  LATERAL = "lateral"


PRORATION_FOR_CHANGE = {
  PlanChange.UPGRADE: ProrationPolicy.INVOICE_IMMEDIATELY,
  PlanChange.DOWNGRADE: ProrationPolicy.PRORATE_NEXT_INVOICE,
  PlanChange.LATERAL: ProrationPolicy.NONE,
}


def classify_plan_change(current: Plan, target: Plan) -> PlanChange:
  """Compare plan prices to decide the kind of change."""
  if target.price > current.price:
    return PlanChange.UPGRADE
  if target.price < current.price:
    return PlanChange.DOWNGRADE
  return PlanChange.LATERAL


class SubscriptionService:
  """Drives an organization's subscription through its states."""

  def __init__(
    self,
    session: Session,
    provider: PaymentProvider,
    catalog: Optional[PlanCatalog] = None,
    validator: Optional[DowngradeValidator] = None,
  ):
    self.session = session
    self.provider = provider
    self.catalog = catalog or SqlPlanCatalog(session)
    self.validator = validator

  # ------------------------------------------------------------------
  # Reads
  # ------------------------------------------------------------------

  def get_billing_account(self, org_id: str) -> BillingAccount:
    account = BillingAccount.get_by_org_id(org_id, self.session)
    if not account:
      raise BillingAccountNotFoundError(org_id)
    return account

  def get_subscription(self, org_id: str) -> Optional[Subscription]:
    """Current subscription, or None for an organization on the free tier."""
    account = BillingAccount.get_by_org_id(org_id, self.session)
    if not account:
      return None
    return Subscription.get_by_billing_account(account.id, self.session)

  def preview_downgrade(self, org_id: str, plan_key: str) -> DowngradeAssessment:
    """Run the downgrade check for ``plan_key`` without changing anything."""
    target = self._require_plan(plan_key)
    return self._validator().validate(org_id, target)

  # ------------------------------------------------------------------
  # Commands
  # ------------------------------------------------------------------

  def create(
    self,
    org_id: str,
    plan_key: str,
    payment_method_id: Optional[str] = None,
  ) -> Subscription:
    """Purchase ``plan_key`` for an organization with no subscription.

    Raises:
        BillingAccountNotFoundError: Billing was never initialized
        PlanNotFoundError: Unknown plan key
        PlanNotPurchasableError: Plan has no processor price
        AlreadySubscribedError: The account already owns a subscription
        ProcessorUnavailableError: The processor call failed
    """
    plan = self._require_plan(plan_key)
    if not plan.is_purchasable:
      raise PlanNotPurchasableError(plan.key, plan.name)

    # Lock the account row so concurrent creates for one org serialize
    account = BillingAccount.get_by_org_id(org_id, self.session, for_update=True)
    if not account:
      self.session.rollback()
      raise BillingAccountNotFoundError(org_id)

    existing = Subscription.get_by_billing_account(account.id, self.session)
    if existing:
      self.session.rollback()
      raise AlreadySubscribedError(org_id, existing.status)

    remote = self._call_processor(
      self.provider.create_subscription,
      account.stripe_customer_id,
      plan.stripe_price_id,
      payment_method_id,
    )

    status = remote.local_status
    if status is None:
      logger.warning(
        f"Unmapped processor status '{remote.status}' on create, recording incomplete",
        extra={"org_id": org_id, "stripe_subscription_id": remote.id},
      )
      status = SubscriptionStatus.INCOMPLETE

    subscription = Subscription(
      billing_account_id=account.id,
      plan_id=plan.id,
      stripe_subscription_id=remote.id,
      status=status.value,
      current_period_start=remote.current_period_start,
      current_period_end=remote.current_period_end,
      cancel_at_period_end=remote.cancel_at_period_end,
    )
    self.session.add(subscription)
    self.session.commit()

    # A processor event may have landed between the insert and now with an
    # older intermediate status; the synchronous "active" answer wins.
    self.session.refresh(subscription, with_for_update=True)
    if (
      remote.local_status == SubscriptionStatus.ACTIVE
      and subscription.status != SubscriptionStatus.ACTIVE.value
    ):
      logger.info(
        f"Overwriting status {subscription.status} with active for {subscription.id}",
        extra={"org_id": org_id, "subscription_id": subscription.id},
      )
      subscription.status = SubscriptionStatus.ACTIVE.value
    self.session.commit()

    log_billing_event(
      logger,
      "subscription_created",
      org_id=org_id,
      subscription_id=subscription.id,
      metadata={
        "plan_key": plan.key,
        "status": subscription.status,
        "stripe_subscription_id": remote.id,
      },
    )
    return subscription

  def update_subscription(
    self,
    org_id: str,
    plan_key: Optional[str] = None,
    status: Optional[Union[SubscriptionStatus, str]] = None,
  ) -> Subscription:
    """Change plan and/or override status.

    Without ``plan_key`` this is a local status correction and the processor
    is not contacted. An explicit ``status`` is applied last in either case.

    Raises:
        NoActiveSubscriptionError: No subscription (or billing account)
        PlanNotFoundError: Current or target plan missing
        PlanNotPurchasableError: Target plan has no processor price
        DowngradeBlockedError: Usage exceeds the target plan's limits
        ProcessorUnavailableError: The processor call failed
    """
    override = SubscriptionStatus(status) if status is not None else None
    subscription = self._lock_subscription(org_id)
    changes = {}

    if plan_key is not None:
      current = subscription.plan or Plan.get_by_id(subscription.plan_id, self.session)
      if current is None:
        self.session.rollback()
        raise PlanNotFoundError(subscription.plan_id)

      if plan_key != current.key:
        changes.update(self._change_plan(org_id, subscription, current, plan_key))

    if override == SubscriptionStatus.CANCELED:
      subscription.mark_canceled()
    elif override is not None:
      subscription.status = override.value
    if override is not None:
      changes["status"] = override.value

    self.session.commit()

    if changes:
      log_billing_event(
        logger,
        "subscription_updated",
        org_id=org_id,
        subscription_id=subscription.id,
        metadata=changes,
      )
    return subscription

  def _change_plan(
    self,
    org_id: str,
    subscription: Subscription,
    current: Plan,
    plan_key: str,
  ) -> dict:
    target = self.catalog.find_by_key(plan_key)
    if target is None:
      self.session.rollback()
      raise PlanNotFoundError(plan_key)
    if not target.is_purchasable:
      self.session.rollback()
      raise PlanNotPurchasableError(target.key, target.name)

    change = classify_plan_change(current, target)
    policy = PRORATION_FOR_CHANGE[change]
    clear_cancel = None

    if change == PlanChange.UPGRADE:
      if subscription.cancel_at_period_end:
        clear_cancel = False
    else:
      assessment = self._validator().validate(org_id, target)
      if not assessment.can_downgrade:
        self.session.rollback()
        logger.info(
          f"Plan change {current.key} -> {target.key} blocked for org {org_id}",
          extra={
            "org_id": org_id,
            "plan_key": target.key,
            "metadata": {"blockers": [b.to_dict() for b in assessment.blockers]},
          },
        )
        raise DowngradeBlockedError(target.key, assessment.blockers)

    logger.info(
      f"Changing plan {current.key} -> {target.key} ({change.value}) for org {org_id}",
      extra={
        "org_id": org_id,
        "subscription_id": subscription.id,
        "plan_key": target.key,
        "metadata": {"proration": policy.value},
      },
    )

    remote = self._call_processor(
      self.provider.update_subscription,
      subscription.stripe_subscription_id,
      price_id=target.stripe_price_id,
      proration_policy=policy,
      cancel_at_period_end=clear_cancel,
    )

    subscription.plan_id = target.id
    subscription.plan = target
    self._apply_remote(subscription, remote)
    if clear_cancel is False:
      subscription.cancel_at_period_end = False

    return {
      "from_plan": current.key,
      "to_plan": target.key,
      "change": change.value,
      "proration": policy.value,
      "status": subscription.status,
    }

  def cancel_subscription(self, org_id: str, at_period_end: bool = True) -> Subscription:
    """Cancel at period end (access retained) or immediately."""
    subscription = self._lock_subscription(org_id)

    remote = self._call_processor(
      self.provider.cancel_subscription,
      subscription.stripe_subscription_id,
      at_period_end=at_period_end,
    )

    if at_period_end:
      subscription.cancel_at_period_end = True
      if remote.current_period_end is not None:
        subscription.current_period_end = remote.current_period_end
    else:
      subscription.mark_canceled()
    self.session.commit()

    log_billing_event(
      logger,
      "subscription_canceled",
      org_id=org_id,
      subscription_id=subscription.id,
      metadata={"at_period_end": at_period_end, "status": subscription.status},
    )
    return subscription

  def reactivate_subscription(self, org_id: str) -> Subscription:
    """Undo a pending end-of-period cancellation.

    Raises:
        NotCanceledError: The subscription is not marked to cancel, including
            one that has already reached ``canceled``
    """
    subscription = self._lock_subscription(org_id)

    if (
      not subscription.cancel_at_period_end
      or subscription.status == SubscriptionStatus.CANCELED.value
    ):
      self.session.rollback()
      raise NotCanceledError(org_id, subscription.id)

    self._call_processor(
      self.provider.update_subscription,
      subscription.stripe_subscription_id,
      cancel_at_period_end=False,
    )

    subscription.cancel_at_period_end = False
    subscription.status = SubscriptionStatus.ACTIVE.value
    self.session.commit()

    log_billing_event(
      logger,
      "subscription_reactivated",
      org_id=org_id,
      subscription_id=subscription.id,
    )
    return subscription

  # ------------------------------------------------------------------
  # Helpers
  # ------------------------------------------------------------------

  def _require_plan(self, plan_key: str) -> Plan:
    plan = self.catalog.find_by_key(plan_key)
    if plan is None:
      raise PlanNotFoundError(plan_key)
    return plan

  def _validator(self) -> DowngradeValidator:
    if self.validator is None:
      self.session.rollback()
      raise ConfigurationError(
        "usage_provider", "a usage snapshot provider is required for downgrades"
      )
    return self.validator

  def _lock_subscription(self, org_id: str) -> Subscription:
    account = BillingAccount.get_by_org_id(org_id, self.session)
    if not account:
      raise BillingAccountNotFoundError(org_id)

    subscription = Subscription.get_by_billing_account(
      account.id, self.session, for_update=True
    )
    if not subscription:
      self.session.rollback()
      raise NoActiveSubscriptionError(org_id)
    return subscription

  def _call_processor(self, func, *args, **kwargs) -> RemoteSubscription:
    """Invoke the processor, releasing the row lock if it fails."""
    try:
      return func(*args, **kwargs)
    except ProcessorUnavailableError:
      self.session.rollback()
      raise

  def _apply_remote(self, subscription: Subscription, remote: RemoteSubscription):
    status = remote.local_status
    if status is not None:
      subscription.status = status.value
    else:
      logger.warning(
        f"Unmapped processor status '{remote.status}', keeping {subscription.status}",
        extra={"subscription_id": subscription.id},
      )
    if remote.current_period_start is not None:
      subscription.current_period_start = remote.current_period_start
    if remote.current_period_end is not None:
      subscription.current_period_end = remote.current_period_end
    subscription.cancel_at_period_end = remote.cancel_at_period_end
