"""Tests for the subscription lifecycle commands."""

from unittest.mock import Mock, patch

import pytest

from orgbilling.exceptions import (
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
from orgbilling.models.billing import Subscription, SubscriptionStatus
from orgbilling.operations.billing import (
  DowngradeValidator,
  PlanChange,
  ProrationPolicy,
  SubscriptionService,
  classify_plan_change,
)

from tests.conftest import PERIOD_END, PERIOD_START, FakeUsageProvider, as_utc


@pytest.fixture
def validator(usage_provider):
  return DowngradeValidator(usage_provider, near_limit_ratio=0.8)


@pytest.fixture
def service(db_session, payment_provider, validator):
  return SubscriptionService(db_session, payment_provider, validator=validator)


class TestClassifyPlanChange:
  def test_price_comparison(self, plans):
    assert classify_plan_change(plans["starter"], plans["pro"]) == PlanChange.UPGRADE
    assert classify_plan_change(plans["pro"], plans["starter"]) == PlanChange.DOWNGRADE
    assert classify_plan_change(plans["pro"], plans["pro_team"]) == PlanChange.LATERAL


class TestCreateSubscription:
  def test_create_mirrors_processor_state(
    self, service, payment_provider, billing_account, plans
  ):
    subscription = service.create("org_b", "pro", "pm_card")

    assert subscription.status == SubscriptionStatus.ACTIVE.value
    assert subscription.plan_id == plans["pro"].id
    assert subscription.stripe_subscription_id == "sub_1"
    assert as_utc(subscription.current_period_start) == PERIOD_START
    assert as_utc(subscription.current_period_end) == PERIOD_END
    assert subscription.cancel_at_period_end is False
    assert payment_provider.calls_named("create_subscription") == [
      {
        "customer_id": "cus_org_b",
        "price_id": "price_pro",
        "payment_method_id": "pm_card",
      }
    ]

  def test_create_records_incomplete(self, service, payment_provider, billing_account, plans):
    payment_provider.create_status = "incomplete"

    subscription = service.create("org_b", "pro")

    assert subscription.status == SubscriptionStatus.INCOMPLETE.value

  def test_unmapped_status_recorded_as_incomplete(
    self, service, payment_provider, billing_account, plans
  ):
    payment_provider.create_status = "paused"

    subscription = service.create("org_b", "pro")

    assert subscription.status == SubscriptionStatus.INCOMPLETE.value

  def test_active_answer_overwrites_stale_status(
    self, db_session, service, billing_account, plans
  ):
    def stale_refresh(instance, **kwargs):
      # An "incomplete" event landed between insert and re-read
      instance.status = SubscriptionStatus.INCOMPLETE.value

    with patch.object(db_session, "refresh", side_effect=stale_refresh):
      subscription = service.create("org_b", "pro")

    assert subscription.status == SubscriptionStatus.ACTIVE.value
    db_session.expire_all()
    stored = Subscription.get_by_stripe_subscription_id("sub_1", db_session)
    assert stored.status == SubscriptionStatus.ACTIVE.value

  def test_requires_billing_account(self, service, payment_provider, plans):
    with pytest.raises(BillingAccountNotFoundError) as exc_info:
      service.create("org_a", "pro")

    assert isinstance(exc_info.value, NoActiveSubscriptionError)
    assert not isinstance(exc_info.value, AlreadySubscribedError)
    assert payment_provider.calls == []

  def test_unknown_plan(self, service, billing_account, plans):
    with pytest.raises(PlanNotFoundError):
      service.create("org_b", "platinum")

  def test_plan_without_price(self, service, payment_provider, billing_account, plans):
    with pytest.raises(PlanNotPurchasableError):
      service.create("org_b", "free")

    assert payment_provider.calls == []

  def test_existing_subscription_blocks(
    self, service, payment_provider, make_subscription
  ):
    make_subscription()

    with pytest.raises(AlreadySubscribedError):
      service.create("org_b", "starter")

    assert payment_provider.calls_named("create_subscription") == []

  def test_canceled_subscription_still_blocks(self, service, make_subscription):
    make_subscription(status="canceled")

    with pytest.raises(AlreadySubscribedError) as exc_info:
      service.create("org_b", "pro")

    assert exc_info.value.details["current_status"] == "canceled"

  def test_processor_failure_leaves_no_row(
    self, db_session, service, payment_provider, billing_account, plans
  ):
    payment_provider.fail_with = ProcessorUnavailableError("create_subscription")

    with pytest.raises(ProcessorUnavailableError):
      service.create("org_b", "pro")

    assert db_session.query(Subscription).count() == 0


class TestPlanUpgrade:
  def test_upgrade_invoices_immediately_without_validation(
    self, db_session, payment_provider, make_subscription, plans
  ):
    validator = Mock()
    service = SubscriptionService(db_session, payment_provider, validator=validator)
    make_subscription(plan_key="starter")

    subscription = service.update_subscription("org_b", plan_key="pro")

    validator.validate.assert_not_called()
    assert subscription.plan_id == plans["pro"].id
    call = payment_provider.calls_named("update_subscription")[0]
    assert call["price_id"] == "price_pro"
    assert call["proration_policy"] == ProrationPolicy.INVOICE_IMMEDIATELY

  def test_upgrade_clears_pending_cancellation(
    self, service, payment_provider, make_subscription
  ):
    make_subscription(plan_key="starter", cancel_at_period_end=True)

    subscription = service.update_subscription("org_b", plan_key="enterprise")

    assert subscription.cancel_at_period_end is False
    call = payment_provider.calls_named("update_subscription")[0]
    assert call["cancel_at_period_end"] is False

  def test_upgrade_without_pending_cancellation_leaves_flag_alone(
    self, service, payment_provider, make_subscription
  ):
    make_subscription(plan_key="starter")

    service.update_subscription("org_b", plan_key="pro")

    assert payment_provider.calls_named("update_subscription")[0][
      "cancel_at_period_end"
    ] is None

  def test_upgrade_works_without_usage_provider(
    self, db_session, payment_provider, make_subscription, plans
  ):
    service = SubscriptionService(db_session, payment_provider)
    make_subscription(plan_key="starter")

    subscription = service.update_subscription("org_b", plan_key="pro")

    assert subscription.plan_id == plans["pro"].id

  def test_upgrade_records_processor_status(
    self, service, payment_provider, make_subscription
  ):
    payment_provider.update_status = "past_due"
    make_subscription(plan_key="starter")

    subscription = service.update_subscription("org_b", plan_key="pro")

    assert subscription.status == SubscriptionStatus.PAST_DUE.value


class TestPlanDowngrade:
  def test_member_overage_blocks_without_processor_call(
    self, db_session, payment_provider, make_subscription, plans
  ):
    usage = FakeUsageProvider(teams=1, members=15, standup_configs=1)
    service = SubscriptionService(
      db_session, payment_provider, validator=DowngradeValidator(usage)
    )
    make_subscription(plan_key="pro")

    with pytest.raises(DowngradeBlockedError) as exc_info:
      service.update_subscription("org_b", plan_key="starter")

    blockers = exc_info.value.details["blockers"]
    assert len(blockers) == 1
    assert blockers[0]["type"] == "members"
    assert blockers[0]["current"] == 15
    assert blockers[0]["new_limit"] == 10
    assert payment_provider.calls == []

    db_session.expire_all()
    stored = Subscription.get_by_stripe_subscription_id("sub_existing", db_session)
    assert stored.plan_id == plans["pro"].id

  def test_eligible_downgrade_prorates_next_invoice(
    self, service, payment_provider, usage_provider, make_subscription, plans
  ):
    make_subscription(plan_key="pro")

    subscription = service.update_subscription("org_b", plan_key="starter")

    assert usage_provider.requested == ["org_b"]
    assert subscription.plan_id == plans["starter"].id
    call = payment_provider.calls_named("update_subscription")[0]
    assert call["proration_policy"] == ProrationPolicy.PRORATE_NEXT_INVOICE
    assert call["cancel_at_period_end"] is None

  def test_downgrade_tolerates_incomplete_payment(
    self, service, payment_provider, make_subscription
  ):
    payment_provider.update_status = "incomplete"
    make_subscription(plan_key="pro")

    subscription = service.update_subscription("org_b", plan_key="starter")

    assert subscription.status == SubscriptionStatus.INCOMPLETE.value

  def test_downgrade_keeps_pending_cancellation(
    self, service, payment_provider, make_subscription
  ):
    make_subscription(plan_key="pro", cancel_at_period_end=True)
    payment_provider.seed("sub_existing", cancel_at_period_end=True)

    subscription = service.update_subscription("org_b", plan_key="starter")

    assert subscription.cancel_at_period_end is True

  def test_downgrade_without_usage_provider_is_rejected(
    self, db_session, payment_provider, make_subscription
  ):
    service = SubscriptionService(db_session, payment_provider)
    make_subscription(plan_key="pro")

    with pytest.raises(ConfigurationError):
      service.update_subscription("org_b", plan_key="starter")

    assert payment_provider.calls == []


class TestLateralMove:
  def test_lateral_move_validates_and_skips_proration(
    self, db_session, payment_provider, make_subscription, plans
  ):
    usage = FakeUsageProvider(teams=5, members=3)
    service = SubscriptionService(
      db_session, payment_provider, validator=DowngradeValidator(usage)
    )
    make_subscription(plan_key="pro")

    with pytest.raises(DowngradeBlockedError):
      service.update_subscription("org_b", plan_key="pro_team")

  def test_lateral_move_uses_no_proration(
    self, service, payment_provider, make_subscription, plans
  ):
    make_subscription(plan_key="pro", cancel_at_period_end=True)
    payment_provider.seed("sub_existing", cancel_at_period_end=True)

    subscription = service.update_subscription("org_b", plan_key="pro_team")

    call = payment_provider.calls_named("update_subscription")[0]
    assert call["proration_policy"] == ProrationPolicy.NONE
    assert call["cancel_at_period_end"] is None
    assert subscription.cancel_at_period_end is True
    assert subscription.plan_id == plans["pro_team"].id


class TestUpdateSubscriptionMisc:
  def test_status_override_is_local_only(self, service, payment_provider, make_subscription):
    make_subscription(status="past_due")

    subscription = service.update_subscription(
      "org_b", status=SubscriptionStatus.ACTIVE
    )

    assert subscription.status == SubscriptionStatus.ACTIVE.value
    assert payment_provider.calls == []

  def test_status_override_accepts_string(self, service, make_subscription):
    make_subscription()

    subscription = service.update_subscription("org_b", status="unpaid")

    assert subscription.status == SubscriptionStatus.UNPAID.value

  def test_status_override_to_canceled_clears_flag(
    self, service, payment_provider, make_subscription
  ):
    make_subscription(cancel_at_period_end=True)

    subscription = service.update_subscription("org_b", status="canceled")

    assert subscription.status == SubscriptionStatus.CANCELED.value
    assert subscription.cancel_at_period_end is False
    assert payment_provider.calls == []

  def test_same_plan_is_noop(self, service, payment_provider, make_subscription):
    make_subscription(plan_key="pro")

    service.update_subscription("org_b", plan_key="pro")

    assert payment_provider.calls == []

  def test_explicit_status_applied_after_plan_change(
    self, service, make_subscription
  ):
    make_subscription(plan_key="starter")

    subscription = service.update_subscription(
      "org_b", plan_key="pro", status="past_due"
    )

    assert subscription.status == SubscriptionStatus.PAST_DUE.value

  def test_unknown_target_plan(self, service, payment_provider, make_subscription):
    make_subscription()

    with pytest.raises(PlanNotFoundError):
      service.update_subscription("org_b", plan_key="platinum")

    assert payment_provider.calls == []

  def test_target_plan_without_price(self, service, make_subscription):
    make_subscription(plan_key="pro")

    with pytest.raises(PlanNotPurchasableError):
      service.update_subscription("org_b", plan_key="free")

  def test_requires_subscription(self, service, billing_account, plans):
    with pytest.raises(NoActiveSubscriptionError):
      service.update_subscription("org_b", plan_key="pro")

  def test_processor_failure_leaves_state(
    self, db_session, service, payment_provider, make_subscription, plans
  ):
    make_subscription(plan_key="starter")
    payment_provider.fail_with = ProcessorUnavailableError(
      "update_subscription", retryable=True
    )

    with pytest.raises(ProcessorUnavailableError):
      service.update_subscription("org_b", plan_key="pro")

    db_session.expire_all()
    stored = Subscription.get_by_stripe_subscription_id("sub_existing", db_session)
    assert stored.plan_id == plans["starter"].id
    assert stored.status == SubscriptionStatus.ACTIVE.value


class TestCancelSubscription:
  def test_cancel_at_period_end(self, service, payment_provider, make_subscription):
    make_subscription()

    subscription = service.cancel_subscription("org_b", at_period_end=True)

    assert subscription.status == SubscriptionStatus.ACTIVE.value
    assert subscription.cancel_at_period_end is True
    assert payment_provider.calls_named("cancel_subscription") == [
      {"subscription_id": "sub_existing", "at_period_end": True}
    ]

  def test_cancel_immediately(self, service, payment_provider, make_subscription):
    make_subscription(cancel_at_period_end=True)

    subscription = service.cancel_subscription("org_b", at_period_end=False)

    assert subscription.status == SubscriptionStatus.CANCELED.value
    assert subscription.cancel_at_period_end is False

  def test_requires_subscription(self, service, billing_account):
    with pytest.raises(NoActiveSubscriptionError):
      service.cancel_subscription("org_b")

  def test_processor_failure_leaves_state(
    self, db_session, service, payment_provider, make_subscription
  ):
    make_subscription()
    payment_provider.fail_with = ProcessorUnavailableError("cancel_subscription")

    with pytest.raises(ProcessorUnavailableError):
      service.cancel_subscription("org_b", at_period_end=False)

    db_session.expire_all()
    stored = Subscription.get_by_stripe_subscription_id("sub_existing", db_session)
    assert stored.status == SubscriptionStatus.ACTIVE.value
    assert stored.cancel_at_period_end is False


class TestReactivateSubscription:
  def test_reactivate_clears_flag(self, service, payment_provider, make_subscription):
    make_subscription(status="past_due", cancel_at_period_end=True)

    subscription = service.reactivate_subscription("org_b")

    assert subscription.cancel_at_period_end is False
    assert subscription.status == SubscriptionStatus.ACTIVE.value
    call = payment_provider.calls_named("update_subscription")[0]
    assert call["cancel_at_period_end"] is False
    assert call["price_id"] is None

  def test_not_canceled_even_when_active(
    self, service, payment_provider, make_subscription
  ):
    make_subscription(status="active", cancel_at_period_end=False)

    with pytest.raises(NotCanceledError):
      service.reactivate_subscription("org_b")

    assert payment_provider.calls == []

  def test_fully_canceled_cannot_be_reactivated(self, service, make_subscription):
    make_subscription(status="canceled", cancel_at_period_end=False)

    with pytest.raises(NotCanceledError):
      service.reactivate_subscription("org_b")

  def test_canceled_with_pending_flag_cannot_be_reactivated(
    self, db_session, service, payment_provider, make_subscription
  ):
    # An updated event may leave status canceled with the flag still set
    make_subscription(status="canceled", cancel_at_period_end=True)

    with pytest.raises(NotCanceledError):
      service.reactivate_subscription("org_b")

    assert payment_provider.calls == []
    db_session.expire_all()
    stored = Subscription.get_by_stripe_subscription_id("sub_existing", db_session)
    assert stored.status == SubscriptionStatus.CANCELED.value

  def test_status_override_to_canceled_blocks_reactivation(
    self, service, payment_provider, make_subscription
  ):
    make_subscription(cancel_at_period_end=True)
    service.update_subscription("org_b", status="canceled")

    with pytest.raises(NotCanceledError):
      service.reactivate_subscription("org_b")

    assert payment_provider.calls_named("update_subscription") == []


class TestReads:
  def test_get_subscription_free_tier(self, service, billing_account):
    assert service.get_subscription("org_b") is None

  def test_get_subscription_without_account(self, service):
    assert service.get_subscription("org_missing") is None

  def test_get_subscription(self, service, make_subscription):
    created = make_subscription()

    assert service.get_subscription("org_b").id == created.id

  def test_get_billing_account_missing(self, service):
    with pytest.raises(BillingAccountNotFoundError):
      service.get_billing_account("org_missing")

  def test_preview_downgrade(self, db_session, payment_provider, plans):
    usage = FakeUsageProvider(members=15)
    service = SubscriptionService(
      db_session, payment_provider, validator=DowngradeValidator(usage)
    )

    assessment = service.preview_downgrade("org_b", "starter")

    assert assessment.can_downgrade is False
    assert payment_provider.calls == []
