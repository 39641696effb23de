import json
import os
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orgbilling.database import Base
from orgbilling.models.billing import BillingAccount, Plan, Subscription
from orgbilling.operations.billing import (
  PaymentProvider,
  RemoteSubscription,
  UsageSnapshot,
  UsageSnapshotProvider,
)

PERIOD_START = datetime(2026, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 2, 1, tzinfo=timezone.utc)


def as_utc(value):
  """SQLite drops tzinfo on round trip; compare everything as aware UTC."""
  if value is None or value.tzinfo is not None:
    return value
  return value.replace(tzinfo=timezone.utc)


class FakePaymentProvider(PaymentProvider):
  """In-memory processor that records every call."""

  def __init__(self):
    self.calls = []
    self.customers = {}
    self.subscriptions = {}
    self.create_status = "active"
    self.update_status = None
    self.fail_with = None

  def _record(self, name, /, **kwargs):
    self.calls.append((name, kwargs))
    if self.fail_with is not None:
      raise self.fail_with

  def calls_named(self, name):
    return [kwargs for call, kwargs in self.calls if call == name]

  def create_or_get_customer(self, org_id, email, name):
    self._record("create_or_get_customer", org_id=org_id, email=email, name=name)
    return self.customers.setdefault(org_id, f"cus_{org_id}")

  def create_subscription(self, customer_id, price_id, payment_method_id=None):
    self._record(
      "create_subscription",
      customer_id=customer_id,
      price_id=price_id,
      payment_method_id=payment_method_id,
    )
    remote = RemoteSubscription(
      id=f"sub_{len(self.subscriptions) + 1}",
      status=self.create_status,
      current_period_start=PERIOD_START,
      current_period_end=PERIOD_END,
      cancel_at_period_end=False,
      customer_id=customer_id,
      price_id=price_id,
    )
    self.subscriptions[remote.id] = remote
    return remote

  def seed(self, subscription_id, status="active", cancel_at_period_end=False):
    """Register the processor-side state of an existing subscription."""
    self.subscriptions[subscription_id] = RemoteSubscription(
      id=subscription_id,
      status=status,
      current_period_start=PERIOD_START,
      current_period_end=PERIOD_END,
      cancel_at_period_end=cancel_at_period_end,
    )

  def _current(self, subscription_id):
    return self.subscriptions.get(subscription_id) or RemoteSubscription(
      id=subscription_id,
      status="active",
      current_period_start=PERIOD_START,
      current_period_end=PERIOD_END,
    )

  def get_subscription(self, subscription_id):
    self._record("get_subscription", subscription_id=subscription_id)
    return self._current(subscription_id)

  def update_subscription(
    self,
    subscription_id,
    price_id=None,
    proration_policy=None,
    cancel_at_period_end=None,
  ):
    self._record(
      "update_subscription",
      subscription_id=subscription_id,
      price_id=price_id,
      proration_policy=proration_policy,
      cancel_at_period_end=cancel_at_period_end,
    )
    current = self._current(subscription_id)
    updated = replace(
      current,
      price_id=price_id or current.price_id,
      status=self.update_status or current.status,
      cancel_at_period_end=(
        current.cancel_at_period_end
        if cancel_at_period_end is None
        else cancel_at_period_end
      ),
    )
    self.subscriptions[subscription_id] = updated
    return updated

  def cancel_subscription(self, subscription_id, at_period_end=True):
    self._record(
      "cancel_subscription",
      subscription_id=subscription_id,
      at_period_end=at_period_end,
    )
    current = self._current(subscription_id)
    if at_period_end:
      updated = replace(current, cancel_at_period_end=True)
    else:
      updated = replace(current, status="canceled", cancel_at_period_end=False)
    self.subscriptions[subscription_id] = updated
    return updated

  def verify_webhook(self, payload, signature):
    self._record("verify_webhook", signature=signature)
    if signature != "valid-signature":
      raise ValueError("Invalid webhook signature")
    return json.loads(payload)


class FakeUsageProvider(UsageSnapshotProvider):
  def __init__(self, **counts):
    self.usage = UsageSnapshot(**counts)
    self.requested = []

  def snapshot(self, org_id):
    self.requested.append(org_id)
    return self.usage


@pytest.fixture
def engine():
  database_url = os.environ.get("TEST_DATABASE_URL", "sqlite://")
  if database_url.startswith("sqlite"):
    engine = create_engine(
      database_url,
      connect_args={"check_same_thread": False},
      poolclass=StaticPool,
    )
  else:
    engine = create_engine(database_url)

  Base.metadata.create_all(bind=engine)
  yield engine
  Base.metadata.drop_all(bind=engine)
  engine.dispose()


@pytest.fixture
def db_session(engine):
  TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
  session = TestingSessionLocal()
  yield session
  session.rollback()
  session.close()


@pytest.fixture
def plans(db_session):
  """Plan catalog: free, starter < pro == pro_team < enterprise."""
  rows = [
    Plan(
      key="free",
      name="Free Plan",
      price=Decimal("0.00"),
      team_limit=1,
      member_limit=5,
      standup_config_limit=1,
      standup_limit=50,
      sort_order=0,
    ),
    Plan(
      key="starter",
      name="Starter Plan",
      price=Decimal("10.00"),
      stripe_price_id="price_starter",
      team_limit=2,
      member_limit=10,
      standup_config_limit=5,
      standup_limit=None,
      sort_order=1,
    ),
    Plan(
      key="pro",
      name="Pro Plan",
      price=Decimal("30.00"),
      stripe_price_id="price_pro",
      team_limit=10,
      member_limit=50,
      standup_config_limit=20,
      standup_limit=None,
      sort_order=2,
    ),
    Plan(
      key="pro_team",
      name="Pro Team Plan",
      price=Decimal("30.00"),
      stripe_price_id="price_pro_team",
      team_limit=3,
      member_limit=50,
      standup_config_limit=20,
      standup_limit=None,
      sort_order=3,
    ),
    Plan(
      key="enterprise",
      name="Enterprise Plan",
      price=Decimal("100.00"),
      stripe_price_id="price_enterprise",
      sort_order=4,
    ),
  ]
  db_session.add_all(rows)
  db_session.commit()
  return {plan.key: plan for plan in rows}


@pytest.fixture
def payment_provider():
  return FakePaymentProvider()


@pytest.fixture
def usage_provider():
  return FakeUsageProvider(teams=1, members=3, standup_configs=1)


@pytest.fixture
def billing_account(db_session):
  account = BillingAccount(
    org_id="org_b",
    stripe_customer_id="cus_org_b",
    billing_email="billing@example.com",
  )
  db_session.add(account)
  db_session.commit()
  return account


@pytest.fixture
def make_subscription(db_session, billing_account, plans):
  """Insert a local subscription for org_b on the given plan."""

  def _make(plan_key="pro", status="active", cancel_at_period_end=False):
    subscription = Subscription(
      billing_account_id=billing_account.id,
      plan_id=plans[plan_key].id,
      stripe_subscription_id="sub_existing",
      status=status,
      current_period_start=PERIOD_START,
      current_period_end=PERIOD_END,
      cancel_at_period_end=cancel_at_period_end,
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription

  return _make
