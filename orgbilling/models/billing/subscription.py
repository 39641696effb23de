"""Subscription model - the single local record of an organization's paid plan."""

import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Session, relationship, validates

from ...database import Base
from ...logger import get_logger

logger = get_logger(__name__)


class SubscriptionStatus(str, Enum):
  """Subscription status states."""

  INCOMPLETE = "incomplete"
  ACTIVE = "active"
  PAST_DUE = "past_due"
  UNPAID = "unpaid"
  CANCELED = "canceled"


class Subscription(Base):
  """Subscription owned by a billing account.

  At most one row per billing account; an account without a row is on the
  free tier. Rows are never deleted: ending a subscription moves it to
  ``canceled``. Both the command path and the processor event path write
  here, always through a row lock (see ``for_update`` on the getters).
  """

  __tablename__ = "billing_subscriptions"

  id = Column(
    String, primary_key=True, default=lambda: f"bsub_{secrets.token_urlsafe(16)}"
  )

  billing_account_id = Column(
    String, ForeignKey("billing_accounts.id"), unique=True, nullable=False
  )
  plan_id = Column(String, ForeignKey("billing_plans.id"), nullable=False)

  stripe_subscription_id = Column(String, unique=True, nullable=False)

  status = Column(String, default=SubscriptionStatus.INCOMPLETE.value, nullable=False)

  current_period_start = Column(DateTime(timezone=True), nullable=True)
  current_period_end = Column(DateTime(timezone=True), nullable=True)
  cancel_at_period_end = Column(Boolean, default=False, nullable=False)

  created_at = Column(
    DateTime(timezone=True),
    default=lambda: datetime.now(timezone.utc),
    nullable=False,
  )
  updated_at = Column(
    DateTime(timezone=True),
    default=lambda: datetime.now(timezone.utc),
    onupdate=lambda: datetime.now(timezone.utc),
    nullable=False,
  )

  billing_account = relationship("BillingAccount")
  plan = relationship("Plan")

  __table_args__ = (
    Index("idx_billing_sub_status", "status"),
    Index("idx_billing_sub_period_end", "current_period_end"),
  )

  def __repr__(self) -> str:
    return f"<Subscription {self.id} status={self.status}>"

  @validates("stripe_subscription_id")
  def _validate_stripe_subscription_id(self, key, value):
    current = self.stripe_subscription_id
    if current is not None and value != current:
      raise ValueError(
        f"stripe_subscription_id is immutable once set (subscription {self.id})"
      )
    return value

  @classmethod
  def get_by_billing_account(
    cls, billing_account_id: str, session: Session, for_update: bool = False
  ) -> Optional["Subscription"]:
    """Get the subscription for a billing account, optionally row-locked."""
    query = session.query(cls).filter(cls.billing_account_id == billing_account_id)
    if for_update:
      query = query.with_for_update()
    return query.first()

  @classmethod
  def get_by_stripe_subscription_id(
    cls, stripe_subscription_id: str, session: Session, for_update: bool = False
  ) -> Optional["Subscription"]:
    """Get subscription by Stripe subscription ID, optionally row-locked."""
    query = session.query(cls).filter(
      cls.stripe_subscription_id == stripe_subscription_id
    )
    if for_update:
      query = query.with_for_update()
    return query.first()

  def is_active(self) -> bool:
    """Check if subscription is currently active."""
    return self.status == SubscriptionStatus.ACTIVE.value

  def mark_canceled(self) -> None:
    """Terminal transition; caller commits."""
    self.status = SubscriptionStatus.CANCELED.value
    self.cancel_at_period_end = False
    self.updated_at = datetime.now(timezone.utc)
