"""Billing account model - links an organization to its processor customer."""

import secrets
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import Session, validates

from ...database import Base
from ...logger import get_logger

logger = get_logger(__name__)


class BillingAccount(Base):
  """Billing information for an organization.

  One row per organization. ``stripe_customer_id`` is assigned once at
  creation and never reassigned.
  """

  __tablename__ = "billing_accounts"

  id = Column(
    String, primary_key=True, default=lambda: f"bacct_{secrets.token_urlsafe(16)}"
  )

  org_id = Column(String, unique=True, nullable=False)
  stripe_customer_id = Column(String, unique=True, nullable=False)
  billing_email = Column(String, nullable=True)

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

  def __repr__(self) -> str:
    return f"<BillingAccount org_id={self.org_id} customer={self.stripe_customer_id}>"

  @validates("stripe_customer_id")
  def _validate_stripe_customer_id(self, key, value):
    current = self.stripe_customer_id
    if current is not None and value != current:
      raise ValueError(f"stripe_customer_id is immutable for org {self.org_id}")
    return value

  @classmethod
  def create(
    cls,
    org_id: str,
    stripe_customer_id: str,
    billing_email: Optional[str],
    session: Session,
  ) -> "BillingAccount":
    """Create the billing account for an organization."""
    account = cls(
      org_id=org_id,
      stripe_customer_id=stripe_customer_id,
      billing_email=billing_email,
    )
    session.add(account)
    session.commit()
    session.refresh(account)

    logger.info(
      f"Created billing account {account.id} for org {org_id}",
      extra={"org_id": org_id, "stripe_customer_id": stripe_customer_id},
    )

    return account

  @classmethod
  def get_by_org_id(
    cls, org_id: str, session: Session, for_update: bool = False
  ) -> Optional["BillingAccount"]:
    """Get billing account by organization ID, optionally row-locked."""
    query = session.query(cls).filter(cls.org_id == org_id)
    if for_update:
      query = query.with_for_update()
    return query.first()

  @classmethod
  def get_by_stripe_customer_id(
    cls, stripe_customer_id: str, session: Session
  ) -> Optional["BillingAccount"]:
    """Get billing account by Stripe customer ID."""
    return (
      session.query(cls).filter(cls.stripe_customer_id == stripe_customer_id).first()
    )
