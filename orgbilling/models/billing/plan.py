"""Plan catalog model - purchasable tiers and their resource limits."""

import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
  Boolean,
  Column,
  DateTime,
  Index,
  Integer,
  Numeric,
  String,
)
from sqlalchemy.orm import Session

from ...database import Base


class Plan(Base):
  """Catalog entry for a subscription tier.

  Limits are nullable: NULL means the resource is unlimited on this plan.
  A plan without ``stripe_price_id`` is listed but cannot be purchased.
  """

  __tablename__ = "billing_plans"

  id = Column(
    String, primary_key=True, default=lambda: f"plan_{secrets.token_urlsafe(12)}"
  )

  key = Column(String, unique=True, nullable=False)
  name = Column(String, nullable=False)
  display_name = Column(String, nullable=True)
  description = Column(String, nullable=True)

  price = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
  interval = Column(String, default="month", nullable=False)

  stripe_price_id = Column(String, nullable=True)

  team_limit = Column(Integer, nullable=True)
  member_limit = Column(Integer, nullable=True)
  standup_config_limit = Column(Integer, nullable=True)
  standup_limit = Column(Integer, nullable=True)

  is_active = Column(Boolean, default=True, nullable=False)
  sort_order = Column(Integer, default=0, nullable=False)

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

  __table_args__ = (Index("idx_billing_plan_active_sort", "is_active", "sort_order"),)

  def __repr__(self) -> str:
    return f"<Plan {self.key} price={self.price}>"

  @property
  def is_purchasable(self) -> bool:
    return bool(self.stripe_price_id)

  def resource_limits(self) -> dict[str, Optional[int]]:
    """Named resource limits keyed by resource type, None meaning unlimited."""
    return {
      "teams": self.team_limit,
      "members": self.member_limit,
      "standup_configs": self.standup_config_limit,
      "standups_per_period": self.standup_limit,
    }

  @classmethod
  def get_by_key(cls, key: str, session: Session) -> Optional["Plan"]:
    """Get plan by its machine key."""
    return session.query(cls).filter(cls.key == key).first()

  @classmethod
  def get_by_id(cls, plan_id: str, session: Session) -> Optional["Plan"]:
    return session.query(cls).filter(cls.id == plan_id).first()

  @classmethod
  def list_active(cls, session: Session) -> list["Plan"]:
    """Active plans in display order."""
    return (
      session.query(cls)
      .filter(cls.is_active.is_(True))
      .order_by(cls.sort_order.asc())
      .all()
    )
