"""Billing models package.

Holds the organization billing account, the plan catalog and the
subscription record shared by the command and event paths.
"""

from .account import BillingAccount
from .plan import Plan
from .subscription import Subscription, SubscriptionStatus

__all__ = [
  "BillingAccount",
  "Plan",
  "Subscription",
  "SubscriptionStatus",
]
