"""Billing operations: processor client, subscription lifecycle, reconciliation."""

from .account_service import BillingAccountService
from .catalog import PlanCatalog, SqlPlanCatalog
from .downgrade_validation import (
  DowngradeAssessment,
  DowngradeIssue,
  DowngradeValidator,
  ResourceType,
)
from .event_reconciler import (
  SubscriptionEventKind,
  SubscriptionEventReconciler,
  event_kind_for,
)
from .payment_provider import (
  PaymentProvider,
  ProrationPolicy,
  RemoteSubscription,
  StripePaymentProvider,
  get_payment_provider,
  map_processor_status,
)
from .subscription_service import PlanChange, SubscriptionService, classify_plan_change
from .usage import OrganizationDirectory, UsageSnapshot, UsageSnapshotProvider

__all__ = [
  "BillingAccountService",
  "DowngradeAssessment",
  "DowngradeIssue",
  "DowngradeValidator",
  "OrganizationDirectory",
  "PaymentProvider",
  "PlanCatalog",
  "PlanChange",
  "ProrationPolicy",
  "RemoteSubscription",
  "ResourceType",
  "SqlPlanCatalog",
  "StripePaymentProvider",
  "SubscriptionEventKind",
  "SubscriptionEventReconciler",
  "SubscriptionService",
  "UsageSnapshot",
  "UsageSnapshotProvider",
  "classify_plan_change",
  "event_kind_for",
  "get_payment_provider",
  "map_processor_status",
]
