"""FastAPI dependencies wiring billing services to the request session."""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ...database import get_db_session
from ...operations.billing import (
  BillingAccountService,
  DowngradeValidator,
  OrganizationDirectory,
  PaymentProvider,
  SubscriptionService,
  UsageSnapshotProvider,
  get_payment_provider,
)


def get_provider(request: Request) -> PaymentProvider:
  """Payment provider set on app state, built lazily on first use."""
  provider = getattr(request.app.state, "payment_provider", None)
  if provider is None:
    provider = get_payment_provider("stripe")
    request.app.state.payment_provider = provider
  return provider


def get_usage_provider(request: Request) -> Optional[UsageSnapshotProvider]:
  return getattr(request.app.state, "usage_provider", None)


def get_org_directory(request: Request) -> Optional[OrganizationDirectory]:
  return getattr(request.app.state, "org_directory", None)


def get_account_service(
  db: Session = Depends(get_db_session),
  provider: PaymentProvider = Depends(get_provider),
  directory: Optional[OrganizationDirectory] = Depends(get_org_directory),
) -> BillingAccountService:
  return BillingAccountService(db, provider, directory)


def get_subscription_service(
  db: Session = Depends(get_db_session),
  provider: PaymentProvider = Depends(get_provider),
  usage_provider: Optional[UsageSnapshotProvider] = Depends(get_usage_provider),
) -> SubscriptionService:
  validator = DowngradeValidator(usage_provider) if usage_provider else None
  return SubscriptionService(db, provider, validator=validator)
