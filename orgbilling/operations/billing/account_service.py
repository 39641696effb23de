"""Service owning the organization to processor-customer mapping."""

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import env
from ...exceptions import BillingAccountNotFoundError
from ...logger import get_logger, log_billing_event
from ...models.billing import BillingAccount
from .payment_provider import PaymentProvider
from .usage import OrganizationDirectory

logger = get_logger(__name__)


class BillingAccountService:
  """Creates and reads billing accounts."""

  def __init__(
    self,
    session: Session,
    provider: PaymentProvider,
    directory: Optional[OrganizationDirectory] = None,
  ):
    self.session = session
    self.provider = provider
    self.directory = directory

  def initialize(
    self,
    org_id: str,
    contact_email: str,
    contact_name: Optional[str] = None,
  ) -> BillingAccount:
    """Return the org's billing account, creating it on first call.

    Re-running is a no-op: an existing account is returned without
    contacting the processor. The processor customer lookup is keyed by
    ``org_id``, so a crash between the remote call and the insert resolves
    to the same customer on retry.
    """
    existing = BillingAccount.get_by_org_id(org_id, self.session)
    if existing:
      logger.debug(
        f"Billing account already initialized for org {org_id}",
        extra={"org_id": org_id},
      )
      return existing

    customer_name = self._customer_name(org_id, contact_name)
    customer_id = self.provider.create_or_get_customer(
      org_id, contact_email, customer_name
    )

    try:
      account = BillingAccount.create(
        org_id=org_id,
        stripe_customer_id=customer_id,
        billing_email=contact_email,
        session=self.session,
      )
    except IntegrityError:
      # Concurrent initialize for the same org won the insert
      self.session.rollback()
      account = BillingAccount.get_by_org_id(org_id, self.session)
      if account is None:
        raise
      return account

    log_billing_event(
      logger,
      "billing_initialized",
      org_id=org_id,
      metadata={"stripe_customer_id": customer_id},
    )
    return account

  def get_billing_account(self, org_id: str) -> BillingAccount:
    account = BillingAccount.get_by_org_id(org_id, self.session)
    if not account:
      raise BillingAccountNotFoundError(org_id)
    return account

  def _customer_name(self, org_id: str, contact_name: Optional[str]) -> str:
    name = self.directory.get_name(org_id) if self.directory else None
    return name or contact_name or env.BILLING_DEFAULT_CUSTOMER_NAME
