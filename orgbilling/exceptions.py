"""
Custom Exception Types for the billing service.

This module provides the hierarchy of exceptions raised by billing commands.
Each exception carries an application error code and structured details so
the request surface can translate it into a clear rejection.
"""

from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


class OrgBillingError(Exception):
  """
  Base exception for all billing service errors.

  Attributes:
      message: Human-readable error message
      error_code: Application-specific error code for categorization
      details: Additional error context and metadata
      timestamp: When the error occurred
  """

  status_code = 500

  def __init__(
    self,
    message: str,
    error_code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
  ):
    super().__init__(message)
    self.message = message
    self.error_code = error_code or self.__class__.__name__
    self.details = details or {}
    self.timestamp = datetime.now(timezone.utc).isoformat()

  def to_dict(self) -> Dict[str, Any]:
    """Convert exception to dictionary for API responses."""
    return {
      "error": self.error_code,
      "message": self.message,
      "details": self.details,
      "timestamp": self.timestamp,
    }


# ============================================================================
# Subscription Command Exceptions
# ============================================================================


class BillingError(OrgBillingError):
  """Base exception for subscription command failures."""

  pass


class PlanNotFoundError(BillingError):
  """Raised when a plan key does not exist in the catalog."""

  status_code = 404

  def __init__(self, plan_key: str):
    super().__init__(
      f"Plan '{plan_key}' not found",
      error_code="PLAN_NOT_FOUND",
      details={"plan_key": plan_key},
    )


class PlanNotPurchasableError(BillingError):
  """Raised when a plan has no external price and cannot be bought."""

  status_code = 400

  def __init__(self, plan_key: str, plan_name: Optional[str] = None):
    super().__init__(
      f"Plan {plan_name or plan_key} is not available for subscription",
      error_code="PLAN_NOT_PURCHASABLE",
      details={"plan_key": plan_key},
    )


class AlreadySubscribedError(BillingError):
  """Raised when the billing account already owns a subscription."""

  status_code = 409

  def __init__(self, org_id: str, status: Optional[str] = None):
    details = {"org_id": org_id}
    if status:
      details["current_status"] = status
    super().__init__(
      "Organization already has a subscription",
      error_code="ALREADY_SUBSCRIBED",
      details=details,
    )


class NoActiveSubscriptionError(BillingError):
  """Raised when a command needs a subscription the organization lacks."""

  status_code = 404

  def __init__(
    self,
    org_id: str,
    message: Optional[str] = None,
    error_code: str = "NO_ACTIVE_SUBSCRIPTION",
  ):
    super().__init__(
      message or f"No subscription found for organization {org_id}",
      error_code=error_code,
      details={"org_id": org_id},
    )


class BillingAccountNotFoundError(NoActiveSubscriptionError):
  """Raised when billing was never initialized for the organization."""

  def __init__(self, org_id: str):
    super().__init__(
      org_id,
      message=f"No billing account found for organization {org_id}",
      error_code="BILLING_ACCOUNT_NOT_FOUND",
    )


class NotCanceledError(BillingError):
  """Raised when reactivating a subscription not marked to cancel."""

  status_code = 409

  def __init__(self, org_id: str, subscription_id: Optional[str] = None):
    details = {"org_id": org_id}
    if subscription_id:
      details["subscription_id"] = subscription_id
    super().__init__(
      "Subscription is not canceled",
      error_code="NOT_CANCELED",
      details=details,
    )


class DowngradeBlockedError(BillingError):
  """Raised when current usage exceeds the limits of the target plan."""

  status_code = 400

  def __init__(self, target_plan_key: str, blockers: List[Any]):
    self.blockers = list(blockers)
    super().__init__(
      "Cannot downgrade due to usage constraints",
      error_code="DOWNGRADE_BLOCKED",
      details={
        "target_plan": target_plan_key,
        "blockers": [
          blocker.to_dict() if hasattr(blocker, "to_dict") else blocker
          for blocker in self.blockers
        ],
      },
    )


class ProcessorUnavailableError(BillingError):
  """Raised when the external billing processor call fails."""

  status_code = 502

  def __init__(
    self,
    operation: str,
    reason: Optional[str] = None,
    retryable: bool = False,
    **kwargs,
  ):
    details = {"operation": operation, "retryable": retryable}
    if reason:
      details["reason"] = reason
    details.update(kwargs)
    message = f"Billing processor {operation} failed"
    if reason:
      message += f": {reason}"
    super().__init__(
      message,
      error_code="PROCESSOR_UNAVAILABLE",
      details=details,
    )


# ============================================================================
# Configuration Exceptions
# ============================================================================


class ConfigurationError(OrgBillingError):
  """Raised when there are configuration issues."""

  def __init__(self, config_key: str, reason: str):
    super().__init__(
      f"Configuration error for '{config_key}': {reason}",
      error_code="CONFIGURATION_ERROR",
      details={"config_key": config_key, "reason": reason},
    )
