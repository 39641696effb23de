"""Organization billing service main application module."""

from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from orgbilling.config import env
from orgbilling.config.logging import get_logger
from orgbilling.exceptions import OrgBillingError
from orgbilling.operations.billing import (
  OrganizationDirectory,
  PaymentProvider,
  UsageSnapshotProvider,
)
from orgbilling.routers import subscriptions_router, webhooks_router

logger = get_logger("orgbilling.api")


def _service_version() -> str:
  try:
    return pkg_version("orgbilling-service")
  except PackageNotFoundError:
    return "0.0.0"


def create_app(
  usage_provider: Optional[UsageSnapshotProvider] = None,
  org_directory: Optional[OrganizationDirectory] = None,
  payment_provider: Optional[PaymentProvider] = None,
) -> FastAPI:
  """
  Create the FastAPI app and include the routers.

  Args:
      usage_provider: Source of usage snapshots for downgrade checks
      org_directory: Lookup of organization names for Stripe customers
      payment_provider: Processor client; Stripe is built on first use if omitted

  Returns:
      FastAPI: The configured FastAPI application.
  """
  app = FastAPI(
    title="Organization Billing API",
    version=_service_version(),
    description="Subscription lifecycle and Stripe reconciliation",
  )

  app.state.current_time = datetime.now(timezone.utc)
  app.state.usage_provider = usage_provider
  app.state.org_directory = org_directory
  app.state.payment_provider = payment_provider

  @app.on_event("startup")
  async def startup_event():
    """Validate configuration on startup."""
    logger.info("Starting billing API...")

    errors = env.validate()
    if errors:
      logger.error(f"Configuration validation failed: {errors}")
      if env.is_production():
        # In production, fail fast on invalid configuration
        raise RuntimeError(f"Invalid configuration: {'; '.join(errors)}")
      logger.warning("Continuing with invalid configuration (non-production)")
    else:
      logger.info(f"Configuration validated for environment {env.ENVIRONMENT}")

    if app.state.usage_provider is None:
      logger.warning("No usage provider configured; downgrades will be rejected")

    logger.info("Billing API startup complete")

  @app.exception_handler(OrgBillingError)
  async def billing_exception_handler(
    request: Request, exc: OrgBillingError
  ) -> JSONResponse:
    """Translate billing errors into their HTTP status with structured details."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
      f"Billing request rejected: {exc.message}",
      extra={
        "action": exc.error_code,
        "request_id": getattr(request.state, "request_id", None),
        "metadata": exc.details,
      },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

  @app.exception_handler(Exception)
  async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler returning a generic error and request ID."""
    request_id = getattr(request.state, "request_id", None)
    logger.error("Unhandled exception", extra={"request_id": request_id}, exc_info=True)
    return JSONResponse(
      status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
      content={"detail": "Internal server error", "request_id": request_id},
    )

  @app.get("/status", include_in_schema=False)
  async def service_status():
    return {
      "status": "healthy",
      "environment": env.ENVIRONMENT,
      "started_at": app.state.current_time.isoformat(),
    }

  app.include_router(subscriptions_router)
  app.include_router(webhooks_router)

  return app


app = create_app()
