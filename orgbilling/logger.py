"""
Unified logging entry point.

Importing this module configures structured logging once for the process
and exposes the helpers every billing module logs through.
"""

import logging

from .config import env
from .config.logging import (
  get_logger,
  log_billing_event,
  log_error,
  setup_logging,
)

setup_logging()

logger = get_logger("orgbilling")
api_logger = get_logger("orgbilling.api")

if env.is_development():
  logging.getLogger("urllib3").setLevel(logging.WARNING)
  logging.getLogger("httpx").setLevel(logging.WARNING)

__all__ = [
  "api_logger",
  "get_logger",
  "log_billing_event",
  "log_error",
  "logger",
]
