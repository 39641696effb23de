"""Organization billing service: subscription lifecycle and processor reconciliation."""
