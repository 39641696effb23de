"""Interfaces the enclosing application implements for billing.

Usage counting and organization records live outside the billing core; it
only reads a point-in-time snapshot of consumption and an organization's
display name.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class UsageSnapshot:
  """Current resource consumption for an organization."""

  teams: int = 0
  members: int = 0
  standup_configs: int = 0
  standups_this_period: int = 0

  def counts(self) -> Dict[str, int]:
    """Counts keyed by the same resource names as ``Plan.resource_limits``."""
    return {
      "teams": self.teams,
      "members": self.members,
      "standup_configs": self.standup_configs,
      "standups_per_period": self.standups_this_period,
    }


class UsageSnapshotProvider(ABC):
  """Source of usage snapshots."""

  @abstractmethod
  def snapshot(self, org_id: str) -> UsageSnapshot:
    """Return current usage for ``org_id``.

    The result is a point-in-time read; nothing is reserved or locked.
    """
    pass


class OrganizationDirectory(ABC):
  """Lookup of organization display data."""

  @abstractmethod
  def get_name(self, org_id: str) -> Optional[str]:
    """Human-readable organization name, or None if unknown."""
    pass
