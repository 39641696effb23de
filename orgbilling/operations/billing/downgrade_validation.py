"""Downgrade eligibility checks against current resource usage."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ...config import env
from ...logger import get_logger
from ...models.billing import Plan
from .usage import UsageSnapshotProvider

logger = get_logger(__name__)


class ResourceType(str, Enum):
  TEAMS = "teams"
  MEMBERS = "members"
  STANDUP_CONFIGS = "standup_configs"
  STANDUPS_PER_PERIOD = "standups_per_period"


# (noun, remedy verb, unit) used in user-facing messages
RESOURCE_WORDING: Dict[ResourceType, tuple] = {
  ResourceType.TEAMS: ("teams", "delete", "team(s)"),
  ResourceType.MEMBERS: ("team members", "remove", "member(s)"),
  ResourceType.STANDUP_CONFIGS: (
    "standup configurations",
    "delete",
    "configuration(s)",
  ),
  ResourceType.STANDUPS_PER_PERIOD: (
    "standups this billing period",
    "cancel",
    "standup(s)",
  ),
}


@dataclass(frozen=True)
class DowngradeIssue:
  """A resource whose usage conflicts with, or approaches, a target limit."""

  type: ResourceType
  current: int
  new_limit: int
  message: str

  def to_dict(self) -> Dict[str, Any]:
    return {
      "type": self.type.value,
      "current": self.current,
      "new_limit": self.new_limit,
      "message": self.message,
    }


@dataclass
class DowngradeAssessment:
  """Outcome of a downgrade check. Computed per request, never cached."""

  can_downgrade: bool
  blockers: List[DowngradeIssue] = field(default_factory=list)
  warnings: List[DowngradeIssue] = field(default_factory=list)

  def to_dict(self) -> Dict[str, Any]:
    return {
      "can_downgrade": self.can_downgrade,
      "blockers": [b.to_dict() for b in self.blockers],
      "warnings": [w.to_dict() for w in self.warnings],
    }


def _blocker_message(resource: ResourceType, current: int, limit: int, plan_name: str):
  noun, verb, unit = RESOURCE_WORDING[resource]
  return (
    f"You have {current} {noun} but the {plan_name} allows only {limit}. "
    f"Please {verb} {current - limit} {unit} before downgrading."
  )


def _warning_message(resource: ResourceType, current: int, limit: int, plan_name: str):
  noun, _, _ = RESOURCE_WORDING[resource]
  return (
    f"You have {current} {noun}, close to the {plan_name} limit of {limit}."
  )


class DowngradeValidator:
  """Compares an organization's usage with a target plan's limits.

  The check is a point-in-time read. Usage may grow between validation and
  the processor call; enforcement of limits on growth happens elsewhere.
  """

  def __init__(
    self,
    usage_provider: UsageSnapshotProvider,
    near_limit_ratio: Optional[float] = None,
  ):
    self.usage_provider = usage_provider
    self.near_limit_ratio = (
      env.BILLING_NEAR_LIMIT_RATIO if near_limit_ratio is None else near_limit_ratio
    )

  def validate(self, org_id: str, target_plan: Plan) -> DowngradeAssessment:
    """Assess whether ``org_id`` fits within ``target_plan``.

    Args:
        org_id: Organization to check
        target_plan: Plan the organization wants to move to

    Returns:
        DowngradeAssessment with blockers in resource order
    """
    usage = self.usage_provider.snapshot(org_id).counts()
    plan_name = target_plan.display_name or target_plan.name
    blockers: List[DowngradeIssue] = []
    warnings: List[DowngradeIssue] = []

    for key, limit in target_plan.resource_limits().items():
      # NULL or non-positive limit means unlimited
      if limit is None or limit <= 0:
        continue

      resource = ResourceType(key)
      current = usage.get(key, 0)

      if current > limit:
        blockers.append(
          DowngradeIssue(
            type=resource,
            current=current,
            new_limit=limit,
            message=_blocker_message(resource, current, limit, plan_name),
          )
        )
      elif self.near_limit_ratio and current >= limit * self.near_limit_ratio:
        warnings.append(
          DowngradeIssue(
            type=resource,
            current=current,
            new_limit=limit,
            message=_warning_message(resource, current, limit, plan_name),
          )
        )

    assessment = DowngradeAssessment(
      can_downgrade=not blockers, blockers=blockers, warnings=warnings
    )

    logger.debug(
      f"Downgrade validation for org {org_id} to {target_plan.key}: "
      f"can_downgrade={assessment.can_downgrade}",
      extra={
        "org_id": org_id,
        "plan_key": target_plan.key,
        "metadata": {
          "blockers": len(blockers),
          "warnings": len(warnings),
        },
      },
    )
    return assessment
