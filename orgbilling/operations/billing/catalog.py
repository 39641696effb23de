"""Plan catalog lookup used by the subscription commands."""

from abc import ABC, abstractmethod
from typing import List, Optional

from sqlalchemy.orm import Session

from ...models.billing import Plan


class PlanCatalog(ABC):
  """Read-only view over plan definitions."""

  @abstractmethod
  def find_by_key(self, key: str) -> Optional[Plan]:
    pass

  @abstractmethod
  def list_active(self) -> List[Plan]:
    pass


class SqlPlanCatalog(PlanCatalog):
  """Catalog backed by the ``billing_plans`` table."""

  def __init__(self, session: Session):
    self.session = session

  def find_by_key(self, key: str) -> Optional[Plan]:
    return Plan.get_by_key(key, self.session)

  def list_active(self) -> List[Plan]:
    """Active, purchasable plans in display order."""
    return [plan for plan in Plan.list_active(self.session) if plan.is_purchasable]
