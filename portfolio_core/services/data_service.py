# =============================================================================
# portfolio_core/services/data_service.py
# Data Service - Generic Collection CRUD through the Fallback Router
# =============================================================================

from __future__ import annotations
from typing import Any, Dict, Optional

import pandas as pd

from portfolio_core.errors import ValidationError
from portfolio_core.offline.fallback_router import FallbackRouter, OperationKind
from portfolio_core.services.base_service import BaseService, Result, ServiceHealth


class DataService(BaseService):
    """
    Service for raw collection operations.

    Every call goes through the fallback router, so it works offline and
    carries provenance like any other read or write.

    Usage:
        service = DataService(router)
        result = await service.query("skills", {"portfolio_id": pid})
        df = service.to_dataframe("skills")
    """

    name = "database"

    def __init__(self, router: FallbackRouter):
        super().__init__()
        self.router = router

    async def query(self, table: str, filters: Optional[Dict[str, Any]] = None) -> Result:
        return await self.router.perform_operation(table, OperationKind.READ, filters or {})

    async def insert(self, table: str, data: Dict[str, Any]) -> Result:
        self._require_dict(data)
        return await self.router.perform_operation(table, OperationKind.CREATE, data)

    async def update(self, table: str, id: Any, data: Optional[Dict[str, Any]] = None) -> Result:
        changes = dict(data or {})
        changes["id"] = id
        return await self.router.perform_operation(table, OperationKind.UPDATE, changes)

    async def delete(self, table: str, id: Any) -> Result:
        return await self.router.perform_operation(table, OperationKind.DELETE, {"id": id})

    def to_dataframe(self, table: str, filters: Optional[Dict[str, Any]] = None) -> pd.DataFrame:
        """Local copy of a collection as a DataFrame (no remote call)."""
        return self.router.local_db.to_dataframe(table, filters)

    def _require_dict(self, data: Any) -> None:
        if not isinstance(data, dict) or not data:
            raise ValidationError("Record data must be a non-empty dict", field="data")

    def health(self) -> ServiceHealth:
        return self.router.health()

    async def initialize(self) -> None:
        await self.router.initialize()

    async def reset(self) -> None:
        await self.router.reset()

    def metrics(self) -> Dict[str, Any]:
        return self.router.stats()
