# =============================================================================
# portfolio_core/services/portfolio_service.py
# Portfolio Domain Operations (portfolios, projects, skills)
# =============================================================================
"""
Portfolio API on top of the fallback router.

Collections:
    portfolios  one per user (user_id)
    projects    portfolio_id, title, description, technologies, featured
    skills      portfolio_id, name, level, category

Every method returns the router's Result, so callers can tell whether
data came from the remote service, the cache or the local copy.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from portfolio_core.errors import ValidationError
from portfolio_core.offline.fallback_router import FallbackRouter, OperationKind
from portfolio_core.services.base_service import BaseService, Provenance, Result, ServiceHealth

PORTFOLIOS = "portfolios"
PROJECTS = "projects"
SKILLS = "skills"

SKILL_LEVELS = ("beginner", "intermediate", "advanced", "expert")
SEARCH_FIELDS = {
    PORTFOLIOS: ("title", "description"),
    PROJECTS: ("title", "description", "category", "technologies"),
    SKILLS: ("name", "category"),
}

# Weakest provenance wins when several reads are combined
PROVENANCE_RANK = {
    Provenance.REMOTE: 0,
    Provenance.CACHE: 1,
    Provenance.LOCAL: 2,
    Provenance.QUEUED: 3,
}


def _text_match(record: Dict[str, Any], fields: tuple, needle: str) -> bool:
    for name in fields:
        value = record.get(name)
        if isinstance(value, (list, tuple)):
            value = " ".join(str(v) for v in value)
        if value is not None and needle in str(value).lower():
            return True
    return False


class PortfolioService(BaseService):
    """
    Portfolio, project and skill operations.

    Usage:
        api = PortfolioService(router)
        result = await api.add_skill({"portfolio_id": pid, "name": "SQL", "level": "beginner"})
        result.provenance    # remote, or queued while offline
    """

    name = "api"

    def __init__(self, router: FallbackRouter):
        super().__init__()
        self.router = router

    # =========================================================================
    # PORTFOLIOS
    # =========================================================================

    async def get_portfolio(self, user_id: Optional[str] = None) -> Result:
        """
        A user's portfolio with its projects and skills.

        Args:
            user_id: Owner id; when omitted the first portfolio is returned

        Returns:
            Result whose data is the portfolio dict (with ``projects`` and
            ``skills`` lists) or None when the user has none
        """
        filters = {"user_id": user_id} if user_id else {}
        portfolios = await self.router.perform_operation(PORTFOLIOS, OperationKind.READ, filters)
        if not portfolios.data:
            return Result.ok(None, provenance=portfolios.provenance, stale=portfolios.stale)

        portfolio = dict(portfolios.data[0])
        projects = await self.router.perform_operation(PROJECTS, OperationKind.READ, {"portfolio_id": portfolio["id"]})
        skills = await self.router.perform_operation(SKILLS, OperationKind.READ, {"portfolio_id": portfolio["id"]})
        portfolio["projects"] = list(projects.data or [])
        portfolio["skills"] = list(skills.data or [])

        parts = [portfolios, projects, skills]
        provenance = max((p.provenance for p in parts), key=lambda p: PROVENANCE_RANK[p])
        return Result.ok(
            portfolio,
            provenance=provenance,
            stale=any(p.stale for p in parts),
            metadata={"sources": {
                PORTFOLIOS: portfolios.provenance.value,
                PROJECTS: projects.provenance.value,
                SKILLS: skills.provenance.value,
            }},
        )

    async def update_portfolio(self, data: Dict[str, Any]) -> Result:
        if not data or data.get("id") is None:
            raise ValidationError("Portfolio update requires an 'id'", field="id")
        return await self.router.perform_operation(PORTFOLIOS, OperationKind.UPDATE, data)

    # =========================================================================
    # PROJECTS
    # =========================================================================

    async def create_project(self, data: Dict[str, Any]) -> Result:
        if not data or not str(data.get("title") or "").strip():
            raise ValidationError("Project title is required", field="title")
        return await self.router.perform_operation(PROJECTS, OperationKind.CREATE, data)

    async def update_project(self, id: Any, data: Optional[Dict[str, Any]] = None) -> Result:
        return await self.router.perform_operation(PROJECTS, OperationKind.UPDATE, {**(data or {}), "id": id})

    async def delete_project(self, id: Any) -> Result:
        return await self.router.perform_operation(PROJECTS, OperationKind.DELETE, {"id": id})

    # =========================================================================
    # SKILLS
    # =========================================================================

    async def add_skill(self, data: Dict[str, Any]) -> Result:
        if not data or not str(data.get("name") or "").strip():
            raise ValidationError("Skill name is required", field="name")
        self._check_level(data.get("level"))
        return await self.router.perform_operation(SKILLS, OperationKind.CREATE, data)

    async def update_skill(self, id: Any, data: Optional[Dict[str, Any]] = None) -> Result:
        data = dict(data or {})
        if "level" in data:
            self._check_level(data["level"])
        return await self.router.perform_operation(SKILLS, OperationKind.UPDATE, {**data, "id": id})

    async def delete_skill(self, id: Any) -> Result:
        return await self.router.perform_operation(SKILLS, OperationKind.DELETE, {"id": id})

    def _check_level(self, level: Any) -> None:
        if level not in SKILL_LEVELS:
            raise ValidationError(
                "Invalid skill level",
                field="level",
                expected=", ".join(SKILL_LEVELS),
                actual=str(level),
            )

    # =========================================================================
    # SEARCH
    # =========================================================================

    async def search(
        self,
        query: str,
        type: str = PORTFOLIOS,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Result:
        """
        Case-insensitive text search over one collection.

        Args:
            query: Text to look for in the collection's searchable fields
            type: "portfolios", "projects" or "skills"
            filters: Extra equality filters applied before the text match
        """
        if type not in SEARCH_FIELDS:
            raise ValidationError(
                f"Cannot search '{type}'",
                field="type",
                expected=", ".join(SEARCH_FIELDS),
                actual=str(type),
            )
        result = await self.router.perform_operation(type, OperationKind.READ, filters or {})
        needle = (query or "").strip().lower()
        rows: List[Dict[str, Any]] = list(result.data or [])
        if needle:
            rows = [r for r in rows if _text_match(r, SEARCH_FIELDS[type], needle)]
        return Result.ok(
            rows,
            provenance=result.provenance,
            stale=result.stale,
            metadata={"query": query, "type": type, "total": len(rows)},
        )

    def health(self) -> ServiceHealth:
        return self.router.health()
