# =============================================================================
# tests/unit/test_portfolio_service.py
# Unit Tests for Portfolio, Project and Skill Operations
# =============================================================================

import pytest

from portfolio_core.errors import ValidationError
from portfolio_core.services import Provenance
from portfolio_core.services.data_service import DataService
from portfolio_core.services.portfolio_service import PortfolioService


@pytest.fixture
def api(router):
    return PortfolioService(router)


@pytest.fixture
def seeded_remote(remote):
    remote.seed("portfolios", [{"id": "p1", "user_id": "u1", "title": "Ada's work"}])
    remote.seed("projects", [
        {"id": "pr1", "portfolio_id": "p1", "title": "Forecasting dashboard",
         "description": "Hospital arrivals", "technologies": ["Python", "Streamlit"]},
        {"id": "pr2", "portfolio_id": "p1", "title": "Portfolio site", "technologies": ["React"]},
    ])
    remote.seed("skills", [{"id": "s1", "portfolio_id": "p1", "name": "SQL", "level": "beginner"}])
    return remote


class TestGetPortfolio:

    @pytest.mark.asyncio
    async def test_combines_projects_and_skills(self, api, monitor, seeded_remote):
        await monitor.check()

        result = await api.get_portfolio("u1")

        assert result.provenance == Provenance.REMOTE
        assert result.data["title"] == "Ada's work"
        assert {p["id"] for p in result.data["projects"]} == {"pr1", "pr2"}
        assert [s["name"] for s in result.data["skills"]] == ["SQL"]
        assert result.metadata["sources"] == {"portfolios": "remote", "projects": "remote", "skills": "remote"}

    @pytest.mark.asyncio
    async def test_weakest_source_wins(self, api, monitor, seeded_remote, cache):
        await monitor.check()
        await api.get_portfolio("u1")
        cache.invalidate("skills:")
        seeded_remote.reachable = False
        monitor.force_offline()

        result = await api.get_portfolio("u1")

        assert result.metadata["sources"]["portfolios"] == "cache"
        assert result.metadata["sources"]["skills"] == "local"
        assert result.provenance == Provenance.LOCAL
        assert result.stale is False

    @pytest.mark.asyncio
    async def test_unknown_user(self, api, monitor, seeded_remote):
        await monitor.check()

        result = await api.get_portfolio("nobody")

        assert result.success
        assert result.data is None


class TestWrites:

    @pytest.mark.asyncio
    async def test_add_skill_offline_is_queued(self, api, router):
        result = await api.add_skill({"portfolio_id": "p1", "name": "Python", "level": "expert"})

        assert result.provenance == Provenance.QUEUED
        assert router.pending_operations()[0].target_collection == "skills"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [
        {"name": "Python", "level": "guru"},
        {"name": "  ", "level": "expert"},
        {},
    ])
    async def test_add_skill_validation(self, api, router, data):
        with pytest.raises(ValidationError):
            await api.add_skill(data)
        assert router.pending_count == 0

    @pytest.mark.asyncio
    async def test_update_skill_checks_level(self, api):
        with pytest.raises(ValidationError):
            await api.update_skill("s1", {"level": "legendary"})

    @pytest.mark.asyncio
    async def test_project_lifecycle_online(self, api, monitor, remote):
        await monitor.check()

        created = await api.create_project({"portfolio_id": "p1", "title": "Thesis"})
        project_id = created.data["id"]
        await api.update_project(project_id, {"featured": True})
        await api.delete_project(project_id)

        assert created.provenance == Provenance.REMOTE
        assert remote.calls[-3:] == ["insert:projects", "update:projects", "delete:projects"]
        assert remote.rows("projects") == []

    @pytest.mark.asyncio
    async def test_create_project_requires_title(self, api):
        with pytest.raises(ValidationError):
            await api.create_project({"portfolio_id": "p1"})

    @pytest.mark.asyncio
    async def test_update_portfolio_requires_id(self, api):
        with pytest.raises(ValidationError):
            await api.update_portfolio({"title": "New title"})


class TestSearch:

    @pytest.mark.asyncio
    async def test_search_matches_text_and_lists(self, api, monitor, seeded_remote):
        await monitor.check()

        by_technology = await api.search("streamlit", type="projects")
        by_title = await api.search("SITE", type="projects")

        assert [p["id"] for p in by_technology.data] == ["pr1"]
        assert [p["id"] for p in by_title.data] == ["pr2"]
        assert by_title.metadata["total"] == 1

    @pytest.mark.asyncio
    async def test_empty_query_returns_everything(self, api, monitor, seeded_remote):
        await monitor.check()
        result = await api.search("", type="projects", filters={"portfolio_id": "p1"})
        assert len(result.data) == 2

    @pytest.mark.asyncio
    async def test_unknown_type(self, api):
        with pytest.raises(ValidationError):
            await api.search("x", type="users")


class TestDataService:

    @pytest.mark.asyncio
    async def test_generic_crud_and_dataframe(self, router, monitor):
        database = DataService(router)
        await monitor.check()

        inserted = await database.insert("certificates", {"name": "AWS Cloud Practitioner"})
        await database.update("certificates", inserted.data["id"], {"year": 2025})
        queried = await database.query("certificates", {"year": 2025})
        df = database.to_dataframe("certificates")

        assert [r["name"] for r in queried.data] == ["AWS Cloud Practitioner"]
        assert list(df["year"]) == [2025]

        await database.delete("certificates", inserted.data["id"])
        assert database.to_dataframe("certificates").empty

    @pytest.mark.asyncio
    async def test_insert_requires_data(self, router):
        with pytest.raises(ValidationError):
            await DataService(router).insert("certificates", {})
