# =============================================================================
# tests/unit/test_analysis_service.py
# Unit Tests for Portfolio Scoring and Recommendations
# =============================================================================

import pytest

from portfolio_core.services.analysis_service import (
    AnalysisService,
    Priority,
    calculate_industry_readiness,
    calculate_overall_score,
    market_position,
)


@pytest.fixture
def service():
    return AnalysisService()


@pytest.fixture
def portfolio():
    return {
        "id": "p1",
        "description": "Final-year data science student building reproducible analysis tools.",
        "contact": {"email": "student@uni.edu"},
        "projects": [
            {"title": "Forecasting dashboard", "featured": True, "technologies": ["Python", "pandas"]},
            {"title": "Portfolio site", "technologies": ["React"]},
        ],
        "skills": [
            {"name": "Python", "level": "advanced", "category": "technical"},
            {"name": "SQL", "level": "intermediate", "category": "technical"},
            {"name": "React", "level": "beginner", "category": "technical"},
            {"name": "Communication", "level": "advanced", "category": "soft"},
        ],
    }


class TestScoring:

    def test_overall_score(self, portfolio):
        # 2 projects (16) + 4 skills (12) + description and contact (10) + 1 featured (5)
        assert calculate_overall_score(portfolio) == 43

    def test_score_components_are_capped(self):
        portfolio = {
            "description": "x" * 120,
            "contact": {"email": "a@b.c"},
            "experience": [{"role": "Intern"}],
            "education": [{"degree": "BSc"}],
            "projects": [{"featured": True}] * 10,
            "skills": [{"name": f"s{n}"} for n in range(20)],
        }
        assert calculate_overall_score(portfolio) == 100

    def test_empty_portfolio(self):
        assert calculate_overall_score({}) == 0
        assert calculate_industry_readiness({}) == 0

    def test_industry_readiness(self, portfolio):
        # 3 technical (24) + 2 projects (12) + no experience + 1 soft (5)
        assert calculate_industry_readiness(portfolio) == 41

    @pytest.mark.parametrize("score,position", [
        (90, "excellent"),
        (85, "excellent"),
        (80, "above_average"),
        (60, "average"),
        (59, "below_average"),
    ])
    def test_market_position(self, score, position):
        assert market_position(score)["market_position"] == position


class TestSkillRecommendations:

    def test_department_focus_first(self, service):
        recommendations = service.get_skill_recommendations([], "Data Science")

        assert [r.skill for r in recommendations] == [
            "Python", "Machine Learning", "Data Analysis", "SQL", "Cloud Computing",
        ]
        assert recommendations[0].priority == Priority.HIGH
        assert recommendations[3].priority == Priority.MEDIUM

    def test_owned_skills_are_skipped(self, service):
        recommendations = service.get_skill_recommendations([{"name": "python"}])

        names = [r.skill for r in recommendations]
        assert "Python" not in names
        assert names == ["Machine Learning", "Cloud Computing", "TypeScript", "Data Analysis", "React"]

    def test_at_most_five(self, service):
        assert len(service.get_skill_recommendations([], "Computer Science")) == 5

    def test_skill_gaps(self, service, portfolio):
        gaps = service.identify_skill_gaps(portfolio["skills"])
        assert gaps == ["Machine Learning", "Cloud Computing", "TypeScript", "Data Analysis", "DevOps"]


class TestAnalysis:

    def test_analyze_portfolio(self, service, portfolio):
        report = service.analyze_portfolio(portfolio, {"department": "Data Science"})

        assert report["overall_score"] == 43
        assert report["competitive_analysis"]["market_position"] == "below_average"
        assert "Add more projects to demonstrate breadth of skills" in report["improvements"]
        assert report["recommendations"][0]["priority"] == "high"
        assert service.metrics()["analyses"] == 1

    def test_analysis_is_deterministic(self, service, portfolio):
        assert service.analyze_portfolio(portfolio) == service.analyze_portfolio(portfolio)

    def test_first_project_recommended_when_none(self, service):
        recommendations = service.generate_recommendations({"skills": []})
        assert "Add Your First Project" in [r.title for r in recommendations]

    def test_full_stack_suggested_for_frontend_only(self, service, portfolio):
        titles = [r.title for r in service.generate_recommendations(portfolio)]
        assert "Build a Full-Stack Application" in titles

    def test_sorted_by_priority(self, service, portfolio):
        order = {"high": 3, "medium": 2, "low": 1}
        priorities = [order[r.priority.value] for r in service.generate_recommendations(portfolio)]
        assert priorities == sorted(priorities, reverse=True)

    def test_strengths(self, service, portfolio):
        portfolio["experience"] = [{"role": "Data intern"}]
        assert "Relevant work experience documented" in service.identify_strengths(portfolio)
