# =============================================================================
# portfolio_core/services/analysis_service.py
# Rule-Based Portfolio Analysis and Recommendations
# =============================================================================
"""
Deterministic portfolio analysis.

Scores a portfolio (projects, skills, completeness, featured work), spots
skill gaps against a market demand table, and produces prioritized
recommendations. Identical input always gives identical output, so the
analysis works offline and is safe to cache.
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from portfolio_core.services.base_service import BaseService


class Priority(Enum):
    """Priority levels for recommendations."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_ORDER = {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}


class MarketPosition(Enum):
    BELOW_AVERAGE = "below_average"
    AVERAGE = "average"
    ABOVE_AVERAGE = "above_average"
    EXCELLENT = "excellent"


@dataclass(frozen=True)
class MarketSkill:
    """Market demand for a skill (demand and growth in percent)."""
    name: str
    category: str
    demand: int
    growth: int
    trending: bool = False


MARKET_SKILLS = (
    MarketSkill("Python", "technical", 95, 22, trending=True),
    MarketSkill("Machine Learning", "technical", 93, 35, trending=True),
    MarketSkill("Cloud Computing", "technical", 92, 30, trending=True),
    MarketSkill("TypeScript", "technical", 90, 28, trending=True),
    MarketSkill("Data Analysis", "technical", 89, 20, trending=True),
    MarketSkill("React", "technical", 88, 18, trending=True),
    MarketSkill("DevOps", "technical", 87, 25, trending=True),
    MarketSkill("SQL", "technical", 86, 10),
    MarketSkill("Cybersecurity", "technical", 84, 32, trending=True),
    MarketSkill("Communication", "soft", 82, 5),
    MarketSkill("UI/UX Design", "technical", 81, 15, trending=True),
    MarketSkill("Leadership", "soft", 78, 6),
    MarketSkill("Java", "technical", 76, 4),
)

# Skills that matter most for a department, checked before the market table
DEPARTMENT_FOCUS = {
    "computer science": ["Python", "Cloud Computing", "TypeScript", "DevOps"],
    "data science": ["Python", "Machine Learning", "SQL", "Data Analysis"],
    "design": ["UI/UX Design", "Communication", "React"],
    "business": ["Data Analysis", "Communication", "Leadership", "SQL"],
}

MAX_SKILL_RECOMMENDATIONS = 5
SKILL_GAP_DEMAND = 85
TRENDING_DEMAND = 80
ADVANCED_LEVELS = {"advanced", "expert"}


@dataclass
class SkillRecommendation:
    skill: str
    reason: str
    priority: Priority
    market_demand: int

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        return data


@dataclass
class Recommendation:
    """A single actionable recommendation."""
    type: str
    title: str
    description: str
    priority: Priority
    action_items: List[str] = field(default_factory=list)
    estimated_impact: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        return data


def _names(skills: List[Dict[str, Any]]) -> List[str]:
    return [str(s.get("name", "")).strip().lower() for s in skills if s.get("name")]


def _list(portfolio: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    value = portfolio.get(key) or []
    return [item for item in value if isinstance(item, dict)]


def calculate_overall_score(portfolio: Dict[str, Any]) -> int:
    """
    Portfolio score out of 100.

    Projects 40 (8 each), skills 30 (3 each), completeness 20
    (description, contact, experience, education at 5 each) and
    featured projects 10 (5 each).
    """
    projects = _list(portfolio, "projects")
    skills = _list(portfolio, "skills")

    score = min(40, len(projects) * 8)
    score += min(30, len(skills) * 3)

    completeness = 0
    if len(portfolio.get("description") or "") > 50:
        completeness += 5
    if portfolio.get("contact"):
        completeness += 5
    if _list(portfolio, "experience"):
        completeness += 5
    if _list(portfolio, "education"):
        completeness += 5
    score += completeness

    featured = sum(1 for p in projects if p.get("featured"))
    score += min(10, featured * 5)
    return min(100, score)


def calculate_industry_readiness(portfolio: Dict[str, Any]) -> int:
    skills = _list(portfolio, "skills")
    technical = sum(1 for s in skills if s.get("category") == "technical")
    soft = sum(1 for s in skills if s.get("category") == "soft")

    readiness = min(40, technical * 8)
    readiness += min(30, len(_list(portfolio, "projects")) * 6)
    readiness += min(20, len(_list(portfolio, "experience")) * 10)
    readiness += min(10, soft * 5)
    return min(100, readiness)


def market_position(score: int) -> Dict[str, Any]:
    if score >= 85:
        percentile, position = 90, MarketPosition.EXCELLENT
    elif score >= 75:
        percentile, position = 75, MarketPosition.ABOVE_AVERAGE
    elif score >= 60:
        percentile, position = 60, MarketPosition.AVERAGE
    else:
        percentile, position = 30, MarketPosition.BELOW_AVERAGE
    return {
        "percentile": percentile,
        "market_position": position.value,
        "comparison": f"Your portfolio ranks above {percentile}% of comparable portfolios",
    }


class AnalysisService(BaseService):
    """
    Rule-based portfolio analysis.

    Usage:
        service = AnalysisService()
        report = service.analyze_portfolio(portfolio, user={"department": "Data Science"})
        report["overall_score"]
    """

    name = "ai"

    def __init__(self, market: Optional[List[MarketSkill]] = None):
        super().__init__()
        self.market = tuple(market) if market is not None else MARKET_SKILLS
        self._analyses = 0

    def analyze_portfolio(
        self,
        portfolio: Dict[str, Any],
        user: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Full analysis of a portfolio.

        Args:
            portfolio: Portfolio record with ``projects``, ``skills``,
                ``experience`` and ``education`` lists
            user: Owner profile (``department`` is used for skill focus)

        Returns:
            Dict with overall_score, industry_readiness, strengths,
            improvements, skill_gaps, recommendations and competitive_analysis
        """
        user = user or {}
        score = calculate_overall_score(portfolio)
        self._analyses += 1
        self.logger.debug(f"Analyzed portfolio {portfolio.get('id')}: score {score}")
        return {
            "overall_score": score,
            "industry_readiness": calculate_industry_readiness(portfolio),
            "strengths": self.identify_strengths(portfolio),
            "improvements": self.identify_improvements(portfolio),
            "skill_gaps": self.identify_skill_gaps(_list(portfolio, "skills")),
            "recommendations": [r.to_dict() for r in self.generate_recommendations(portfolio, user)],
            "competitive_analysis": market_position(score),
        }

    def identify_strengths(self, portfolio: Dict[str, Any]) -> List[str]:
        projects = _list(portfolio, "projects")
        skills = _list(portfolio, "skills")
        strengths = []
        if len(projects) >= 3:
            strengths.append("Strong project portfolio with multiple completed projects")
        if sum(1 for s in skills if s.get("level") in ADVANCED_LEVELS) >= 3:
            strengths.append("Advanced proficiency in multiple technical skills")
        if any(p.get("github_url") and p.get("live_url") for p in projects):
            strengths.append("Projects include both source code and live demonstrations")
        if _list(portfolio, "experience"):
            strengths.append("Relevant work experience documented")
        return strengths

    def identify_improvements(self, portfolio: Dict[str, Any]) -> List[str]:
        projects = _list(portfolio, "projects")
        skills = _list(portfolio, "skills")
        improvements = []
        if len(projects) < 3:
            improvements.append("Add more projects to demonstrate breadth of skills")
        if not any(p.get("featured") for p in projects):
            improvements.append("Feature your best projects to highlight key achievements")
        if sum(1 for s in skills if s.get("verified")) < 3:
            improvements.append("Get skill endorsements or certifications to validate expertise")
        if len(portfolio.get("description") or "") < 100:
            improvements.append("Add a compelling personal statement and career objective")
        return improvements

    def identify_skill_gaps(self, skills: List[Dict[str, Any]]) -> List[str]:
        """High-demand market skills the portfolio does not list (at most five)."""
        have = set(_names(skills))
        gaps = [m.name for m in self.market if m.demand > SKILL_GAP_DEMAND and m.name.lower() not in have]
        return gaps[:MAX_SKILL_RECOMMENDATIONS]

    def get_skill_recommendations(
        self,
        skills: List[Dict[str, Any]],
        department: Optional[str] = None,
    ) -> List[SkillRecommendation]:
        """
        Trending skills worth learning next, department focus first.

        Args:
            skills: Current skill records (``name`` is compared case-insensitively)
            department: Owner's department, e.g. "Computer Science"

        Returns:
            Up to five SkillRecommendation objects, most relevant first
        """
        have = set(_names(skills))
        focus = [name.lower() for name in DEPARTMENT_FOCUS.get((department or "").strip().lower(), [])]

        candidates = [
            m for m in self.market
            if m.name.lower() not in have and (m.trending and m.demand > TRENDING_DEMAND or m.name.lower() in focus)
        ]
        # Department focus first, then by demand; sort is stable for equal keys
        candidates.sort(key=lambda m: (m.name.lower() not in focus, -m.demand))

        recommendations = []
        for skill in candidates[:MAX_SKILL_RECOMMENDATIONS]:
            if skill.demand > 90:
                priority = Priority.HIGH
            elif skill.demand > 85:
                priority = Priority.MEDIUM
            else:
                priority = Priority.LOW
            if skill.name.lower() in focus:
                reason = f"{skill.name} is a core skill for {department} graduates"
            else:
                reason = f"{skill.name} has {skill.demand}% market demand and is growing by {skill.growth}% annually"
            recommendations.append(SkillRecommendation(skill.name, reason, priority, skill.demand))
        return recommendations

    def generate_recommendations(
        self,
        portfolio: Dict[str, Any],
        user: Optional[Dict[str, Any]] = None,
    ) -> List[Recommendation]:
        """Skill, project and portfolio recommendations, highest priority first."""
        user = user or {}
        skills = _list(portfolio, "skills")
        projects = _list(portfolio, "projects")
        recommendations: List[Recommendation] = []

        for rec in self.get_skill_recommendations(skills, user.get("department")):
            recommendations.append(Recommendation(
                type="skill",
                title=f"Learn {rec.skill}",
                description=rec.reason,
                priority=rec.priority,
                action_items=[f"Complete an introductory {rec.skill} course",
                              f"Use {rec.skill} in a portfolio project"],
                estimated_impact=rec.market_demand,
            ))

        if not projects:
            recommendations.append(Recommendation(
                type="project",
                title="Add Your First Project",
                description="Projects are the strongest evidence of your skills.",
                priority=Priority.HIGH,
                action_items=["Pick a course or personal project", "Describe the problem and your solution"],
                estimated_impact=90,
            ))
        elif "react" in _names(skills) and not any(
            "backend" in str(t).lower() for p in projects for t in (p.get("technologies") or [])
        ):
            recommendations.append(Recommendation(
                type="project",
                title="Build a Full-Stack Application",
                description="Pair your frontend work with a backend to show end-to-end capability.",
                priority=Priority.HIGH,
                action_items=["Design a database schema", "Implement a REST API", "Deploy it"],
                estimated_impact=85,
            ))

        if len(portfolio.get("description") or "") < 100:
            recommendations.append(Recommendation(
                type="improvement",
                title="Enhance Portfolio Description",
                description="Add a personal statement that highlights your strengths and goals.",
                priority=Priority.MEDIUM,
                action_items=["Write a 2-3 paragraph personal statement"],
                estimated_impact=65,
            ))

        if projects and not any(p.get("featured") for p in projects):
            recommendations.append(Recommendation(
                type="improvement",
                title="Feature Your Best Projects",
                description="Featured projects are the first thing reviewers see.",
                priority=Priority.MEDIUM,
                action_items=["Select 2-3 projects", "Mark them as featured"],
                estimated_impact=70,
            ))

        recommendations.sort(key=lambda r: PRIORITY_ORDER[r.priority], reverse=True)
        return recommendations

    def metrics(self) -> Dict[str, Any]:
        return {"analyses": self._analyses, "market_skills": len(self.market)}
