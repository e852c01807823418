"""
Unit Tests for Goal Extraction and Verification
"""
import json

import pytest

from toolstream.modules.orchestrator.goals import (
    Goal,
    GoalExtractor,
    GoalStatus,
    GoalVerifier,
    VerificationContext,
    all_of,
    dependency_present,
    file_contains,
    file_exists,
)
from toolstream.modules.orchestrator.session import AgentSession
from toolstream.services.content_store import InMemoryContentStore


class TestGoalExtractor:
    """Test splitting a request into goals"""

    def test_single_request_is_one_goal(self):
        goals = GoalExtractor().extract("Make the   header\nsticky")
        assert len(goals) == 1
        assert goals[0].id == "goal-1"
        assert goals[0].description == "Make the header sticky"
        assert goals[0].check is None

    def test_bullets_and_numbers(self):
        request = """Please do the following:
- create src/App.tsx with a counter
* style it in `src/App.css`
3) add a README"""
        goals = GoalExtractor().extract(request)

        assert [g.id for g in goals] == ["goal-1", "goal-2", "goal-3"]
        assert goals[0].check.label == "file_exists:src/App.tsx"
        assert goals[1].check.label == "file_exists:src/App.css"
        assert goals[2].check is None

    def test_multiple_paths_combined(self):
        goals = GoalExtractor().extract("create src/main.ts and index.html")
        assert goals[0].check.label == "file_exists:src/main.ts & file_exists:index.html"

    def test_find_paths_dedupes(self):
        paths = GoalExtractor().find_paths("edit a/b.py then a/b.py again, and `config.yaml`")
        assert paths == ["a/b.py", "config.yaml"]


class TestChecks:
    """Test the built-in goal checks"""

    def _ctx(self, files=None, store=True):
        return VerificationContext(
            session=AgentSession(request="r"),
            store=InMemoryContentStore(files) if store else None,
        )

    @pytest.mark.asyncio
    async def test_file_exists(self):
        ctx = self._ctx({"src/a.ts": "x"})
        assert await file_exists("src/a.ts")(ctx) is True
        assert await file_exists("./src/a.ts")(ctx) is True
        assert await file_exists("src/b.ts")(ctx) is False

    @pytest.mark.asyncio
    async def test_no_store_is_ambiguous(self):
        assert await file_exists("a.ts")(self._ctx(store=False)) is None

    @pytest.mark.asyncio
    async def test_file_contains(self):
        ctx = self._ctx({"a.ts": "export const count = 1"})
        assert await file_contains("a.ts", "count")(ctx) is True
        assert await file_contains("a.ts", "total")(ctx) is False
        assert await file_contains("missing.ts", "x")(ctx) is False

    @pytest.mark.asyncio
    async def test_dependency_present(self):
        ctx = self._ctx({"package.json": json.dumps({"dependencies": {"axios": "^1.6.0"}})})
        assert await dependency_present("axios")(ctx) is True
        assert await dependency_present("react")(ctx) is False

    @pytest.mark.asyncio
    async def test_all_of(self):
        ctx = self._ctx({"a.ts": ""})
        assert await all_of(file_exists("a.ts"))(ctx) is True
        assert await all_of(file_exists("a.ts"), file_exists("b.ts"))(ctx) is False
        assert await all_of(file_exists("a.ts"), lambda c: None)(ctx) is None


class TestGoalVerifier:
    """Test verification reports"""

    @pytest.mark.asyncio
    async def test_mixed_report(self):
        session = AgentSession(request="r")
        session.declared_goals.add("goal-3")
        store = InMemoryContentStore({"src/App.tsx": "app"})
        goals = [
            Goal("goal-1", "create the app", file_exists("src/App.tsx")),
            Goal("goal-2", "add styles", file_exists("src/App.css")),
            Goal("goal-3", "explain it"),
            Goal("goal-4", "summarize it"),
        ]

        report = await GoalVerifier().verify(goals, VerificationContext(session, store))

        assert [g.id for g in report.satisfied] == ["goal-1", "goal-3"]
        assert [g.id for g in report.unmet] == ["goal-2", "goal-4"]
        assert not report.all_satisfied
        data = report.to_dict()
        assert data["satisfied"] == 2
        assert data["total"] == 4
        assert data["goals"][2]["check"] == "mark_goal_complete"

    @pytest.mark.asyncio
    async def test_raising_check_is_ambiguous(self):
        def broken(ctx):
            raise RuntimeError("store offline")

        goal = Goal("goal-1", "x", broken)
        report = await GoalVerifier().verify([goal], VerificationContext(AgentSession(request="r")))

        assert goal.status == GoalStatus.AMBIGUOUS
        assert "store offline" in goal.detail
        assert report.unmet == [goal]
        assert not report.all_satisfied

    @pytest.mark.asyncio
    async def test_all_satisfied(self):
        goal = Goal("goal-1", "x", lambda ctx: True)
        report = await GoalVerifier().verify([goal], VerificationContext(AgentSession(request="r")))
        assert report.all_satisfied

    @pytest.mark.asyncio
    async def test_empty_goal_list_is_not_satisfied(self):
        report = await GoalVerifier().verify([], VerificationContext(AgentSession(request="r")))
        assert not report.all_satisfied
