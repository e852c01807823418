"""
Goals - discrete units of the user's request that must hold before a
session may terminate successfully.

A goal either carries a check (evaluated against the workspace) or is
satisfied when the model declares it done through the built-in
mark_goal_complete tool.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import inspect
import re

from pydantic import BaseModel, Field

from toolstream.core.exceptions import GoalVerificationError
from toolstream.core.logging_config import logger
from toolstream.modules.orchestrator.session import AgentSession
from toolstream.services.content_store import ContentStore
from toolstream.services.package_manifest import PackageManifest


MARK_GOAL_COMPLETE = "mark_goal_complete"


class GoalStatus(str, Enum):
    PENDING = "pending"
    SATISFIED = "satisfied"
    UNMET = "unmet"
    AMBIGUOUS = "ambiguous"


@dataclass
class VerificationContext:
    session: AgentSession
    store: Optional[ContentStore] = None


# True / False, or None when the check cannot tell
GoalCheck = Callable[[VerificationContext], Union[Optional[bool], Awaitable[Optional[bool]]]]


@dataclass
class Goal:
    id: str
    description: str
    check: Optional[GoalCheck] = None
    status: GoalStatus = GoalStatus.PENDING
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "check": getattr(self.check, "label", None) if self.check else MARK_GOAL_COMPLETE,
            "detail": self.detail,
        }


class MarkGoalCompleteArgs(BaseModel):
    goal_id: str = Field(..., description="Id of the goal, e.g. goal-1")
    summary: str = Field("", description="What was done to satisfy it")


# ========== Checks ==========

def _labelled(check, label: str):
    check.label = label
    return check


def file_exists(path: str) -> GoalCheck:
    async def check(ctx: VerificationContext) -> Optional[bool]:
        if ctx.store is None:
            return None
        return await ctx.store.exists(path)
    return _labelled(check, f"file_exists:{path}")


def file_contains(path: str, text: str) -> GoalCheck:
    async def check(ctx: VerificationContext) -> Optional[bool]:
        if ctx.store is None:
            return None
        content = await ctx.store.read_optional(path)
        return content is not None and text in content
    return _labelled(check, f"file_contains:{path}")


def dependency_present(name: str) -> GoalCheck:
    async def check(ctx: VerificationContext) -> Optional[bool]:
        if ctx.store is None:
            return None
        return await PackageManifest(ctx.store).has_dependency(name)
    return _labelled(check, f"dependency_present:{name}")


def all_of(*checks: GoalCheck) -> GoalCheck:
    async def check(ctx: VerificationContext) -> Optional[bool]:
        answers = []
        for inner in checks:
            answer = inner(ctx)
            if inspect.isawaitable(answer):
                answer = await answer
            answers.append(answer)
        if any(a is False for a in answers):
            return False
        if any(a is None for a in answers):
            return None
        return True
    return _labelled(check, " & ".join(getattr(c, "label", "check") for c in checks))


# ========== Extraction ==========

class GoalExtractor:
    """
    Splits a request into goals: one per bullet or numbered item, or the
    whole request when there is no list. Items naming file paths get a
    file_exists check for each path.
    """

    ITEM = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$")
    PATH = re.compile(
        r"`([^`\s]+\.[A-Za-z0-9]+)`"
        r"|(?<![\w/.-])((?:[\w.-]+/)*[\w-]+\.(?:tsx|ts|jsx|js|mjs|css|scss|html|json|md|py|rb|yml|yaml|toml|sql|sh|txt))(?![\w/-])"
    )

    def extract(self, request: str) -> List[Goal]:
        items = [m.group(1) for m in map(self.ITEM.match, request.splitlines()) if m]
        if not items:
            items = [" ".join(request.split())]

        goals = []
        for n, text in enumerate(items, 1):
            paths = self.find_paths(text)
            check = None
            if len(paths) == 1:
                check = file_exists(paths[0])
            elif paths:
                check = all_of(*(file_exists(p) for p in paths))
            goals.append(Goal(id=f"goal-{n}", description=text, check=check))
        return goals

    def find_paths(self, text: str) -> List[str]:
        paths: List[str] = []
        for match in self.PATH.finditer(text):
            path = match.group(1) or match.group(2)
            if path and path not in paths:
                paths.append(path)
        return paths


# ========== Verification ==========

@dataclass
class GoalReport:
    goals: List[Goal] = field(default_factory=list)

    def _with(self, *statuses: GoalStatus) -> List[Goal]:
        return [g for g in self.goals if g.status in statuses]

    @property
    def satisfied(self) -> List[Goal]:
        return self._with(GoalStatus.SATISFIED)

    @property
    def unmet(self) -> List[Goal]:
        """Unmet and ambiguous goals; both block success"""
        return self._with(GoalStatus.UNMET, GoalStatus.AMBIGUOUS, GoalStatus.PENDING)

    @property
    def all_satisfied(self) -> bool:
        return bool(self.goals) and not self.unmet

    def to_dict(self) -> Dict[str, Any]:
        return {
            "satisfied": len(self.satisfied),
            "total": len(self.goals),
            "goals": [g.to_dict() for g in self.goals],
        }


class GoalVerifier:

    async def verify(self, goals: List[Goal], ctx: VerificationContext) -> GoalReport:
        for goal in goals:
            if goal.check is None:
                goal.status = (
                    GoalStatus.SATISFIED if goal.id in ctx.session.declared_goals else GoalStatus.UNMET
                )
                continue

            reason = "check returned no answer"
            try:
                answer = goal.check(ctx)
                if inspect.isawaitable(answer):
                    answer = await answer
            except Exception as e:
                answer = None
                reason = f"{type(e).__name__}: {e}"

            if answer is None:
                error = GoalVerificationError(goal.id, reason)
                logger.warning(f"[Goals] {error.message}")
                goal.status = GoalStatus.AMBIGUOUS
                goal.detail = error.message
            else:
                goal.status = GoalStatus.SATISFIED if answer else GoalStatus.UNMET
                goal.detail = None

        report = GoalReport(list(goals))
        logger.info(f"[Goals] {len(report.satisfied)}/{len(report.goals)} satisfied")
        return report
