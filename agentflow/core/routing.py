"""Dynamic agent selection for AGENT nodes with ``selection_criteria``.

Agents are scored on skill coverage, current workload and historical success
rate; the highest score wins.
"""

import logging
import threading
from dataclasses import dataclass, field

from agentflow.core.graph_schema import SelectionCriteria

logger = logging.getLogger(__name__)

BASE_SCORE = 100.0
SKILL_WEIGHT = 30.0  # Full skill coverage adds this much
BUSY_PENALTY = 20.0
LOW_SUCCESS_PENALTY = 30.0
SUCCESS_WEIGHT = 50.0  # Per unit of success rate above the minimum


@dataclass
class AgentProfile:
    """What the router knows about one agent."""

    name: str
    skills: list[str] = field(default_factory=list)
    success_rate: float = 0.0
    workload: int = 0  # Tasks currently in flight
    completed_tasks: int = 0
    failed_tasks: int = 0


@dataclass
class AgentScore:
    name: str
    score: float
    workload: int
    success_rate: float

    @property
    def reasoning(self) -> str:
        return (
            f"Score: {self.score:.0f}, Workload: {self.workload}, "
            f"Success Rate: {self.success_rate * 100:.0f}%"
        )


class AgentRouter:
    """Scores registered agents against selection criteria.

    Workload and success rate are updated as the engine reports task starts
    and outcomes, so repeated selections spread work across agents.
    """

    def __init__(self, profiles: list[AgentProfile] | None = None):
        self._profiles: dict[str, AgentProfile] = {}
        self._lock = threading.Lock()
        for profile in profiles or []:
            self.register(profile)

    def register(self, profile: AgentProfile) -> None:
        with self._lock:
            self._profiles[profile.name] = profile

    def get_profile(self, name: str) -> AgentProfile | None:
        return self._profiles.get(name)

    @property
    def agents(self) -> list[str]:
        return list(self._profiles)

    def score(self, profile: AgentProfile, criteria: SelectionCriteria) -> float:
        score = BASE_SCORE

        if criteria.required_skills:
            matched = [s for s in criteria.required_skills if s in profile.skills]
            score += len(matched) / len(criteria.required_skills) * SKILL_WEIGHT

        if profile.workload >= criteria.workload_threshold:
            score -= BUSY_PENALTY

        if profile.success_rate < criteria.min_success_rate:
            score -= LOW_SUCCESS_PENALTY
        else:
            score += (profile.success_rate - criteria.min_success_rate) * SUCCESS_WEIGHT

        return score

    def rank(self, criteria: SelectionCriteria) -> list[AgentScore]:
        """Score every candidate agent, best first. Ties keep registration order."""
        with self._lock:
            names = criteria.candidates or list(self._profiles)
            scored = []
            for name in names:
                profile = self._profiles.get(name)
                if profile is None:
                    logger.warning(f"Unknown candidate agent '{name}' ignored")
                    continue
                scored.append(
                    AgentScore(
                        name=name,
                        score=self.score(profile, criteria),
                        workload=profile.workload,
                        success_rate=profile.success_rate,
                    )
                )
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored

    def select_agent(self, criteria: SelectionCriteria) -> str | None:
        """Best agent for ``criteria``, or None when no candidate is known."""
        ranking = self.rank(criteria)
        if not ranking:
            return None
        best = ranking[0]
        logger.info(f"Selected agent '{best.name}' ({best.reasoning})")
        return best.name

    # --- Bookkeeping ---

    def task_started(self, name: str) -> None:
        with self._lock:
            profile = self._profiles.get(name)
            if profile:
                profile.workload += 1

    def task_finished(self, name: str, success: bool) -> None:
        """Release workload and fold the outcome into the success rate."""
        with self._lock:
            profile = self._profiles.get(name)
            if profile is None:
                return
            profile.workload = max(profile.workload - 1, 0)
            if success:
                profile.completed_tasks += 1
            else:
                profile.failed_tasks += 1
            total = profile.completed_tasks + profile.failed_tasks
            profile.success_rate = profile.completed_tasks / total
