# aios/phase_gate.py
"""
Phase Gate Controller - automated review between plan phases

When the last subtask of a phase reaches DONE, one "[REVIEW] <phase>" task
is created for the SENTINEL agent and reviewed in the background. The first
line of the review response carries the verdict:

    APPROVED  -> review task DONE, orchestration progress refreshed
    REJECTED  -> every phase task back to REVIEW, orchestration REVIEWING

The orchestration cannot complete while a plan phase lacks a DONE review
(see unreviewed_phases, installed as the resolver's completion guard).

A missing verdict or a failing review call is resolved by
PHASE_REVIEW_FAIL_OPEN: fail-open marks the review DONE and logs the
skipped gate, fail-closed blocks the review task and holds the
orchestration in REVIEWING.
"""

import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from aios.dependency_resolver import DependencyResolver
from aios.events import AgentEventType, EventBus
from aios.exceptions import AIOSError, ReviewInconclusive
from aios.integrations.completion_client import CompletionClient
from aios.models import AgentRole, ExecutionStatus, OrchestrationStatus, Task, TaskPriority, TaskStatus
from aios.store import WorkStore
from aios.supervisor import TaskSupervisor

logger = logging.getLogger("aios.phase_gate")

REVIEW_PREFIX = "[REVIEW] "
RESULT_EXCERPT_CHARS = 500

VERDICT_PATTERN = re.compile(r"(APPROVED|REJECTED)\b", re.IGNORECASE)

REVIEW_SYSTEM_PROMPT = (
    "You are SENTINEL, the quality gate between phases of a multi-task plan. "
    "Judge whether the completed work is good enough for the next phase to build on."
)


class ReviewVerdict(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


def review_title(phase_name: str) -> str:
    return f"{REVIEW_PREFIX}{phase_name}"


def is_review_task(task: Task) -> bool:
    return bool(task.title) and task.title.startswith(REVIEW_PREFIX)


def parse_verdict(response: str) -> Tuple[ReviewVerdict, str]:
    """
    Verdict and reason from the first line of the response.

    Markdown emphasis around the token is tolerated; the token itself must
    stand alone as a word.

    Raises:
        ReviewInconclusive: If the first line does not open with either token
    """
    lines = (response or "").splitlines()
    first = lines[0].strip().lstrip("#*` ") if lines else ""
    match = VERDICT_PATTERN.match(first)
    if match is None:
        raise ReviewInconclusive(response or "")

    verdict = ReviewVerdict(match.group(1).upper())
    reason = first[match.end():].strip(" *`:-")
    return verdict, reason


class PhaseGateController:
    def __init__(
        self,
        store: WorkStore,
        bus: EventBus,
        resolver: DependencyResolver,
        supervisor: TaskSupervisor,
        completion_client: Optional[CompletionClient] = None,
        fail_open: bool = True,
    ):
        self.store = store
        self.bus = bus
        self.resolver = resolver
        self.supervisor = supervisor
        self.completion_client = completion_client
        self.fail_open = fail_open

    # =========================================================================
    # Detection / trigger
    # =========================================================================

    @staticmethod
    def find_phase(plan: Dict[str, Any], title: str) -> Optional[Dict[str, Any]]:
        for phase in plan.get("phases", []):
            if any(s.get("title") == title for s in phase.get("subtasks", [])):
                return phase
        return None

    @staticmethod
    def _phase_titles(phase: Dict[str, Any]) -> List[str]:
        return [s["title"] for s in phase.get("subtasks", [])]

    def check_phase_completion(self, completed_task_id: str, orchestration_id: str) -> Optional[Task]:
        """Review task when completed_task_id closed its phase, else None"""
        task = self.store.get_task(completed_task_id)
        if task is None or is_review_task(task):
            return None

        phase = self.find_phase(self.store.get_plan(orchestration_id), task.title)
        if phase is None:
            return None

        titles = self._phase_titles(phase)
        tasks = self.store.list_tasks(orchestration_id=orchestration_id, titles=titles)
        present = {t.title for t in tasks}
        if any(title not in present for title in titles):
            return None
        if any(t.status != TaskStatus.DONE.value for t in tasks):
            done = sum(1 for t in tasks if t.status == TaskStatus.DONE.value)
            logger.debug(f"Phase not complete | phase={phase['name']!r} | done={done}/{len(tasks)}")
            return None

        logger.info(f"Phase complete | orchestration_id={orchestration_id} | phase={phase['name']!r}")
        return self.trigger_phase_review(orchestration_id, phase)

    def trigger_phase_review(self, orchestration_id: str, phase: Dict[str, Any]) -> Optional[Task]:
        """Create the phase's review task once and start the review in the background"""
        title = review_title(phase["name"])

        # Lookup and insert run without yielding to the loop
        if self.store.find_task_by_title(orchestration_id, title) is not None:
            logger.debug(f"Review already exists | orchestration_id={orchestration_id} | title={title!r}")
            return None

        sentinel = self.store.find_agent_by_role(AgentRole.SENTINEL)
        if sentinel is None:
            logger.warning(f"No active SENTINEL agent, review task left unassigned | title={title!r}")

        review = self.store.create_task(
            title=title,
            description=f"Automated quality review of phase {phase['name']!r}: "
                        + ", ".join(self._phase_titles(phase)),
            status=TaskStatus.IN_PROGRESS,
            priority=TaskPriority.HIGH,
            orchestration_id=orchestration_id,
            agent_id=sentinel.id if sentinel else None,
            auto_created=True,
        )
        logger.info(f"Review task created | orchestration_id={orchestration_id} | review_task_id={review.id}")

        self.supervisor.submit(
            self.execute_phase_review(orchestration_id, phase, review.id),
            name=f"phase-review:{orchestration_id}:{phase['name']}",
        )
        return review

    def unreviewed_phases(self, orchestration_id: str) -> List[str]:
        """Names of plan phases with subtasks whose review task is not DONE"""
        orchestration = self.store.get_orchestration(orchestration_id)
        if orchestration is None or not orchestration.plan_json:
            return []

        pending: List[str] = []
        for phase in self.store.get_plan(orchestration_id).get("phases", []):
            if not phase.get("subtasks"):
                continue
            review = self.store.find_task_by_title(orchestration_id, review_title(phase["name"]))
            if review is None or review.status != TaskStatus.DONE.value:
                pending.append(phase["name"])
        return pending

    # =========================================================================
    # Review
    # =========================================================================

    def build_review_prompt(self, orchestration_id: str, phase: Dict[str, Any]) -> str:
        tasks = self.store.list_tasks(orchestration_id=orchestration_id, titles=self._phase_titles(phase))
        lines = [f'Review phase "{phase["name"]}". Completed tasks:', ""]
        for i, task in enumerate(tasks, start=1):
            lines.append(f"{i}. {task.title}")
            if task.description:
                lines.append(f"   Description: {task.description}")
            executions = self.store.list_executions(task_id=task.id, statuses=[ExecutionStatus.COMPLETED])
            if executions and executions[0].result:
                lines.append(f"   Result: {executions[0].result[:RESULT_EXCERPT_CHARS]}")
        lines += [
            "",
            "Answer with APPROVED or REJECTED on the first line, followed by a short reason.",
            "Reject only when the work is missing, wrong, or unsafe to build on.",
        ]
        return "\n".join(lines)

    async def execute_phase_review(
        self, orchestration_id: str, phase: Dict[str, Any], review_task_id: str
    ) -> Optional[ReviewVerdict]:
        name = phase["name"]
        try:
            if self.completion_client is None:
                raise AIOSError("no completion client configured for phase review")
            prompt = self.build_review_prompt(orchestration_id, phase)
            response = await self.completion_client.complete(prompt, REVIEW_SYSTEM_PROMPT)
            verdict, reason = parse_verdict(response)
        except ReviewInconclusive as e:
            logger.warning(f"Phase review inconclusive | phase={name!r} | error={e}")
            self._unresolved(orchestration_id, phase, review_task_id, f"inconclusive verdict: {e}")
            return None
        except Exception as e:
            logger.error(f"Phase review failed | phase={name!r} | error={e}")
            self._unresolved(orchestration_id, phase, review_task_id, f"review call failed: {e}")
            return None

        if verdict == ReviewVerdict.APPROVED:
            self._approve(orchestration_id, phase, review_task_id, response)
        else:
            self._reject(orchestration_id, phase, review_task_id, response, reason)
        return verdict

    def _reviewer_name(self, review_task_id: str) -> str:
        review = self.store.get_task(review_task_id)
        agent = self.store.get_agent(review.agent_id) if review and review.agent_id else None
        return agent.name if agent else AgentRole.SENTINEL.value

    def _approve(self, orchestration_id: str, phase: Dict[str, Any], review_task_id: str, response: str) -> None:
        self.store.add_comment(review_task_id, response, author_name=self._reviewer_name(review_task_id))
        self.store.set_task_status(review_task_id, TaskStatus.DONE)
        self.resolver.update_orchestration_progress(orchestration_id)
        self.bus.emit(
            AgentEventType.EXECUTION_COMPLETED,
            {"orchestration_id": orchestration_id, "phase": phase["name"], "verdict": ReviewVerdict.APPROVED.value},
            task_id=review_task_id,
        )
        logger.info(f"Phase approved | orchestration_id={orchestration_id} | phase={phase['name']!r}")

    def _reject(
        self, orchestration_id: str, phase: Dict[str, Any], review_task_id: str, response: str, reason: str
    ) -> None:
        tasks = self.store.list_tasks(orchestration_id=orchestration_id, titles=self._phase_titles(phase))
        self.store.set_tasks_status([t.id for t in tasks], TaskStatus.REVIEW)

        summary = f'Phase "{phase["name"]}" rejected by review: {reason or "no reason given"}'
        self._hold(orchestration_id, summary)
        self.store.add_comment(review_task_id, response, author_name=self._reviewer_name(review_task_id))
        self.store.set_task_status(review_task_id, TaskStatus.DONE)
        self.bus.emit(
            AgentEventType.EXECUTION_FAILED,
            {
                "orchestration_id": orchestration_id,
                "phase": phase["name"],
                "verdict": ReviewVerdict.REJECTED.value,
                "reason": reason,
                "tasks_returned": len(tasks),
            },
            task_id=review_task_id,
        )
        logger.warning(
            f"Phase rejected | orchestration_id={orchestration_id} | phase={phase['name']!r} | "
            f"tasks_returned={len(tasks)} | reason={reason}"
        )

    def _hold(self, orchestration_id: str, summary: str) -> None:
        """Put the orchestration in REVIEWING and undo an earlier completion"""
        orchestration = self.store.get_orchestration(orchestration_id)
        self.store.update_orchestration(
            orchestration_id,
            status=OrchestrationStatus.REVIEWING,
            current_phase=summary,
            completed_at=None,
        )
        if orchestration is None or not orchestration.parent_task_id:
            return

        parent = self.store.get_task(orchestration.parent_task_id)
        if parent is not None and parent.status == TaskStatus.DONE.value:
            self.store.set_task_status(parent.id, TaskStatus.IN_PROGRESS)
            self.store.add_comment(
                parent.id,
                f"Reopened: {summary}",
                author_name="AIOS",
                author_type="SYSTEM",
            )
            logger.warning(f"Parent task reopened | orchestration_id={orchestration_id} | task_id={parent.id}")

    def _unresolved(self, orchestration_id: str, phase: Dict[str, Any], review_task_id: str, problem: str) -> None:
        if self.fail_open:
            self.store.add_comment(
                review_task_id,
                f"Automated review skipped ({problem}); phase accepted without a verdict.",
                author_name="AIOS",
                author_type="SYSTEM",
            )
            self.store.set_task_status(review_task_id, TaskStatus.DONE)
            self.resolver.update_orchestration_progress(orchestration_id)
            logger.warning(
                f"Phase gate skipped (fail-open) | orchestration_id={orchestration_id} | phase={phase['name']!r}"
            )
            return

        summary = f'Phase "{phase["name"]}" review could not complete: {problem}'
        self.store.add_comment(review_task_id, summary, author_name="AIOS", author_type="SYSTEM")
        self.store.set_task_status(review_task_id, TaskStatus.BLOCKED)
        self._hold(orchestration_id, summary)
        self.bus.emit(
            AgentEventType.EXECUTION_FAILED,
            {"orchestration_id": orchestration_id, "phase": phase["name"], "reason": problem},
            task_id=review_task_id,
        )
        logger.error(f"Phase gate held (fail-closed) | orchestration_id={orchestration_id} | phase={phase['name']!r}")
