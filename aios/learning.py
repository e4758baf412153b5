# aios/learning.py
"""
Agent learning - human feedback on finished executions

Feedback (rating 1-5, accepted or not, free comments, improvement tags) is
aggregated per agent and turned into a prompt section that the generic
completion path appends to the next task prompt for that agent.
"""

import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from aios.exceptions import InvalidStateTransition
from aios.models import ExecutionFeedback, ExecutionStatus
from aios.store import WorkStore

logger = logging.getLogger("aios.learning")

FEEDBACK_WINDOW = 20
FEEDBACKABLE_STATES = {ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value}


class AgentLearning:
    def __init__(self, store: WorkStore):
        self.store = store

    def record_feedback(
        self,
        execution_id: str,
        rating: int,
        was_accepted: bool,
        comments: Optional[str] = None,
        improvements: Optional[List[str]] = None,
    ) -> ExecutionFeedback:
        """Create or replace the feedback of a COMPLETED / FAILED execution"""
        execution = self.store.require_execution(execution_id)
        if execution.status not in FEEDBACKABLE_STATES:
            raise InvalidStateTransition(execution_id, execution.status, "record feedback for")

        feedback = self.store.upsert_feedback(
            execution_id,
            rating=max(1, min(5, int(rating))),
            was_accepted=was_accepted,
            comments=comments,
            improvements=improvements,
        )
        logger.info(
            f"Feedback recorded | execution_id={execution_id} | rating={feedback.rating} | accepted={was_accepted}"
        )
        return feedback

    def get_agent_performance(self, agent_id: str) -> Dict[str, Any]:
        agent = self.store.require_agent(agent_id)
        executions = self.store.list_executions(agent_id=agent_id)
        feedback = self.store.list_agent_feedback(agent_id, limit=None)

        count = len(feedback)
        accepted = sum(1 for f in feedback if f["was_accepted"])
        improvements = Counter(imp for f in feedback for imp in f["improvements"])

        return {
            "agent_id": agent_id,
            "agent_name": agent.name,
            "total_executions": len(executions),
            "completed_executions": sum(1 for e in executions if e.status == ExecutionStatus.COMPLETED.value),
            "feedback_count": count,
            "acceptance_rate": round(accepted / count, 2) if count else 0,
            "average_rating": round(sum(f["rating"] for f in feedback) / count, 2) if count else 0,
            "common_improvements": [
                {"improvement": imp, "count": n} for imp, n in improvements.most_common(10)
            ],
            "recent_feedback": [
                {
                    "rating": f["rating"],
                    "was_accepted": f["was_accepted"],
                    "comments": f["comments"],
                    "task_title": f["task_title"],
                    "created_at": f["created_at"].isoformat() if f["created_at"] else None,
                }
                for f in feedback[:10]
            ],
        }

    def generate_improvement_prompt(self, agent_id: str) -> str:
        """Learning-context section for the next prompt; empty without feedback"""
        feedback = self.store.list_agent_feedback(agent_id, limit=FEEDBACK_WINDOW)
        if not feedback:
            return ""

        accepted = [f for f in feedback if f["was_accepted"]]
        rejected = [f for f in feedback if not f["was_accepted"]]
        average = sum(f["rating"] for f in feedback) / len(feedback)

        sections = [
            "## Performance history\n"
            f"- Feedback entries: {len(feedback)}\n"
            f"- Acceptance rate: {round(len(accepted) / len(feedback) * 100)}%\n"
            f"- Average rating: {average:.1f}/5"
        ]

        top = Counter(imp for f in feedback for imp in f["improvements"]).most_common(5)
        if top:
            sections.append(
                "## Most requested improvements\n"
                + "\n".join(f"- {imp} (mentioned {n}x)" for imp, n in top)
            )

        rejections = [f"- Task {f['task_title']!r}: {f['comments']}" for f in rejected[:5] if f["comments"]]
        if rejections:
            sections.append("## Feedback on recently rejected executions\n" + "\n".join(rejections))

        best = [f for f in accepted if f["rating"] >= 4][:3]
        if best:
            sections.append(
                "## Well-rated executions\n"
                + "\n".join(f"- Task {f['task_title']!r} (rated {f['rating']}/5)" for f in best)
            )

        return (
            "\n\n---\n# Learning context\n\n"
            "Use the feedback below to improve your answer:\n\n"
            + "\n\n".join(sections)
        )
