"""Convergence decisions for the review loop of one language.

Everything here is a pure function of a sub-task's iteration list; the
orchestrator applies the decisions.
"""

from dataclasses import dataclass
from typing import Any, Optional

from langloop.db.models import FinalReason
from langloop.schemas.domain import Iteration, LanguageSubtask


@dataclass(frozen=True)
class IterationDecision:
    """What to do after an iteration completed."""

    needs_another_iteration: bool
    score: Optional[float]
    next_iteration: Optional[int] = None
    final_reason: Optional[FinalReason] = None


def combine_scores(human_score: float, post_human_score: float) -> float:
    """Average of the human review and the post-review machine score."""
    return round((human_score + post_human_score) / 2, 4)


def needs_another_iteration(score: float, threshold: float, current_iteration: int, max_iterations: int) -> bool:
    return score < threshold and current_iteration < max_iterations


def final_reason(score: Optional[float], threshold: float) -> FinalReason:
    if score is not None and score >= threshold:
        return FinalReason.THRESHOLD_MET
    return FinalReason.MAX_ITERATIONS_REACHED


def decide(subtask: LanguageSubtask) -> IterationDecision:
    """
    Decide between another review round and finalization.

    Uses the final score of the latest iteration (combined when reviewed,
    machine-only otherwise). A missing score counts as not meeting the bar.
    """
    latest = subtask.latest_iteration
    score = latest.final_score if latest else None
    current = subtask.current_iteration

    if score is not None and needs_another_iteration(
        score, subtask.confidence_threshold, current, subtask.max_iterations
    ):
        return IterationDecision(needs_another_iteration=True, score=score, next_iteration=current + 1)

    if score is None and current < subtask.max_iterations:
        return IterationDecision(needs_another_iteration=True, score=None, next_iteration=current + 1)

    return IterationDecision(
        needs_another_iteration=False,
        score=score,
        final_reason=final_reason(score, subtask.confidence_threshold),
    )


def iteration_history(subtask: LanguageSubtask) -> list[dict[str, Any]]:
    """Compact per-iteration history carried on ``subtask.iteration.continuing``."""
    history = []
    for iteration in subtask.iterations:
        history.append(
            {
                "iteration": iteration.number,
                "llmScore": iteration.llm_verification.score if iteration.llm_verification else None,
                "humanScore": iteration.human_review.score if iteration.human_review else None,
                "postHumanScore": (
                    iteration.llm_reverification.score if iteration.llm_reverification else None
                ),
                "combinedScore": iteration.combined_score,
                "completedAt": iteration.completed_at.isoformat() if iteration.completed_at else None,
            }
        )
    return history


def iteration_status(iteration: Iteration) -> str:
    return "completed" if iteration.completed_at else "in_progress"


def summarize(subtask: LanguageSubtask) -> dict[str, Any]:
    """Operator-facing summary of a language's iterations."""
    latest = subtask.latest_iteration
    return {
        "language": subtask.language,
        "status": subtask.status.value,
        "current_iteration": subtask.current_iteration,
        "max_iterations": subtask.max_iterations,
        "confidence_threshold": subtask.confidence_threshold,
        "final_score": latest.final_score if latest and latest.completed_at else None,
        "final_reason": latest.final_reason.value if latest and latest.final_reason else None,
        "iterations": [
            {
                "number": iteration.number,
                "status": iteration_status(iteration),
                "llm_score": iteration.llm_verification.score if iteration.llm_verification else None,
                "human_score": iteration.human_review.score if iteration.human_review else None,
                "post_human_score": (
                    iteration.llm_reverification.score if iteration.llm_reverification else None
                ),
                "combined_score": iteration.combined_score,
                "started_at": iteration.started_at,
                "completed_at": iteration.completed_at,
            }
            for iteration in subtask.iterations
        ],
    }
