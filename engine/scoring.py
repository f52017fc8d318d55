import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from core.collaborators import ScoringCollaborator
from core.errors import ScoringError
from core.models import Question, SectionContent, SubmissionResult
from storage.json_storage import AttemptStorage

logger = logging.getLogger(__name__)


class AnswerKeyScorer(ScoringCollaborator):
    """
    Reference scoring collaborator: exact-match scoring against the
    content's answer key, one mark per correct answer. Each attempt is
    stored through AttemptStorage under a fresh attempt id.
    """

    def __init__(self, content: SectionContent, candidate_id: str, attempts: AttemptStorage):
        self.content = content
        self.candidate_id = candidate_id
        self.attempts = attempts

    async def score_and_persist(
        self,
        section_id: str,
        answers: Dict[str, Any],
        time_taken_seconds: float,
    ) -> SubmissionResult:
        if section_id != self.content.section_id:
            raise ScoringError(f"Scorer for {self.content.section_id} cannot score {section_id}")

        question_results = score_answers(self.content.questions, answers)
        correct = sum(1 for r in question_results if r["is_correct"])
        total = len(question_results)

        result = SubmissionResult(
            attempt_id=uuid.uuid4().hex,
            score=float(correct),
            correct_count=correct,
            total_count=total,
            time_taken_seconds=round(time_taken_seconds, 3),
        )

        record = {
            "attempt_id": result.attempt_id,
            "candidate_id": self.candidate_id,
            "section_id": section_id,
            "submitted_at": datetime.now().isoformat(),
            "answers": answers,
            "question_results": question_results,
            "result": result.to_dict(),
        }

        # No await between writing the record and returning it, so a caller's
        # timeout either prevents the write or receives the result
        try:
            self.attempts.save_attempt(record)
        except (OSError, TypeError) as e:
            raise ScoringError(f"Failed to store attempt: {e}") from e

        return result


def score_answers(questions: List[Question], answers: Dict[str, Any]) -> List[Dict]:
    results = []
    for q in questions:
        selected = answers.get(q.key)
        is_attempted = not _blank(selected)
        results.append({
            "question_key": q.key,
            "selected_answer": sorted(selected) if isinstance(selected, (set, frozenset)) else selected,
            "correct_answer": q.correct_answer,
            "is_attempted": is_attempted,
            "is_correct": is_attempted and answers_match(selected, q.correct_answer),
        })
    return results


def answers_match(selected: Any, correct: Any) -> bool:
    if correct is None:
        return False
    if isinstance(correct, (list, tuple, set, frozenset)):
        if not isinstance(selected, (list, tuple, set, frozenset)):
            return False
        return {_normalize(v) for v in selected} == {_normalize(v) for v in correct}
    if isinstance(correct, str):
        return isinstance(selected, str) and _normalize(selected) == _normalize(correct)
    return selected == correct


def _normalize(value: Any) -> str:
    return " ".join(str(value).split()).casefold()


def _blank(value: Optional[Any]) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return not value
    return False
