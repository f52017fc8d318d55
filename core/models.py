"""
Data model shared by sessions, storage and the mock orchestrator
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SectionStatus(Enum):
    TAKING = "taking"
    PAUSED = "paused"
    REVIEWING = "reviewing"
    COMPLETED = "completed"


class FinishReason(Enum):
    MANUAL = "manual"
    TIMEOUT = "timeout"
    FORCED = "forced"


class SubmitFailure(Enum):
    IN_FLIGHT = "in_flight"
    ALREADY_COMPLETED = "already_completed"
    MISSING_CONTEXT = "missing_context"
    DUPLICATE_SIGNAL = "duplicate_signal"
    SCORING_FAILED = "scoring_failed"
    CLOSED = "closed"


class StageOutcome(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EARLY_EXIT = "early_exit"
    SKIPPED = "skipped"


class ExamStatus(Enum):
    STARTED = "started"
    COMPLETED = "completed"


@dataclass
class Question:
    """Question as delivered by the content provider"""
    key: str
    prompt: str = ""
    options: List[str] = field(default_factory=list)
    correct_answer: Any = None

    @classmethod
    def from_dict(cls, data: Dict) -> "Question":
        return cls(
            key=str(data["key"]),
            prompt=data.get("prompt", ""),
            options=list(data.get("options", [])),
            correct_answer=data.get("correct_answer"),
        )


@dataclass
class SectionContent:
    section_id: str
    duration_seconds: int
    questions: List[Question] = field(default_factory=list)
    title: str = ""

    @property
    def total_questions(self) -> int:
        return len(self.questions)


@dataclass
class SubmissionResult:
    """What the scoring collaborator hands back for one attempt"""
    attempt_id: str
    score: float
    correct_count: int
    total_count: int
    time_taken_seconds: float = 0.0
    early_exit: bool = False

    def to_dict(self) -> Dict:
        return {
            "attemptId": self.attempt_id,
            "score": self.score,
            "correctCount": self.correct_count,
            "totalCount": self.total_count,
            "timeTakenSeconds": self.time_taken_seconds,
            "earlyExit": self.early_exit,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SubmissionResult":
        return cls(
            attempt_id=data["attemptId"],
            score=data.get("score", 0),
            correct_count=data.get("correctCount", 0),
            total_count=data.get("totalCount", 0),
            time_taken_seconds=data.get("timeTakenSeconds", 0.0),
            early_exit=data.get("earlyExit", False),
        )


@dataclass
class SubmitOutcome:
    """Typed result of a submission request. Never raised, always returned."""
    ok: bool
    result: Optional[SubmissionResult] = None
    failure: Optional[SubmitFailure] = None
    error: str = ""

    @classmethod
    def success(cls, result: SubmissionResult) -> "SubmitOutcome":
        return cls(ok=True, result=result)

    @classmethod
    def rejected(cls, failure: SubmitFailure, error: str = "") -> "SubmitOutcome":
        return cls(ok=False, failure=failure, error=error or failure.value)


@dataclass
class PersistedProgress:
    """Checkpoint of an in-progress section"""
    answers: Dict[str, Any]
    bookmarks: List[str]
    remaining_seconds: float
    started_at_ms: Optional[int]
    saved_at_ms: int
    has_interacted: bool = False

    def to_dict(self) -> Dict:
        return {
            "answers": self.answers,
            "bookmarks": sorted(self.bookmarks),
            "remainingSeconds": self.remaining_seconds,
            "startedAtEpochMs": self.started_at_ms,
            "savedAtEpochMs": self.saved_at_ms,
            "hasInteracted": self.has_interacted,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PersistedProgress":
        return cls(
            answers=dict(data.get("answers", {})),
            bookmarks=list(data.get("bookmarks", [])),
            remaining_seconds=float(data.get("remainingSeconds", 0)),
            started_at_ms=data.get("startedAtEpochMs"),
            saved_at_ms=int(data.get("savedAtEpochMs", 0)),
            has_interacted=bool(data.get("hasInteracted", bool(data.get("answers")))),
        )


@dataclass
class CompletionSignal:
    """Mailbox message announcing that a stage finished"""
    stage: str
    result: Dict
    written_at_ms: int
    early_exit: bool = False

    def to_dict(self) -> Dict:
        return {
            "stage": self.stage,
            "result": self.result,
            "writtenAtEpochMs": self.written_at_ms,
            "earlyExit": self.early_exit,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "CompletionSignal":
        return cls(
            stage=data["stage"],
            result=data.get("result") or {},
            written_at_ms=int(data.get("writtenAtEpochMs", 0)),
            early_exit=bool(data.get("earlyExit", False)),
        )
