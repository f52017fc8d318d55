"""
Interfaces of the external collaborators the engine talks to.
Content, scoring and exam status live outside the session core.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from core.models import ExamStatus, SectionContent, SubmissionResult


class ContentProvider(ABC):

    @abstractmethod
    async def get_section_content(self, section_id: str) -> SectionContent:
        """Return duration and questions. Raises ContentUnavailableError."""


class ScoringCollaborator(ABC):

    @abstractmethod
    async def score_and_persist(
        self,
        section_id: str,
        answers: Dict[str, Any],
        time_taken_seconds: float,
    ) -> SubmissionResult:
        """Score an attempt and store it. Raises ScoringError on rejection."""


class ExamStatusCollaborator(ABC):

    @abstractmethod
    async def set_exam_status(self, exam_id: str, status: ExamStatus) -> None:
        """Record that a whole exam started or finished"""
