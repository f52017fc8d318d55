import os
import tempfile

# Keep imported settings away from the real data directory
os.environ.setdefault("EXAM_ENGINE_DATA_DIR", tempfile.mkdtemp(prefix="exam-engine-tests-"))

import asyncio
import itertools

import pytest

from config.settings import MockConfig, SessionConfig
from core.collaborators import ContentProvider, ExamStatusCollaborator, ScoringCollaborator
from core.errors import ContentUnavailableError, ScoringError
from core.models import Question, SectionContent, SubmissionResult
from engine.exam_engine import ExamEngine, SectionSession
from engine.mock_exam_engine import MockOrchestrator
from storage.json_storage import MockExamStorage, ProgressStorage
from storage.local_store import LocalStore
from storage.mailbox import CompletionMailbox

T0 = 1_700_000_000_000


class FakeTime:
    """Controllable wall clock in epoch milliseconds"""

    def __init__(self, start_ms: int = T0):
        self.ms = start_ms

    def __call__(self) -> int:
        return self.ms

    def advance(self, seconds: float):
        self.ms += int(round(seconds * 1000))


class FakeScorer(ScoringCollaborator):
    """Scores one mark per answer. Can be told to fail or hang."""

    _ids = itertools.count(1)

    def __init__(self, fail_times: int = 0, delay: float = 0.0):
        self.fail_times = fail_times
        self.delay = delay
        self.calls = []

    async def score_and_persist(self, section_id, answers, time_taken_seconds):
        self.calls.append((section_id, dict(answers), time_taken_seconds))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ScoringError("scoring backend unavailable")
        return SubmissionResult(
            attempt_id=f"attempt-{next(self._ids)}",
            score=float(len(answers)),
            correct_count=len(answers),
            total_count=3,
            time_taken_seconds=time_taken_seconds,
        )


class RecordingStatus(ExamStatusCollaborator):

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def set_exam_status(self, exam_id, status):
        self.calls.append((exam_id, status))
        if self.fail:
            raise RuntimeError("status service down")


class StaticContent(ContentProvider):

    def __init__(self, sections=None):
        self.sections = sections or {}

    async def get_section_content(self, section_id):
        if section_id not in self.sections:
            raise ContentUnavailableError(section_id, "not found")
        return self.sections[section_id]


def make_content(section_id: str, duration: int = 40) -> SectionContent:
    return SectionContent(
        section_id=section_id,
        duration_seconds=duration,
        questions=[
            Question(key="1", prompt="Pick A", options=["A", "B"], correct_answer="A"),
            Question(key="2", prompt="Pick B", options=["A", "B"], correct_answer="B"),
            Question(key="3", prompt="Spell it", correct_answer="colour"),
        ],
        title=section_id.title(),
    )


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / "store.json")


@pytest.fixture
def progress(store):
    return ProgressStorage(store)


@pytest.fixture
def session_config():
    return SessionConfig(submit_timeout=0.5)


@pytest.fixture
def make_session(store, progress, fake_time, session_config):
    """Build a SectionSession; pass mock_id/stage for an orchestrated one"""

    def factory(section_id="reading", duration=40, scorer=None, candidate_id="cand-1",
                mock_id=None, stage=None, config=None):
        mailbox = CompletionMailbox(store, mock_id, now_ms=fake_time) if mock_id else None
        return SectionSession(
            section_id,
            duration,
            progress=progress,
            scoring=scorer or FakeScorer(),
            candidate_id=candidate_id,
            mailbox=mailbox,
            stage=stage or (section_id if mock_id else None),
            config=config or session_config,
            now_ms=fake_time,
        )

    return factory


@pytest.fixture
def engine(store, fake_time, session_config):
    content = StaticContent({s: make_content(s) for s in ("listening", "reading", "writing")})
    return ExamEngine(
        content,
        store,
        scorer_factory=lambda candidate_id, c: FakeScorer(),
        config=session_config,
        now_ms=fake_time,
    )


@pytest.fixture
def status():
    return RecordingStatus()


@pytest.fixture
def archive(tmp_path):
    return MockExamStorage(tmp_path / "mock_exams")


@pytest.fixture
def make_orchestrator(store, fake_time, status, archive):

    def factory(mock_id="mock-1", stages=("listening", "reading", "writing"),
                audio_check=True, with_archive=True):
        return MockOrchestrator(
            mock_id,
            {s: s for s in stages},
            store=store,
            candidate_id="cand-1",
            status_collaborator=status,
            archive=archive if with_archive else None,
            config=MockConfig(require_audio_check=audio_check),
            now_ms=fake_time,
        )

    return factory


def run(coro):
    return asyncio.run(coro)
