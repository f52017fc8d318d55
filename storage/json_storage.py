"""JSON Storage Module - progress checkpoints, content, attempts and exam status"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from core.collaborators import ContentProvider, ExamStatusCollaborator
from core.errors import ContentUnavailableError, PersistenceError
from core.models import ExamStatus, PersistedProgress, Question, SectionContent
from config.settings import ATTEMPTS_DIR, CONTENT_DIR, EXAM_STATUS_FILE, STORE_CONFIG, StoreConfig
from storage.local_store import LocalStore

logger = logging.getLogger(__name__)


def encode_value(value: Any):
    """json.dumps default hook: string sets become sorted lists"""
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(data: Any) -> str:
    """Deterministic JSON, so equal state always serialises to equal bytes"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=encode_value)


# ===========================
# Section progress checkpoints
# ===========================

class ProgressStorage:
    """
    Checkpoints of in-progress sections inside the local store.
    Orchestrated sections are namespaced under their mock id.
    """

    def __init__(self, store: LocalStore, config: StoreConfig = STORE_CONFIG):
        self.store = store
        self.config = config

    def key(self, section_id: str, mock_id: Optional[str] = None) -> str:
        if mock_id:
            return self.config.key(self.config.progress_prefix, mock_id, section_id)
        return self.config.key(self.config.progress_prefix, section_id)

    def save(self, section_id: str, progress: PersistedProgress, mock_id: Optional[str] = None) -> bool:
        """Write a checkpoint. Failures are logged, never raised."""
        try:
            self.store.set(self.key(section_id, mock_id), dumps(progress.to_dict()))
            return True
        except (PersistenceError, TypeError) as e:
            logger.warning(f"Failed to save progress for {section_id}: {e}")
            return False

    def load(self, section_id: str, mock_id: Optional[str] = None) -> Optional[PersistedProgress]:
        raw = self.store.get(self.key(section_id, mock_id))
        if raw is None:
            return None

        try:
            return PersistedProgress.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Discarding unreadable progress for {section_id}: {e}")
            return None

    def raw(self, section_id: str, mock_id: Optional[str] = None) -> Optional[str]:
        return self.store.get(self.key(section_id, mock_id))

    def exists(self, section_id: str, mock_id: Optional[str] = None) -> bool:
        return self.key(section_id, mock_id) in self.store

    def clear(self, section_id: str, mock_id: Optional[str] = None) -> bool:
        try:
            removed = self.store.remove(self.key(section_id, mock_id))
        except PersistenceError as e:
            logger.warning(f"Failed to clear progress for {section_id}: {e}")
            return False
        if removed:
            logger.info(f"Cleared saved progress for section {section_id}")
        return True


# ===========================
# Section content
# ===========================

class JsonContentProvider(ContentProvider):
    """
    Loads section content from <content_dir>/<section_id>.json

    {"section_id": "...", "title": "...", "duration_seconds": 2400,
     "questions": [{"key": "1", "prompt": "...", "options": [...], "correct_answer": "..."}]}
    """

    def __init__(self, content_dir: Path = CONTENT_DIR):
        self.content_dir = Path(content_dir)

    async def get_section_content(self, section_id: str) -> SectionContent:
        return await asyncio.to_thread(self.load_section, section_id)

    def load_section(self, section_id: str) -> SectionContent:
        filepath = self.content_dir / f"{section_id}.json"

        if not filepath.exists():
            raise ContentUnavailableError(section_id, f"{filepath} not found")

        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ContentUnavailableError(section_id, str(e)) from e

        duration = data.get("duration_seconds")
        if not isinstance(duration, (int, float)) or duration <= 0:
            raise ContentUnavailableError(section_id, "missing or invalid duration_seconds")

        try:
            questions = [Question.from_dict(q) for q in data.get("questions", [])]
        except (KeyError, TypeError, AttributeError) as e:
            raise ContentUnavailableError(section_id, f"malformed question: {e}") from e

        logger.info(f"Loaded section {section_id}: {len(questions)} questions, {duration}s")
        return SectionContent(
            section_id=section_id,
            duration_seconds=int(duration),
            questions=questions,
            title=data.get("title", section_id),
        )

    def save_section(self, content: SectionContent) -> Path:
        self.content_dir.mkdir(parents=True, exist_ok=True)
        filepath = self.content_dir / f"{content.section_id}.json"
        data = {
            "section_id": content.section_id,
            "title": content.title,
            "duration_seconds": content.duration_seconds,
            "questions": [
                {
                    "key": q.key,
                    "prompt": q.prompt,
                    "options": q.options,
                    "correct_answer": q.correct_answer,
                }
                for q in content.questions
            ],
        }
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=encode_value)
        return filepath

    def list_sections(self) -> List[str]:
        if not self.content_dir.exists():
            return []
        return sorted(p.stem for p in self.content_dir.glob("*.json"))


# ===========================
# Record archives
# ===========================

class JsonRecordArchive:
    """
    Directory tree of JSON records, <base_dir>/<owner>/.../<record_id>.json

    Records are written to a temp file and moved into place, so a reader
    never sees half a record and a crashed write leaves nothing behind.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, *parts: str) -> Path:
        *dirs, record_id = parts
        return self.base_dir.joinpath(*dirs) / f"{record_id}.json"

    def _write(self, path: Path, record: Dict) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(record, indent=2, ensure_ascii=False, default=encode_value)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return path

    def _read(self, path: Path) -> Optional[Dict]:
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping unreadable record {path}: {e}")
            return None

    def _record_ids(self, *dirs: str) -> List[str]:
        folder = self.base_dir.joinpath(*dirs)
        if not folder.is_dir():
            return []
        return sorted(p.stem for p in folder.glob("*.json"))


class AttemptStorage(JsonRecordArchive):
    """Scored section attempts, one record per attempt id"""

    def __init__(self, base_dir: Path = ATTEMPTS_DIR / "sections"):
        super().__init__(base_dir)

    def save_attempt(self, data: Dict) -> Path:
        path = self._write(
            self._path(data["candidate_id"], data["section_id"], data["attempt_id"]), data
        )
        logger.info(
            f"Saved attempt {data['attempt_id']} for candidate={data['candidate_id']} section={data['section_id']}"
        )
        return path

    def load_latest(self, candidate_id: str, section_id: str) -> Optional[Dict]:
        attempts = [
            record
            for record in (
                self._read(self._path(candidate_id, section_id, attempt_id))
                for attempt_id in self._record_ids(candidate_id, section_id)
            )
            if record is not None
        ]
        if not attempts:
            return None
        return max(attempts, key=lambda a: a.get("submitted_at", ""))

    def list_attempt_ids(self, candidate_id: str, section_id: str) -> List[str]:
        return self._record_ids(candidate_id, section_id)


class MockExamStorage(JsonRecordArchive):
    """
    Finished mock exams, keyed by candidate and mock id.

    The orchestrator checks this before recovering from the local store,
    so a mock that was finalized always remounts straight onto results,
    even after its store namespace has been wiped.
    """

    def __init__(self, base_dir: Path = ATTEMPTS_DIR / "mock_exams"):
        super().__init__(base_dir)

    def mock_attempt_exists(self, candidate_id: str, mock_id: str) -> bool:
        return self._path(candidate_id, mock_id).exists()

    def save_mock_attempt(self, record: Dict) -> Path:
        candidate_id, mock_id = record["candidate_id"], record["mock_id"]
        if self.mock_attempt_exists(candidate_id, mock_id):
            logger.warning(f"Overwriting archived mock {mock_id} for candidate={candidate_id}")
        path = self._write(self._path(candidate_id, mock_id), record)
        logger.info(f"Archived mock {mock_id} for candidate={candidate_id}")
        return path

    def load_mock_attempt(self, candidate_id: str, mock_id: str) -> Optional[Dict]:
        return self._read(self._path(candidate_id, mock_id))

    def list_candidate_attempts(self, candidate_id: str) -> List[str]:
        return self._record_ids(candidate_id)


# ===========================
# Exam status
# ===========================

class JsonExamStatusStore(ExamStatusCollaborator):
    """Records started/completed per exam in a JSON file"""

    def __init__(self, filepath: Path = EXAM_STATUS_FILE):
        self.filepath = Path(filepath)

    async def set_exam_status(self, exam_id: str, status: ExamStatus) -> None:
        await asyncio.to_thread(self._write_status, exam_id, status)

    def _write_status(self, exam_id: str, status: ExamStatus):
        data = self.load_all()
        data[exam_id] = {
            "status": status.value,
            "updated_at": datetime.now().isoformat(),
        }
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(self.filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        logger.info(f"Exam {exam_id} status -> {status.value}")

    def get_status(self, exam_id: str) -> Optional[ExamStatus]:
        entry = self.load_all().get(exam_id)
        if not entry:
            return None
        return ExamStatus(entry["status"])

    def load_all(self) -> Dict:
        if not self.filepath.exists():
            return {}
        try:
            with open(self.filepath, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load exam status file: {e}")
            return {}
