import json

import pytest

from core.errors import ContentUnavailableError
from core.models import ExamStatus, PersistedProgress
from storage.json_storage import (
    AttemptStorage,
    JsonContentProvider,
    JsonExamStatusStore,
    MockExamStorage,
    ProgressStorage,
    dumps,
)

from conftest import make_content, run


def write_json(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")


def test_dumps_is_deterministic():
    assert dumps({"b": {"y", "x"}, "a": 1}) == '{"a":1,"b":["x","y"]}'


def test_progress_keys_are_namespaced(store):
    progress = ProgressStorage(store)
    assert progress.key("reading") == "progress:reading"
    assert progress.key("reading", "mock-1") == "progress:mock-1:reading"


def test_progress_round_trip(store):
    progress = ProgressStorage(store)
    saved = PersistedProgress({"1": "A"}, ["2"], 30.0, 123, 456, True)

    assert progress.save("reading", saved)

    assert progress.load("reading") == saved


def test_unreadable_progress_is_ignored(store):
    store.set("progress:reading", "[1, 2")
    assert ProgressStorage(store).load("reading") is None


def test_content_provider_loads_section(tmp_path):
    provider = JsonContentProvider(tmp_path)
    provider.save_section(make_content("reading", duration=2400))

    content = run(provider.get_section_content("reading"))

    assert content.duration_seconds == 2400
    assert [q.key for q in content.questions] == ["1", "2", "3"]
    assert provider.list_sections() == ["reading"]


@pytest.mark.parametrize("data", [
    {"questions": []},
    {"duration_seconds": 0, "questions": []},
    {"duration_seconds": "long", "questions": []},
    {"duration_seconds": 60, "questions": [{"prompt": "no key"}]},
])
def test_content_provider_rejects_bad_content(tmp_path, data):
    write_json(tmp_path / "reading.json", data)

    with pytest.raises(ContentUnavailableError):
        run(JsonContentProvider(tmp_path).get_section_content("reading"))


def test_content_provider_missing_section(tmp_path):
    with pytest.raises(ContentUnavailableError) as exc:
        JsonContentProvider(tmp_path).load_section("speaking")
    assert exc.value.section_id == "speaking"


def test_latest_attempt_wins(tmp_path):
    attempts = AttemptStorage(tmp_path)
    for attempt_id, submitted_at in (("a1", "2024-01-01T10:00:00"), ("a2", "2024-01-02T10:00:00")):
        attempts.save_attempt({
            "attempt_id": attempt_id,
            "candidate_id": "cand-1",
            "section_id": "reading",
            "submitted_at": submitted_at,
            "answers": {"1": {"A"}},
        })

    latest = attempts.load_latest("cand-1", "reading")

    assert latest["attempt_id"] == "a2"
    assert latest["answers"] == {"1": ["A"]}
    assert attempts.load_latest("cand-1", "writing") is None


def test_mock_archive(tmp_path):
    archive = MockExamStorage(tmp_path)
    archive.save_mock_attempt({"candidate_id": "cand-1", "mock_id": "mock-1", "early_exit": False})

    assert archive.mock_attempt_exists("cand-1", "mock-1")
    assert archive.load_mock_attempt("cand-1", "mock-1")["early_exit"] is False
    assert archive.list_candidate_attempts("cand-1") == ["mock-1"]
    assert archive.load_mock_attempt("cand-1", "mock-2") is None


def test_exam_status_store(tmp_path):
    statuses = JsonExamStatusStore(tmp_path / "status.json")

    run(statuses.set_exam_status("mock-1", ExamStatus.STARTED))
    run(statuses.set_exam_status("mock-1", ExamStatus.COMPLETED))

    assert statuses.get_status("mock-1") == ExamStatus.COMPLETED
    assert statuses.get_status("mock-2") is None


def test_archives_skip_unreadable_records_and_leave_no_temp_files(tmp_path):
    archive = MockExamStorage(tmp_path / "mocks")
    archive.save_mock_attempt({"candidate_id": "cand-1", "mock_id": "mock-1"})
    (tmp_path / "mocks" / "cand-1" / "mock-2.json").write_text("{half", encoding="utf-8")

    assert archive.load_mock_attempt("cand-1", "mock-2") is None
    assert archive.list_candidate_attempts("cand-1") == ["mock-1", "mock-2"]
    assert [p.name for p in (tmp_path / "mocks" / "cand-1").iterdir() if p.suffix == ".tmp"] == []

    attempts = AttemptStorage(tmp_path / "sections")
    attempts.save_attempt({"attempt_id": "a1", "candidate_id": "cand-1", "section_id": "reading"})
    (tmp_path / "sections" / "cand-1" / "reading" / "a2.json").write_text("", encoding="utf-8")

    assert attempts.load_latest("cand-1", "reading")["attempt_id"] == "a1"
    assert attempts.list_attempt_ids("cand-1", "reading") == ["a1", "a2"]
