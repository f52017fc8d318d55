import time

import pytest

from config.settings import SessionConfig
from core.errors import ScoringError
from engine.scoring import AnswerKeyScorer, answers_match, score_answers
from storage.json_storage import AttemptStorage

from conftest import make_content, run


def test_answers_match_normalises_text():
    assert answers_match("  Colour ", "colour")
    assert answers_match({"b", "a"}, ["A", "B"])
    assert not answers_match("A", ["A"])
    assert not answers_match("A", None)


def test_score_answers_marks_unattempted():
    content = make_content("reading")
    results = score_answers(content.questions, {"1": "A", "2": "A", "3": " "})

    assert [r["is_correct"] for r in results] == [True, False, False]
    assert [r["is_attempted"] for r in results] == [True, True, False]


def test_scorer_persists_attempt_with_fresh_id(tmp_path):
    attempts = AttemptStorage(tmp_path / "sections")
    scorer = AnswerKeyScorer(make_content("reading"), "cand-1", attempts)

    first = run(scorer.score_and_persist("reading", {"1": "A", "3": "colour"}, 12.3456))
    second = run(scorer.score_and_persist("reading", {}, 1.0))

    assert first.correct_count == 2
    assert first.total_count == 3
    assert first.time_taken_seconds == 12.346
    assert first.attempt_id != second.attempt_id
    assert sorted(attempts.list_attempt_ids("cand-1", "reading")) == sorted([first.attempt_id, second.attempt_id])


def test_scorer_rejects_other_sections(tmp_path):
    scorer = AnswerKeyScorer(make_content("reading"), "cand-1", AttemptStorage(tmp_path))

    with pytest.raises(ScoringError):
        run(scorer.score_and_persist("writing", {}, 0))


class SlowAttemptStorage(AttemptStorage):

    def save_attempt(self, record):
        time.sleep(0.2)
        super().save_attempt(record)


def test_timed_out_submission_leaves_no_orphan_attempt(tmp_path, make_session):
    attempts = SlowAttemptStorage(tmp_path / "sections")
    scorer = AnswerKeyScorer(make_content("reading"), "cand-1", attempts)
    session = make_session(scorer=scorer, config=SessionConfig(submit_timeout=0.05))
    session.set_answer("1", "A")

    outcome = run(session.finish())

    stored = attempts.list_attempt_ids("cand-1", "reading")
    if outcome.ok:
        assert stored == [session.attempt_id]
    else:
        assert stored == []
        assert session.attempt_id is None
