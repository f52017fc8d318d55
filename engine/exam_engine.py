"""
Exam Engine Module
Timed section sessions: status machine, crash-safe progress and the
submission pipeline. One SectionSession per mounted section.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional

from config.settings import SESSION_CONFIG, SessionConfig
from core.clock import SessionClock, wall_clock_ms
from core.collaborators import ContentProvider, ScoringCollaborator
from core.errors import DuplicateSignalError, PersistenceError
from core.ledger import AnswerLedger
from core.models import (
    FinishReason,
    PersistedProgress,
    SectionContent,
    SectionStatus,
    SubmissionResult,
    SubmitFailure,
    SubmitOutcome,
)
from engine.scheduling import scheduled
from storage.json_storage import AttemptStorage, ProgressStorage
from storage.local_store import LocalStore
from storage.mailbox import CompletionMailbox

logger = logging.getLogger(__name__)


class SectionSession:
    """
    One timed section instance.

    TAKING <-> PAUSED, TAKING/PAUSED -> COMPLETED (finish or expiry),
    any -> REVIEWING (historic attempt), REVIEWING/COMPLETED -> TAKING (retake).

    When constructed with a mailbox and stage the session is orchestrated:
    its progress lives under the mock namespace, a successful submission
    posts a completion signal, and it honours force-submit requests.
    """

    def __init__(
        self,
        section_id: str,
        duration_seconds: float,
        *,
        progress: ProgressStorage,
        scoring: ScoringCollaborator,
        candidate_id: Optional[str],
        mailbox: Optional[CompletionMailbox] = None,
        stage: Optional[str] = None,
        content: Optional[SectionContent] = None,
        config: SessionConfig = SESSION_CONFIG,
        now_ms: Callable[[], int] = wall_clock_ms,
    ):
        self.section_id = section_id
        self.candidate_id = candidate_id
        self.progress = progress
        self.scoring = scoring
        self.mailbox = mailbox
        self.stage = stage
        self.content = content
        self.config = config
        self._now_ms = now_ms

        self.clock = SessionClock(duration_seconds, now_ms=now_ms, on_expire=self._on_clock_expired)
        self.ledger = AnswerLedger(on_change=self._on_ledger_change)

        self.status = SectionStatus.TAKING
        self.attempt_id: Optional[str] = None
        self.result: Optional[SubmissionResult] = None
        self.finish_reason: Optional[FinishReason] = None
        self.last_error = ""

        # Submission guards
        self.in_flight = False
        self._pending: Optional[FinishReason] = None
        self._expiry_handled = False
        self._forced = False
        self._unposted_signal: Optional[SubmissionResult] = None
        self._attempt_ids: List[str] = []
        self._last_saved_ms: Optional[int] = None

        self.closed = False
        self.abandoned = False
        self.restored = self._restore()

    # ── Derived state ──

    @property
    def mock_id(self) -> Optional[str]:
        return self.mailbox.mock_id if self.mailbox else None

    @property
    def is_orchestrated(self) -> bool:
        return self.mailbox is not None and self.stage is not None

    @property
    def duration_seconds(self) -> float:
        return self.clock.duration_seconds

    @property
    def remaining_seconds(self) -> float:
        return self.clock.remaining_seconds

    @property
    def display_seconds(self) -> int:
        return self.clock.display_seconds

    @property
    def answers(self) -> Dict[str, Any]:
        return self.ledger.answers

    @property
    def bookmarks(self):
        return self.ledger.bookmarks

    @property
    def has_interacted(self) -> bool:
        return self.ledger.has_interacted

    @property
    def is_running(self) -> bool:
        return self.clock.running

    @property
    def is_active(self) -> bool:
        """True while there is in-progress work worth checkpointing"""
        return (
            not self.closed
            and self.status in (SectionStatus.TAKING, SectionStatus.PAUSED)
            and (self.clock.started or self.ledger.has_interacted)
        )

    @property
    def expiry_pending(self) -> bool:
        return self._pending is not None

    # ── Restore / persistence ──

    def _restore(self) -> bool:
        saved = self.progress.load(self.section_id, self.mock_id)
        if saved is None:
            return False

        remaining = saved.remaining_seconds
        offline = 0.0
        if saved.saved_at_ms:
            offline = max(0.0, (self._now_ms() - saved.saved_at_ms) / 1000)

        if self.config.deduct_offline_time and saved.started_at_ms is not None:
            remaining = max(0.0, remaining - offline)
            logger.info(f"Deducted {offline:.1f}s offline time from section {self.section_id}")
        elif offline:
            logger.info(f"Section {self.section_id} was away for {offline:.1f}s; time not deducted")

        self.ledger.load(saved.answers, saved.bookmarks, saved.has_interacted)
        self.clock.restore(remaining, saved.started_at_ms)
        self.status = SectionStatus.PAUSED

        logger.info(
            f"Restored section {self.section_id} paused with {remaining:.1f}s left "
            f"and {len(saved.answers)} answers"
        )
        return True

    def snapshot(self) -> PersistedProgress:
        return PersistedProgress(
            answers=dict(self.ledger.answers),
            bookmarks=sorted(self.ledger.bookmarks),
            remaining_seconds=self.clock.remaining_seconds,
            started_at_ms=self.clock.started_at_ms,
            saved_at_ms=self._now_ms(),
            has_interacted=self.ledger.has_interacted,
        )

    def save(self) -> bool:
        """Write-through checkpoint. Never raises; failures are retried by flush."""
        if self.closed or self.status not in (SectionStatus.TAKING, SectionStatus.PAUSED):
            return False
        snapshot = self.snapshot()
        saved = self.progress.save(self.section_id, snapshot, self.mock_id)
        if saved:
            self._last_saved_ms = snapshot.saved_at_ms
        return saved

    def flush(self) -> bool:
        """Safety-net re-save of the full snapshot"""
        self._retry_signal()
        if not self.is_active:
            return False
        return self.save()

    def flush_if_due(self) -> bool:
        """
        flush() at most once per flush_interval. For hosts that drive the
        session from their own render loop instead of running().
        """
        due = (
            self._last_saved_ms is None
            or self._now_ms() - self._last_saved_ms >= self.config.flush_interval * 1000
        )
        if not due and self._unposted_signal is None:
            return False
        return self.flush()

    # ── Answer ledger ──

    def set_answer(self, question_key: str, value: Any) -> bool:
        if self.closed or self.status in (SectionStatus.REVIEWING, SectionStatus.COMPLETED):
            return False
        return self.ledger.set_answer(question_key, value)

    def clear_answer(self, question_key: str) -> bool:
        if self.closed or self.status in (SectionStatus.REVIEWING, SectionStatus.COMPLETED):
            return False
        return self.ledger.clear_answer(question_key)

    def toggle_bookmark(self, question_key: str) -> bool:
        if self.closed:
            return self.ledger.is_bookmarked(question_key)
        return self.ledger.toggle_bookmark(question_key)

    def _on_ledger_change(self, kind: str):
        if (
            kind in ("answer", "interaction")
            and self.config.start_on_interaction
            and self.status == SectionStatus.TAKING
            and not self.clock.started
        ):
            self.clock.start()
            logger.info(f"Section {self.section_id} clock started on first interaction")
        self.save()

    # ── Transitions ──

    def start(self) -> bool:
        if self.status == SectionStatus.PAUSED:
            return self.resume()
        if self.status != SectionStatus.TAKING or self.clock.started or self.closed:
            logger.warning(f"Cannot start section {self.section_id} from {self.status.value}")
            return False

        self.clock.start()
        logger.info(f"Started section {self.section_id} ({self.duration_seconds:.0f}s)")
        self.save()
        return True

    def pause(self) -> bool:
        if self.status != SectionStatus.TAKING or self.closed:
            logger.warning(f"Cannot pause section {self.section_id} from {self.status.value}")
            return False

        self.clock.pause()
        self.status = SectionStatus.PAUSED
        logger.info(f"Paused section {self.section_id} with {self.remaining_seconds:.1f}s left")
        self.save()
        return True

    def resume(self) -> bool:
        if self.status != SectionStatus.PAUSED or self.closed:
            logger.warning(f"Cannot resume section {self.section_id} from {self.status.value}")
            return False

        self.clock.resume()
        self.status = SectionStatus.TAKING
        logger.info(f"Resumed section {self.section_id} with {self.remaining_seconds:.1f}s left")
        self.save()
        return True

    def enter_review(self, attempt_id: str, answers: Dict[str, Any], bookmarks: Iterable[str] = ()) -> bool:
        """Show a completed attempt read-only"""
        if self.in_flight or self.closed:
            return False

        self.clock.stop()
        self.ledger.load(answers, bookmarks, has_interacted=True)
        self.ledger.lock()
        self.attempt_id = attempt_id
        self._pending = None
        self.status = SectionStatus.REVIEWING
        logger.info(f"Reviewing attempt {attempt_id} of section {self.section_id}")
        return True

    def retake(self) -> bool:
        """Throw away the previous attempt and start over with a full clock"""
        if self.status not in (SectionStatus.REVIEWING, SectionStatus.COMPLETED) or self.closed:
            logger.warning(f"Cannot retake section {self.section_id} from {self.status.value}")
            return False
        if self.is_orchestrated:
            logger.warning(f"Section {self.section_id} is part of mock {self.mock_id}; retake refused")
            return False

        self.ledger.reset()
        self.progress.clear(self.section_id, self.mock_id)
        self.clock.reset()
        self.attempt_id = None
        self.result = None
        self.finish_reason = None
        self.last_error = ""
        self._pending = None
        self._expiry_handled = False
        self._forced = False
        self.status = SectionStatus.TAKING
        logger.info(f"Retaking section {self.section_id}")
        return True

    def abandon(self):
        """Terminal exit without submission"""
        self.progress.clear(self.section_id, self.mock_id)
        self.clock.stop()
        self.ledger.lock()
        self.abandoned = True
        self.closed = True
        logger.info(f"Abandoned section {self.section_id}")

    def close(self):
        """Tear down: final checkpoint, then refuse further work"""
        if self.closed:
            return
        if self.is_active:
            self.save()
        self.closed = True

    # ── Clock / mailbox driven events ──

    def tick(self) -> float:
        if self.closed:
            return self.remaining_seconds

        if self.status == SectionStatus.TAKING:
            self.clock.tick()

        if (
            self.is_orchestrated
            and self.status in (SectionStatus.TAKING, SectionStatus.PAUSED)
            and not self._forced
            and self.mailbox.force_requested(self.stage)
        ):
            self._forced = True
            self._pending = FinishReason.FORCED
            logger.info(f"Force submit received for section {self.section_id}")

        return self.remaining_seconds

    def _on_clock_expired(self):
        if self._expiry_handled:
            return
        self._expiry_handled = True

        if self.in_flight:
            logger.info(f"Section {self.section_id} expired while a submission is in flight; ignoring")
            return

        if self._pending is None:
            self._pending = FinishReason.TIMEOUT
        logger.info(f"Section {self.section_id} time is up, submitting")

    async def drain_pending(self) -> Optional[SubmitOutcome]:
        """Run an automatic submission queued by expiry or force submit"""
        if self._pending is None:
            return None

        reason = self._pending
        self._pending = None
        outcome = await self.submit(reason)
        if not outcome.ok and outcome.failure == SubmitFailure.SCORING_FAILED:
            logger.error(f"Automatic {reason.value} submission of {self.section_id} failed: {outcome.error}")
        return outcome

    async def _tick_and_drain(self):
        self.tick()
        await self.drain_pending()

    @asynccontextmanager
    async def running(self):
        """Own the tick and flush schedules for as long as the block runs"""
        async with scheduled(
            (self.config.tick_interval, self._tick_and_drain, f"tick:{self.section_id}"),
            (self.config.flush_interval, self.flush, f"flush:{self.section_id}"),
        ):
            try:
                yield self
            finally:
                self.close()

    # ── Submission pipeline ──

    async def finish(self) -> SubmitOutcome:
        return await self.submit(FinishReason.MANUAL)

    async def submit(self, reason: FinishReason = FinishReason.MANUAL) -> SubmitOutcome:
        if self.abandoned or self.closed:
            return SubmitOutcome.rejected(SubmitFailure.CLOSED, "Section is closed")

        if self.in_flight:
            logger.debug(f"Submission of {self.section_id} already in flight, rejecting duplicate")
            return SubmitOutcome.rejected(SubmitFailure.IN_FLIGHT)

        if self.status in (SectionStatus.COMPLETED, SectionStatus.REVIEWING):
            return SubmitOutcome.rejected(SubmitFailure.ALREADY_COMPLETED)

        if not self.candidate_id or not self.section_id:
            return SubmitOutcome.rejected(
                SubmitFailure.MISSING_CONTEXT, "Missing candidate or section reference"
            )

        if self.is_orchestrated and self.mailbox.has_signal(self.stage):
            logger.info(f"Stage {self.stage} already signalled completion; submission rejected")
            return SubmitOutcome.rejected(SubmitFailure.DUPLICATE_SIGNAL)

        early_exit = reason == FinishReason.FORCED or self._forced
        self.in_flight = True
        self.last_error = ""

        # Expiry landing here is swallowed by the in-flight guard
        if self.status == SectionStatus.TAKING:
            self.clock.tick()
        time_taken = max(0.0, self.clock.elapsed_seconds)
        answers = dict(self.ledger.answers)

        try:
            result = await asyncio.wait_for(
                self.scoring.score_and_persist(self.section_id, answers, time_taken),
                timeout=self.config.submit_timeout,
            )
        except asyncio.TimeoutError:
            return self._submission_failed(f"Scoring timed out after {self.config.submit_timeout:.0f}s")
        except Exception as e:
            logger.exception(f"Scoring collaborator failed for section {self.section_id}")
            return self._submission_failed(str(e) or type(e).__name__)
        finally:
            self.in_flight = False

        if result.attempt_id in self._attempt_ids:
            return self._submission_failed(f"Attempt id {result.attempt_id} was already used")

        return self._complete(result, reason, early_exit, time_taken)

    def _submission_failed(self, error: str) -> SubmitOutcome:
        self.last_error = error
        logger.warning(f"Submission of section {self.section_id} failed: {error}")
        return SubmitOutcome.rejected(SubmitFailure.SCORING_FAILED, error)

    def _complete(self, result: SubmissionResult, reason: FinishReason, early_exit: bool, time_taken: float) -> SubmitOutcome:
        result.early_exit = early_exit
        if not result.time_taken_seconds:
            result.time_taken_seconds = round(time_taken, 3)

        self.attempt_id = result.attempt_id
        self._attempt_ids.append(result.attempt_id)
        self.result = result
        self.finish_reason = FinishReason.FORCED if early_exit else reason
        self._pending = None

        self.clock.stop()
        self.ledger.lock()
        self.status = SectionStatus.COMPLETED
        self.progress.clear(self.section_id, self.mock_id)

        logger.info(
            f"Section {self.section_id} submitted ({self.finish_reason.value}): "
            f"attempt={result.attempt_id} score={result.score} "
            f"{result.correct_count}/{result.total_count}"
        )

        if self.is_orchestrated:
            self._unposted_signal = result
            self._retry_signal()

        return SubmitOutcome.success(result)

    def _retry_signal(self):
        if self._unposted_signal is None:
            return

        result = self._unposted_signal
        try:
            self.mailbox.post(self.stage, result.to_dict(), early_exit=result.early_exit)
            self.mailbox.clear_force_submit(self.stage)
        except DuplicateSignalError:
            logger.warning(f"Stage {self.stage} already had a live signal; keeping the existing one")
        except PersistenceError as e:
            logger.warning(f"Failed to post completion signal for {self.stage}, will retry: {e}")
            return
        self._unposted_signal = None


class ExamEngine:
    """
    Opens section sessions: loads content, wires storage, scoring and,
    for mock stages, the completion mailbox.
    """

    def __init__(
        self,
        content_provider: ContentProvider,
        store: LocalStore,
        scorer_factory: Callable[[str, SectionContent], ScoringCollaborator],
        attempts: Optional[AttemptStorage] = None,
        config: SessionConfig = SESSION_CONFIG,
        now_ms: Callable[[], int] = wall_clock_ms,
    ):
        self.content_provider = content_provider
        self.store = store
        self.progress = ProgressStorage(store)
        self.scorer_factory = scorer_factory
        self.attempts = attempts
        self.config = config
        self._now_ms = now_ms

    async def open_section(
        self,
        section_id: str,
        candidate_id: Optional[str],
        mock_id: Optional[str] = None,
        stage: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> SectionSession:
        """Raises ContentUnavailableError; the timer is never defaulted"""
        content = await self.content_provider.get_section_content(section_id)

        mailbox = None
        if mock_id:
            mailbox = CompletionMailbox(self.store, mock_id, now_ms=self._now_ms)

        session = SectionSession(
            section_id,
            duration_seconds or content.duration_seconds,
            progress=self.progress,
            scoring=self.scorer_factory(candidate_id, content),
            candidate_id=candidate_id,
            mailbox=mailbox,
            stage=stage or (section_id if mock_id else None),
            content=content,
            config=self.config,
            now_ms=self._now_ms,
        )
        logger.info(
            f"Opened section {section_id} for candidate={candidate_id} "
            f"mock={mock_id} status={session.status.value}"
        )
        return session

    async def open_review(self, section_id: str, candidate_id: str) -> Optional[SectionSession]:
        """Open the candidate's latest attempt of a section read-only"""
        if self.attempts is None:
            return None

        attempt = self.attempts.load_latest(candidate_id, section_id)
        if attempt is None:
            logger.info(f"No attempt to review for candidate={candidate_id} section={section_id}")
            return None

        session = await self.open_section(section_id, candidate_id)
        session.enter_review(attempt["attempt_id"], attempt.get("answers", {}))
        return session

    def abandon_section(self, section_id: str, mock_id: Optional[str] = None) -> bool:
        return self.progress.clear(section_id, mock_id)
