# engine/mock_exam_engine.py

"""
Mock Orchestrator
Chains several independently mounted sections into one exam:
audio check -> section 1 -> ... -> section N -> results.

Sections are reached by full navigation and never hold a reference to
the orchestrator, so the completion mailbox is the single source of
truth for "did this stage finish".
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from config.settings import MOCK_CONFIG, STORE_CONFIG, MockConfig, StoreConfig
from core.clock import wall_clock_ms
from core.collaborators import ExamStatusCollaborator
from core.errors import PersistenceError
from core.models import CompletionSignal, ExamStatus, StageOutcome
from engine.scheduling import scheduled
from storage.json_storage import MockExamStorage, dumps
from storage.local_store import LocalStore
from storage.mailbox import CompletionMailbox

logger = logging.getLogger(__name__)

AUDIO_CHECK = "audio_check"
RESULTS = "results"


def mock_namespace(mock_id: str, store_config: StoreConfig = STORE_CONFIG) -> List[str]:
    """Key prefixes owned by one mock: section progress, mailbox, orchestrator state"""
    sep = store_config.separator
    return [
        store_config.key(store_config.progress_prefix, mock_id) + sep,
        store_config.key(store_config.mailbox_prefix, mock_id) + sep,
        store_config.key(store_config.orchestrator_prefix, mock_id) + sep,
    ]


def clear_mock(store: LocalStore, mock_id: str, store_config: StoreConfig = STORE_CONFIG) -> int:
    """Delete every persisted key under a mock's namespace"""
    removed = 0
    for prefix in mock_namespace(mock_id, store_config):
        try:
            removed += store.remove_prefix(prefix)
        except PersistenceError as e:
            logger.warning(f"Failed to clear {prefix}: {e}")
    return removed


class MockOrchestrator:
    """
    Multi-stage state machine for one exam attempt.

    `sections` maps stage name -> section id, in exam order.
    """

    def __init__(
        self,
        mock_id: str,
        sections: Dict[str, str],
        *,
        store: LocalStore,
        candidate_id: str,
        status_collaborator: Optional[ExamStatusCollaborator] = None,
        exam_id: Optional[str] = None,
        archive: Optional[MockExamStorage] = None,
        config: MockConfig = MOCK_CONFIG,
        store_config: StoreConfig = STORE_CONFIG,
        now_ms: Callable[[], int] = wall_clock_ms,
    ):
        if not sections:
            raise ValueError("A mock needs at least one section")
        for reserved in (AUDIO_CHECK, RESULTS):
            if reserved in sections:
                raise ValueError(f"'{reserved}' is a reserved stage name")

        self.mock_id = mock_id
        self.sections = dict(sections)
        self.store = store
        self.candidate_id = candidate_id
        self.status_collaborator = status_collaborator
        self.exam_id = exam_id or mock_id
        self.archive = archive
        self.config = config
        self.store_config = store_config
        self._now_ms = now_ms

        self.mailbox = CompletionMailbox(store, mock_id, config=store_config, now_ms=now_ms)

        self.section_stages: List[str] = list(self.sections)
        self.stages: List[str] = (
            ([AUDIO_CHECK] if config.require_audio_check else [])
            + self.section_stages
            + [RESULTS]
        )

        self.current_stage = self.stages[0]
        self.stage_results: Dict[str, Optional[Dict]] = {s: None for s in self.section_stages}
        self.stage_outcomes: Dict[str, StageOutcome] = {s: StageOutcome.PENDING for s in self.section_stages}
        self.early_exit_requested = False
        self.recovered_from = None
        self.started_reported = False
        self.finished = False
        self.mounted = False
        self._dirty = False

    # ── Keys ──

    def _key(self, name: str) -> str:
        return self.store_config.key(self.store_config.orchestrator_prefix, self.mock_id, name)

    @property
    def namespace_prefixes(self) -> List[str]:
        return mock_namespace(self.mock_id, self.store_config)

    # ── Derived state ──

    def stage_index(self, stage: str) -> int:
        return self.stages.index(stage)

    def active_section(self) -> Optional[Tuple[str, str]]:
        """(stage, section_id) the candidate should be taking now, if any"""
        if self.current_stage in self.sections:
            return self.current_stage, self.sections[self.current_stage]
        return None

    @property
    def is_finished(self) -> bool:
        return self.finished

    # ── Mount / recovery ──

    async def mount(self) -> str:
        """
        Restore progress, then poll once immediately so a signal written
        before mounting is never missed.
        """
        if self.archive and self.archive.mock_attempt_exists(self.candidate_id, self.mock_id):
            self._load_archived()
            self.mounted = True
            return self.current_stage

        self._recover()
        await self.poll()

        if not self.finished and self.early_exit_requested:
            active = self.active_section()
            if active:
                self.mailbox.request_force_submit(active[0])
            else:
                await self._finish_early()

        if not self.finished and self.current_stage != AUDIO_CHECK:
            await self._report_started()

        self.mounted = True
        logger.info(f"Mock {self.mock_id} mounted at stage {self.current_stage} (from {self.recovered_from})")
        return self.current_stage

    def _recover(self):
        self._load_results()
        self.early_exit_requested = self.store.get(self._key("earlyExit")) == "true"
        self.started_reported = self.store.get(self._key("started")) == "true"

        persisted = self.store.get(self._key("currentStage"))
        if persisted is not None and persisted not in self.stages:
            logger.warning(f"Ignoring unknown persisted stage {persisted!r} for mock {self.mock_id}")
            persisted = None

        furthest = self._furthest_signalled_stage()

        if furthest is not None:
            # (a) a signal may have been written just before our own state write
            self.current_stage = persisted or self.stages[0]
            self.recovered_from = "signal"
            logger.info(f"Mock {self.mock_id} recovering from completion signal of {furthest}")
        elif persisted is not None:
            # (b)
            self.current_stage = persisted
            self.recovered_from = "persisted"
        else:
            # (c)
            self.current_stage = self.stages[0]
            self.recovered_from = "default"

        # Never sit before a stage that already has a result
        for stage in self.section_stages:
            if self.stage_results[stage] is not None and self.stage_index(self.current_stage) <= self.stage_index(stage):
                self.current_stage = self.stages[self.stage_index(stage) + 1]

    def _furthest_signalled_stage(self) -> Optional[str]:
        for stage in reversed(self.section_stages):
            if self.mailbox.has_signal(stage):
                return stage
        return None

    def _load_results(self):
        raw_results = self.store.get(self._key("stageResults"))
        raw_outcomes = self.store.get(self._key("stageOutcomes"))

        try:
            if raw_results:
                saved = json.loads(raw_results)
                for stage in self.section_stages:
                    self.stage_results[stage] = saved.get(stage)
            if raw_outcomes:
                saved = json.loads(raw_outcomes)
                for stage in self.section_stages:
                    if stage in saved:
                        self.stage_outcomes[stage] = StageOutcome(saved[stage])
        except (ValueError, AttributeError) as e:
            logger.error(f"Unreadable orchestrator state for mock {self.mock_id}: {e}")

    def _load_archived(self):
        record = self.archive.load_mock_attempt(self.candidate_id, self.mock_id) or {}
        for stage in self.section_stages:
            self.stage_results[stage] = record.get("stage_results", {}).get(stage)
            outcome = record.get("stage_outcomes", {}).get(stage)
            if outcome:
                self.stage_outcomes[stage] = StageOutcome(outcome)
        self.early_exit_requested = bool(record.get("early_exit"))
        self.current_stage = RESULTS
        self.finished = True
        self.recovered_from = "archive"
        self.clear()
        logger.info(f"Mock {self.mock_id} already finished by {self.candidate_id}; showing results")

    def _persist(self):
        try:
            self.store.set(self._key("stageResults"), dumps(self.stage_results))
            self.store.set(self._key("stageOutcomes"), dumps({s: o.value for s, o in self.stage_outcomes.items()}))
            self.store.set(self._key("earlyExit"), "true" if self.early_exit_requested else "false")
            self.store.set(self._key("currentStage"), self.current_stage)
            self._dirty = False
        except PersistenceError as e:
            self._dirty = True
            logger.warning(f"Failed to persist mock {self.mock_id} state, will retry: {e}")

    # ── Transitions ──

    async def complete_audio_check(self) -> bool:
        if self.current_stage != AUDIO_CHECK:
            logger.warning(f"Audio check already done for mock {self.mock_id}")
            return False

        self.current_stage = self.section_stages[0]
        self._persist()
        logger.info(f"Mock {self.mock_id} audio check complete, starting {self.current_stage}")
        await self._report_started()
        return True

    async def poll(self) -> bool:
        """Consume completion signals. Returns True if the stage advanced."""
        if self.finished:
            return False

        if self._dirty:
            self._persist()

        before = self.current_stage
        for stage in self.section_stages:
            signal = self.mailbox.peek(stage)
            if signal is None:
                continue
            self._apply_signal(signal)
            # The signal is only deleted once the state it produced is persisted
            if not self._dirty:
                self.mailbox.consume(stage)
            if self.current_stage == RESULTS:
                break

        if self.current_stage == RESULTS:
            await self._finalize()

        return self.current_stage != before

    def _apply_signal(self, signal: CompletionSignal) -> bool:
        stage = signal.stage
        if stage not in self.stage_results:
            logger.warning(f"Completion signal for unknown stage {stage!r} in mock {self.mock_id}")
            return False

        idx = self.stage_index(stage)
        cur = self.stage_index(self.current_stage)

        if self.stage_results[stage] is not None:
            logger.warning(f"Stale completion signal for already recorded stage {stage}; discarding")
            return False

        if idx > cur:
            logger.warning(
                f"Mock {self.mock_id} desync: signal for {stage} while at {self.current_stage}; fast-forwarding"
            )
            for skipped in self.stages[cur:idx]:
                if skipped in self.stage_outcomes and self.stage_results[skipped] is None:
                    self.stage_outcomes[skipped] = StageOutcome.SKIPPED

        early = signal.early_exit or self.early_exit_requested
        self.stage_results[stage] = signal.result
        self.stage_outcomes[stage] = StageOutcome.EARLY_EXIT if early else StageOutcome.COMPLETED

        if early:
            self.early_exit_requested = True
            self._skip_remaining(after=idx)
            self.current_stage = RESULTS
            logger.info(f"Mock {self.mock_id} early exit after {stage}")
        else:
            following = self.stages[idx + 1]
            if self.stage_index(following) > cur:
                self.current_stage = following
            logger.info(f"Mock {self.mock_id} stage {stage} complete, now at {self.current_stage}")

        self._persist()
        return True

    def _skip_remaining(self, after: int):
        for stage in self.stages[after + 1:]:
            if stage in self.stage_outcomes and self.stage_results[stage] is None:
                self.stage_outcomes[stage] = StageOutcome.SKIPPED

    async def request_early_exit(self) -> bool:
        """
        Broadcast a force submit to the active section. The jump to results
        happens when its completion signal arrives.
        """
        if self.finished or self.current_stage == RESULTS:
            logger.info(f"Mock {self.mock_id} already finished; early exit ignored")
            return False

        active = self.active_section()
        if self.early_exit_requested:
            if active:
                self.mailbox.request_force_submit(active[0])
            return False

        self.early_exit_requested = True
        self._persist()
        logger.info(f"Early exit requested for mock {self.mock_id} at {self.current_stage}")

        if active:
            self.mailbox.request_force_submit(active[0])
        else:
            await self._finish_early()
        return True

    async def _finish_early(self):
        self._skip_remaining(after=self.stage_index(self.current_stage) - 1)
        self.current_stage = RESULTS
        self._persist()
        await self._finalize()

    async def _finalize(self):
        if self.finished:
            return
        self.finished = True
        self.current_stage = RESULTS

        if self.archive:
            try:
                self.archive.save_mock_attempt(self.results_record())
            except (OSError, TypeError) as e:
                logger.error(f"Failed to archive mock {self.mock_id}: {e}")

        if any(r is not None for r in self.stage_results.values()):
            await self._report_started()
        await self._report_status(ExamStatus.COMPLETED)
        self.clear()
        logger.info(f"Mock {self.mock_id} finished: {self.summary()}")

    async def _report_started(self):
        """STARTED goes out once per attempt, however the first section was reached"""
        if self.started_reported:
            return
        self.started_reported = True
        try:
            self.store.set(self._key("started"), "true")
        except PersistenceError as e:
            logger.warning(f"Failed to record start of mock {self.mock_id}: {e}")
        await self._report_status(ExamStatus.STARTED)

    async def _report_status(self, status: ExamStatus):
        if self.status_collaborator is None:
            return
        try:
            await self.status_collaborator.set_exam_status(self.exam_id, status)
        except Exception:
            # Status reporting never blocks the exam flow
            logger.exception(f"Failed to set exam {self.exam_id} status to {status.value}")

    def clear(self) -> int:
        return clear_mock(self.store, self.mock_id, self.store_config)

    # ── Reporting ──

    def results_record(self) -> Dict:
        return {
            "candidate_id": self.candidate_id,
            "mock_id": self.mock_id,
            "exam_id": self.exam_id,
            "sections": self.sections,
            "stage_results": self.stage_results,
            "stage_outcomes": {s: o.value for s, o in self.stage_outcomes.items()},
            "early_exit": self.early_exit_requested,
            "finished_at": datetime.now().isoformat(),
        }

    def summary(self) -> str:
        parts = []
        for stage in self.section_stages:
            result = self.stage_results[stage]
            if result:
                parts.append(f"{stage}={result.get('correctCount', 0)}/{result.get('totalCount', 0)}")
            else:
                parts.append(f"{stage}={self.stage_outcomes[stage].value}")
        return ", ".join(parts)

    @asynccontextmanager
    async def running(self):
        """Own the mailbox poll for as long as the block runs"""
        if not self.mounted:
            await self.mount()
        async with scheduled((self.config.poll_interval, self.poll, f"poll:{self.mock_id}")):
            yield self
