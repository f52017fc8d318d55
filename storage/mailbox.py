"""
Completion Mailbox
One-shot "stage finished, here is the result" messages between a section
and an orchestrator that may never be mounted at the same time.
"""

import json
import logging
from typing import Callable, Dict, List, Optional

from core.clock import wall_clock_ms
from core.errors import DuplicateSignalError
from core.models import CompletionSignal
from config.settings import STORE_CONFIG, StoreConfig
from storage.json_storage import dumps
from storage.local_store import LocalStore

logger = logging.getLogger(__name__)

SENTINEL = "true"


class CompletionMailbox:
    """
    Durable, namespaced channel on top of the local store.

    mailbox:{mock_id}:{stage}:completed     -> "true"
    mailbox:{mock_id}:{stage}:result        -> serialized CompletionSignal
    mailbox:{mock_id}:{stage}:force_submit  -> "true"

    Delivery is at-least-once; the reader consumes (reads, then deletes)
    each signal.
    """

    def __init__(
        self,
        store: LocalStore,
        mock_id: str,
        config: StoreConfig = STORE_CONFIG,
        now_ms: Callable[[], int] = wall_clock_ms,
    ):
        if not mock_id:
            raise ValueError("mock_id is required for a completion mailbox")
        self.store = store
        self.mock_id = mock_id
        self.config = config
        self._now_ms = now_ms

    @property
    def prefix(self) -> str:
        return self.config.key(self.config.mailbox_prefix, self.mock_id) + self.config.separator

    def _key(self, stage: str, suffix: str) -> str:
        return self.config.key(self.config.mailbox_prefix, self.mock_id, stage, suffix)

    # ── Completion signals ──

    def has_signal(self, stage: str) -> bool:
        return self.store.get(self._key(stage, "completed")) == SENTINEL

    def post(self, stage: str, result: Dict, early_exit: bool = False) -> CompletionSignal:
        """Announce that a stage finished. Result is written before the sentinel."""
        if self.has_signal(stage):
            raise DuplicateSignalError(self.mock_id, stage)

        signal = CompletionSignal(
            stage=stage,
            result=result,
            written_at_ms=self._now_ms(),
            early_exit=early_exit,
        )
        self.store.set(self._key(stage, "result"), dumps(signal.to_dict()))
        self.store.set(self._key(stage, "completed"), SENTINEL)

        logger.info(f"Posted completion signal mock={self.mock_id} stage={stage} early_exit={early_exit}")
        return signal

    def peek(self, stage: str) -> Optional[CompletionSignal]:
        if not self.has_signal(stage):
            return None

        raw = self.store.get(self._key(stage, "result"))
        if raw is None:
            # Sentinel without payload: the writer died between the two writes
            logger.warning(f"Completion sentinel without result for stage {stage}")
            return None

        try:
            return CompletionSignal.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Discarding corrupt completion signal for stage {stage}: {e}")
            self._delete(stage)
            return None

    def consume(self, stage: str) -> Optional[CompletionSignal]:
        """Read a signal once and delete it"""
        signal = self.peek(stage)
        if signal is not None:
            self._delete(stage)
            logger.info(f"Consumed completion signal mock={self.mock_id} stage={stage}")
        return signal

    def pending_stages(self, stages: List[str]) -> List[str]:
        return [s for s in stages if self.has_signal(s)]

    def _delete(self, stage: str):
        self.store.remove(self._key(stage, "completed"))
        self.store.remove(self._key(stage, "result"))

    # ── Force submit broadcast ──

    def request_force_submit(self, stage: str):
        self.store.set(self._key(stage, "force_submit"), SENTINEL)
        logger.info(f"Force submit requested mock={self.mock_id} stage={stage}")

    def force_requested(self, stage: str) -> bool:
        return self.store.get(self._key(stage, "force_submit")) == SENTINEL

    def clear_force_submit(self, stage: str):
        self.store.remove(self._key(stage, "force_submit"))

    def clear(self) -> int:
        """Remove every mailbox key of this mock"""
        return self.store.remove_prefix(self.prefix)
