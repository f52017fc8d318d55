"""
Answer Ledger
Question key -> answer payload, plus the bookmark set
"""

import logging
from typing import Any, Callable, Dict, Iterable, Optional, Set

logger = logging.getLogger(__name__)


class AnswerLedger:
    """
    Holds the candidate's answers and bookmarks for one section.

    Answer values are opaque: strings, string sets or structured values,
    depending on the question type. Mutations are refused silently while
    the ledger is locked (review or after submission), since late UI
    events are expected.
    """

    def __init__(self, on_change: Optional[Callable[[str], None]] = None):
        self.answers: Dict[str, Any] = {}
        self.bookmarks: Set[str] = set()
        self.has_interacted = False
        self.locked = False
        self.on_change = on_change

    @property
    def answered_count(self) -> int:
        return sum(1 for v in self.answers.values() if not _is_blank(v))

    def is_bookmarked(self, key: str) -> bool:
        return key in self.bookmarks

    def set_answer(self, key: str, value: Any) -> bool:
        if self.locked:
            logger.debug(f"Ignoring answer for {key}: ledger locked")
            return False

        first_interaction = not self.has_interacted
        self.has_interacted = True

        if key in self.answers and self.answers[key] == value:
            if first_interaction:
                self._notify("interaction")
            return True

        self.answers[key] = value
        self._notify("answer")
        return True

    def clear_answer(self, key: str) -> bool:
        if self.locked:
            return False
        if key not in self.answers:
            return True
        del self.answers[key]
        self._notify("answer")
        return True

    def toggle_bookmark(self, key: str) -> bool:
        """Flip the bookmark on a question. Returns the new state."""
        if self.locked:
            return key in self.bookmarks
        if key in self.bookmarks:
            self.bookmarks.discard(key)
        else:
            self.bookmarks.add(key)
        self._notify("bookmark")
        return key in self.bookmarks

    def load(self, answers: Dict[str, Any], bookmarks: Iterable[str], has_interacted: bool = False):
        """Replace contents without notifying (used on restore and review)"""
        self.answers = dict(answers)
        self.bookmarks = set(bookmarks)
        self.has_interacted = has_interacted or bool(self.answers)

    def reset(self):
        self.answers = {}
        self.bookmarks = set()
        self.has_interacted = False
        self.locked = False

    def lock(self):
        self.locked = True

    def unlock(self):
        self.locked = False

    def _notify(self, kind: str):
        if self.on_change:
            self.on_change(kind)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) == 0
    return False
