"""
Configuration settings for the Exam Session Engine
All constants and configurable parameters in one place
"""

from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List
import os

# Base paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.environ.get("EXAM_ENGINE_DATA_DIR", BASE_DIR / "data"))
CONTENT_DIR = DATA_DIR / "content"
ATTEMPTS_DIR = DATA_DIR / "attempts"
STORE_FILE = DATA_DIR / "local_store.json"
EXAM_STATUS_FILE = DATA_DIR / "exam_status.json"

LOG_LEVEL = os.environ.get("EXAM_ENGINE_LOG_LEVEL", "INFO")

# Ensure directories exist
for dir_path in [DATA_DIR, CONTENT_DIR, ATTEMPTS_DIR]:
    dir_path.mkdir(parents=True, exist_ok=True)


@dataclass
class SessionConfig:
    """Configuration for a single timed section"""

    # Schedules (seconds)
    tick_interval: float = 1.0
    flush_interval: float = 5.0

    # Scoring call is abandoned after this many seconds
    submit_timeout: float = 30.0

    # Clock stays frozen until the first answer or an explicit start
    start_on_interaction: bool = True

    # Restored sessions keep their saved remaining time unless this is set
    deduct_offline_time: bool = False


@dataclass
class MockConfig:
    """Configuration for the multi-section mock flow"""

    poll_interval: float = 1.0

    # Stage order of a full mock
    sections: List[str] = field(default_factory=lambda: [
        "listening",
        "reading",
        "writing",
    ])

    # Default section durations in seconds
    durations: Dict[str, int] = field(default_factory=lambda: {
        "listening": 40 * 60,
        "reading": 60 * 60,
        "writing": 60 * 60,
    })

    require_audio_check: bool = True


@dataclass
class StoreConfig:
    """Key layout inside the local persistent store"""

    progress_prefix: str = "progress"
    mailbox_prefix: str = "mailbox"
    orchestrator_prefix: str = "orchestrator"
    separator: str = ":"

    def key(self, *parts: str) -> str:
        return self.separator.join(str(p) for p in parts)


# Global config instances
SESSION_CONFIG = SessionConfig()
MOCK_CONFIG = MockConfig()
STORE_CONFIG = StoreConfig()
