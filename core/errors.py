"""Exceptions raised by the exam session engine"""


class ExamEngineError(Exception):
    """Base class for engine errors"""


class ContentUnavailableError(ExamEngineError):
    """Section content (duration, questions) could not be loaded"""

    def __init__(self, section_id: str, reason: str = ""):
        self.section_id = section_id
        self.reason = reason
        message = f"Content unavailable for section {section_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ScoringError(ExamEngineError):
    """The scoring collaborator rejected a submission"""


class PersistenceError(ExamEngineError):
    """A write to the local persistent store failed"""


class DuplicateSignalError(ExamEngineError):
    """A completion signal is already live for this stage"""

    def __init__(self, mock_id: str, stage: str):
        self.mock_id = mock_id
        self.stage = stage
        super().__init__(f"Stage {stage} of mock {mock_id} already signalled completion")
