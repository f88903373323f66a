# med_errors.py
# Error taxonomy shared by the record store, preferences and controller.

from typing import Iterable


class PillsError(Exception):
    """Base class for every error raised by the app core."""


class StorageFault(PillsError):
    """Persistence failed (sqlite, file I/O or decryption). Never retried."""


class RecordNotFound(PillsError, LookupError):
    def __init__(self, record_id: int):
        super().__init__(f"no medication with id={record_id}")
        self.record_id = record_id


class ValidationRejected(PillsError, ValueError):
    def __init__(self, missing: Iterable[str]):
        self.missing = tuple(missing)
        super().__init__(f"required fields missing: {', '.join(self.missing)}")


class InvalidTransition(PillsError, RuntimeError):
    def __init__(self, action: str, screen: str):
        super().__init__(f"cannot {action} while {screen}")
        self.action = action
        self.screen = screen
