"""Error types raised by the wizard core and its services."""

from typing import Optional


class WizardError(Exception):
    """Base class for every error the wizard reports."""


class InvalidStageTransition(WizardError):
    """A stage change that the transition table does not allow.

    Only programmatic jumps raise this; the Back/Next/Cancel actions are
    guarded and simply do nothing when the move is not possible.
    """

    def __init__(self, current, target):
        super().__init__(f"cannot move from {current.name} to {target.name}")
        self.current = current
        self.target = target


class ParseFailure(WizardError):
    def __init__(self, path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = str(path)
        self.reason = reason


class AnalysisRejected(WizardError):
    """Analysis was requested but there is nothing it could run on."""


class ReportWriteFailure(WizardError):
    def __init__(self, fmt: str, path, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"could not write {fmt} report to {path}{detail}")
        self.fmt = fmt
        self.path = str(path)
        self.cause = cause
