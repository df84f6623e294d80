"""Exception types raised at the engine boundary."""

from typing import Iterable, List


class SqmError(Exception):
    """Base class for all controller errors."""


class ValidationError(SqmError):
    """Configuration or imported data rejected. Carries every violation."""

    def __init__(self, violations: Iterable[str]):
        self.violations: List[str] = list(violations)
        super().__init__("; ".join(self.violations) or "validation failed")


class ParseError(SqmError):
    """Malformed speedtest payload."""

    def __init__(self, problems: Iterable[str]):
        self.problems: List[str] = list(problems)
        super().__init__("; ".join(self.problems) or "unparseable speedtest result")


class ProbeUnavailable(SqmError):
    """Latency probe produced no reading; the adjustment cycle is skipped."""


class StateError(SqmError):
    """Operation invoked in the wrong lifecycle state."""
