"""
Exceptions raised during STV tabulation and transfer attribution.

None of these are retried: counting is a pure computation, so running it
again on the same input reproduces the same failure.
"""

from typing import Optional


class TabulationError(Exception):
    """Base class for all tabulation failures."""


class DataError(TabulationError):
    """Malformed or empty input detected before counting starts."""


class AlgorithmicOverrun(TabulationError):
    """The count exceeded the maximum number of rounds. No partial result."""


class NumericAnomaly(TabulationError):
    """An invalid or non-finite value appeared in the vote arithmetic."""


class AttributionError(TabulationError):
    """
    A round's transfer reconstruction produced an impossible edge.

    Only the reconstruction of that round is invalid; the round records it
    was derived from are unaffected.
    """

    def __init__(self, message: str, round_number: Optional[int] = None):
        super().__init__(message)
        self.round_number = round_number
