import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .errors import DataError

logger = logging.getLogger(__name__)

QUOTA_METHODS = ("droop",)
SURPLUS_METHODS = ("fractional",)
TIE_BREAKS = ("lexicographic", "random")


@dataclass(frozen=True)
class Rules:
    """
    Counting rules for one contest.

    Only the Droop quota with fractional (Gregory) surplus transfer is
    supported. The ``lexicographic`` tie-break compares names by Unicode code
    point, so "Zed" sorts before "alice". The ``random`` tie-break draws from
    a generator seeded with ``random_seed``, so a seed is mandatory for it.
    """

    seats: int
    quota: str = "droop"
    surplus_method: str = "fractional"
    precision: float = 1e-6
    tie_break: str = "lexicographic"
    random_seed: Optional[int] = None

    def __post_init__(self):
        if isinstance(self.seats, bool) or not isinstance(self.seats, int):
            raise DataError(f"seats must be an integer, got {self.seats!r}")
        if self.seats <= 0:
            raise DataError(f"seats must be positive, got {self.seats}")
        if self.quota not in QUOTA_METHODS:
            raise DataError(f"Unsupported quota method: {self.quota!r}")
        if self.surplus_method not in SURPLUS_METHODS:
            raise DataError(f"Unsupported surplus method: {self.surplus_method!r}")
        if isinstance(self.precision, bool) or not isinstance(
            self.precision, (int, float)
        ):
            raise DataError(f"precision must be a number, got {self.precision!r}")
        if not self.precision > 0:
            raise DataError(f"precision must be positive, got {self.precision}")
        if self.tie_break not in TIE_BREAKS:
            raise DataError(f"Unsupported tie-break rule: {self.tie_break!r}")
        if self.random_seed is not None and (
            isinstance(self.random_seed, bool) or not isinstance(self.random_seed, int)
        ):
            raise DataError(
                f"random_seed must be an integer, got {self.random_seed!r}"
            )
        if self.tie_break == "random" and self.random_seed is None:
            raise DataError("tie_break 'random' requires a random_seed")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "Rules":
        """
        Build rules from a plain mapping, filling in defaults.

        Args:
            config: Mapping with at least ``seats``

        Returns:
            Validated Rules
        """
        unknown = set(config) - set(cls.__dataclass_fields__)
        if unknown:
            raise DataError(f"Unknown rule keys: {', '.join(sorted(unknown))}")
        if "seats" not in config:
            raise DataError("Rules must specify the number of seats")

        rules = cls(**config)
        logger.debug(f"Loaded rules: {rules.to_dict()}")
        return rules

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
