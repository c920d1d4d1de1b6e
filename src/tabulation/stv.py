import logging
import random
from dataclasses import asdict, dataclass, field
from decimal import (
    ROUND_HALF_UP,
    Context,
    Decimal,
    DivisionByZero,
    InvalidOperation,
    Overflow,
    localcontext,
)
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd

from .errors import AlgorithmicOverrun, DataError, NumericAnomaly
from .rules import Rules

logger = logging.getLogger(__name__)

MAX_ROUNDS = 100

STANDING = "standing"
ELECTED = "elected"
ELIMINATED = "eliminated"

# 40 significant digits keeps repeated fractional transfers conserving votes
DECIMAL_CONTEXT = Context(
    prec=40,
    rounding=ROUND_HALF_UP,
    traps=[InvalidOperation, DivisionByZero, Overflow],
)

ROUND_COLUMNS = ["round", "candidate_name", "votes", "status"]
META_COLUMNS = [
    "round",
    "quota",
    "exhausted",
    "elected_this_round",
    "eliminated_this_round",
]


@dataclass
class CandidateState:
    """Mutable per-candidate state owned by a single count."""

    name: str
    votes: Decimal = Decimal(0)
    status: str = STANDING
    # (ballot, fragment weight) pairs currently counted for this candidate
    ballots: List[Tuple[Any, Decimal]] = field(default_factory=list)


@dataclass(frozen=True)
class RoundRecord:
    """Snapshot of one candidate at the end of one round."""

    round: int
    candidate_name: str
    votes: float
    status: str


@dataclass(frozen=True)
class RoundMeta:
    """Round-level information: quota, cumulative exhausted, status changes."""

    round: int
    quota: float
    exhausted: float
    elected_this_round: Optional[List[str]]
    eliminated_this_round: Optional[List[str]]


@dataclass
class STVResult:
    """Complete output of one STV count."""

    rounds: List[RoundRecord]
    meta: List[RoundMeta]
    winners: List[str]
    rules: Rules

    def rounds_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(r) for r in self.rounds], columns=ROUND_COLUMNS)

    def meta_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(m) for m in self.meta], columns=META_COLUMNS)

    def stats(self) -> Dict[str, Any]:
        """Summary of the count for downstream consumers."""
        return {
            "number_of_rounds": len(self.meta),
            "winners": list(self.winners),
            "seats": self.rules.seats,
            "first_round_quota": self.meta[0].quota if self.meta else 0.0,
            "precision": self.rules.precision,
        }


class STVTabulator:
    """
    Single Transferable Vote tabulation engine.
    Implements multi-winner RCV using the Droop quota and Gregory
    fractional surplus transfer, with exact decimal arithmetic.
    """

    def __init__(
        self,
        ballots: Iterable[Any],
        rules: Union[Rules, Dict[str, Any]],
        candidates: Optional[Iterable[str]] = None,
    ):
        """
        Initialize STV tabulator.

        Args:
            ballots: Normalized ballots (objects with ordered ``preferences``)
            rules: Counting rules, or a mapping accepted by ``Rules.from_dict``
            candidates: Optional full candidate list, for candidates that
                appear on no ballot

        Raises:
            DataError: No ballots, no candidates, or a ballot ranks a
                candidate outside ``candidates``
        """
        self.rules = rules if isinstance(rules, Rules) else Rules.from_dict(rules)
        self.seats = self.rules.seats
        self.ballots = list(ballots)
        if not self.ballots:
            raise DataError("No ballots to count")
        self.candidate_names = self._collect_candidates(candidates)

        self.rounds: List[RoundRecord] = []
        self.meta: List[RoundMeta] = []
        self.winners: List[str] = []
        self.eliminated: List[str] = []
        self.quota: Optional[Decimal] = None
        self.exhausted = Decimal(0)

        self._candidates: Dict[str, CandidateState] = {}
        self._elected_this_round: List[str] = []
        self._eliminated_this_round: List[str] = []
        self._precision = Decimal(str(self.rules.precision))
        self._rng: Optional[random.Random] = None

    def _collect_candidates(self, candidates: Optional[Iterable[str]]) -> List[str]:
        on_ballots = {name for ballot in self.ballots for name in ballot.preferences}

        if candidates is not None:
            declared = set(candidates)
            unknown = on_ballots - declared
            if unknown:
                raise DataError(
                    f"Ballots rank unknown candidates: {', '.join(sorted(unknown))}"
                )
            names = declared
        else:
            names = on_ballots

        if not names:
            raise DataError("No candidates found in ballot data")
        return sorted(names)

    def calculate_droop_quota(self, total_ballots: int) -> Decimal:
        """
        Calculate Droop quota: floor(total_ballots / (seats + 1)) + 1

        Args:
            total_ballots: Number of ballots considered, empty ones included

        Returns:
            Droop quota
        """
        return Decimal(total_ballots // (self.seats + 1) + 1)

    def run_stv_tabulation(self) -> STVResult:
        """
        Run complete STV tabulation.

        Returns:
            STVResult with round records, round metadata and sorted winners

        Raises:
            AlgorithmicOverrun: More than MAX_ROUNDS rounds were needed
            NumericAnomaly: The vote arithmetic produced an invalid value
        """
        self._reset()
        logger.info("Starting STV tabulation")

        try:
            with localcontext(DECIMAL_CONTEXT):
                self._count()
        except (InvalidOperation, DivisionByZero, Overflow) as e:
            raise NumericAnomaly(f"Invalid arithmetic during STV count: {e!r}") from e

        winners = sorted(self.winners[: self.seats])

        logger.info("STV tabulation complete:")
        logger.info(f"Winners: {winners}")
        logger.info(f"Total rounds: {len(self.meta)}")

        return STVResult(
            rounds=list(self.rounds),
            meta=list(self.meta),
            winners=winners,
            rules=self.rules,
        )

    def _reset(self):
        self.rounds = []
        self.meta = []
        self.winners = []
        self.eliminated = []
        self.exhausted = Decimal(0)
        self._candidates = {
            name: CandidateState(name=name) for name in self.candidate_names
        }
        self._elected_this_round = []
        self._eliminated_this_round = []
        self._rng = (
            random.Random(self.rules.random_seed)  # nosec B311
            if self.rules.tie_break == "random"
            else None
        )

    def _count(self):
        total_ballots = len(self.ballots)
        self.quota = self.calculate_droop_quota(total_ballots)

        logger.info(f"Total ballots: {total_ballots}")
        logger.info(f"Droop quota: {self.quota}")
        logger.info(f"Seats to fill: {self.seats}")

        self._initialize_first_round()

        round_num = 1
        while len(self.winners) < self.seats and self._has_standing_candidates():
            logger.info(f"=== Round {round_num} ===")

            newly_elected = self._elect_candidates_at_quota()
            self.winners.extend(newly_elected)

            for name in newly_elected:
                self._transfer_surplus(name)

            if not newly_elected:
                standing = self._standing_candidates()
                remaining_seats = self.seats - len(self.winners)

                if len(standing) <= remaining_seats:
                    # Every remaining candidate fills a seat; nothing to transfer
                    for candidate in standing:
                        self._mark_elected(candidate)
                        self.winners.append(candidate.name)
                        logger.info(
                            f"{candidate.name} elected as a remaining candidate "
                            f"with {candidate.votes:.4f} votes"
                        )
                else:
                    self._eliminate_candidate(self._find_lowest_candidate(standing))

            self._check_conservation(round_num, total_ballots)
            self._record_round(round_num)

            if len(self.winners) >= self.seats:
                break

            round_num += 1
            if round_num > MAX_ROUNDS:
                raise AlgorithmicOverrun(
                    f"STV counting exceeded maximum rounds ({MAX_ROUNDS})"
                )

    def _initialize_first_round(self):
        for ballot in self.ballots:
            first_choice = self._next_standing_preference(ballot)
            if first_choice is None:
                self.exhausted += 1
                continue
            candidate = self._candidates[first_choice]
            candidate.votes += 1
            candidate.ballots.append((ballot, Decimal(1)))

        logger.info(f"Ballots exhausted before round 1: {self.exhausted}")

    def _next_standing_preference(self, ballot) -> Optional[str]:
        for preference in ballot.preferences:
            candidate = self._candidates.get(preference)
            if candidate is not None and candidate.status == STANDING:
                return preference
        return None

    def _has_standing_candidates(self) -> bool:
        return any(c.status == STANDING for c in self._candidates.values())

    def _standing_candidates(self) -> List[CandidateState]:
        return [c for c in self._candidates.values() if c.status == STANDING]

    def _mark_elected(self, candidate: CandidateState):
        candidate.status = ELECTED
        self._elected_this_round.append(candidate.name)

    def _elect_candidates_at_quota(self) -> List[str]:
        """Elect every standing candidate within precision of the quota."""
        threshold = self.quota - self._precision
        elected = []
        for candidate in self._standing_candidates():
            if candidate.votes >= threshold:
                self._mark_elected(candidate)
                elected.append(candidate.name)
                logger.info(
                    f"{candidate.name} elected with {candidate.votes:.4f} votes"
                )
        return sorted(elected)

    def _transfer_surplus(self, name: str):
        candidate = self._candidates[name]
        surplus = candidate.votes - self.quota

        if surplus <= self._precision:
            return

        transfer_weight = surplus / candidate.votes
        logger.info(
            f"Transferring surplus from {name}: {surplus:.4f} votes "
            f"at value {transfer_weight:.6f}"
        )

        self._distribute_ballots(candidate, transfer_weight)
        candidate.votes = self.quota
        candidate.ballots = []

    def _find_lowest_candidate(
        self, standing: Sequence[CandidateState]
    ) -> CandidateState:
        min_votes = min(c.votes for c in standing)
        lowest = sorted(
            (c for c in standing if c.votes == min_votes), key=lambda c: c.name
        )

        if len(lowest) == 1:
            return lowest[0]

        if self._rng is not None:
            chosen = self._rng.choice(lowest)
        else:
            chosen = lowest[0]
        logger.info(
            f"Tie for lowest between {', '.join(c.name for c in lowest)}; "
            f"{self.rules.tie_break} tie-break selects {chosen.name}"
        )
        return chosen

    def _eliminate_candidate(self, candidate: CandidateState):
        candidate.status = ELIMINATED
        self.eliminated.append(candidate.name)
        self._eliminated_this_round.append(candidate.name)

        logger.info(f"Eliminating {candidate.name} with {candidate.votes:.4f} votes")

        self._distribute_ballots(candidate)
        candidate.votes = Decimal(0)
        candidate.ballots = []

    def _distribute_ballots(
        self, source: CandidateState, transfer_weight: Optional[Decimal] = None
    ):
        """
        Move every ballot fragment held by ``source`` to its next standing
        preference, scaled by ``transfer_weight`` when given.
        """
        transferred: Dict[str, Decimal] = {}
        exhausted = Decimal(0)

        for ballot, weight in source.ballots:
            new_weight = weight if transfer_weight is None else weight * transfer_weight
            next_preference = self._next_standing_preference(ballot)

            if next_preference is None:
                exhausted += new_weight
                continue

            target = self._candidates[next_preference]
            target.votes += new_weight
            target.ballots.append((ballot, new_weight))
            transferred[next_preference] = (
                transferred.get(next_preference, Decimal(0)) + new_weight
            )

        self.exhausted += exhausted

        for to_candidate in sorted(transferred):
            logger.debug(
                f"  -> {transferred[to_candidate]:.4f} votes to {to_candidate}"
            )
        if exhausted:
            logger.debug(f"  -> {exhausted:.4f} votes exhausted")

    def _check_conservation(self, round_num: int, total_ballots: int):
        held = sum((c.votes for c in self._candidates.values()), Decimal(0))
        drift = abs(held + self.exhausted - total_ballots)
        if drift > self._precision:
            raise NumericAnomaly(
                f"Vote total drifted by {drift} in round {round_num}: "
                f"{held} held + {self.exhausted} exhausted != {total_ballots} ballots"
            )

    def _record_round(self, round_num: int):
        for candidate in self._candidates.values():
            if not candidate.votes.is_finite():
                raise NumericAnomaly(
                    f"Non-finite vote total for {candidate.name} in round {round_num}"
                )
            self.rounds.append(
                RoundRecord(
                    round=round_num,
                    candidate_name=candidate.name,
                    votes=float(candidate.votes),
                    status=candidate.status,
                )
            )

        self.meta.append(
            RoundMeta(
                round=round_num,
                quota=float(self.quota),
                exhausted=float(self.exhausted),
                elected_this_round=sorted(self._elected_this_round) or None,
                eliminated_this_round=sorted(self._eliminated_this_round) or None,
            )
        )

        self._elected_this_round = []
        self._eliminated_this_round = []

    def get_round_summary(self) -> pd.DataFrame:
        """
        Get summary of all rounds as a DataFrame.

        Returns:
            DataFrame with round-by-round results
        """
        if not self.rounds:
            return pd.DataFrame()

        meta_by_round = {m.round: m for m in self.meta}
        summary_data = []
        for record in self.rounds:
            round_meta = meta_by_round[record.round]
            summary_data.append(
                {
                    "round": record.round,
                    "candidate_name": record.candidate_name,
                    "votes": record.votes,
                    "quota": round_meta.quota,
                    "status": record.status,
                    "exhausted_votes": round_meta.exhausted,
                }
            )

        return pd.DataFrame(summary_data)

    def get_final_results(self) -> pd.DataFrame:
        """
        Get final election results.

        Returns:
            DataFrame with final results for all candidates
        """
        if not self.rounds:
            return pd.DataFrame()

        final_round = self.meta[-1].round
        election_round = {}
        for round_meta in self.meta:
            for name in round_meta.elected_this_round or []:
                election_round[name] = round_meta.round

        winners = set(self.winners[: self.seats])
        results_data = [
            {
                "candidate_name": record.candidate_name,
                "final_votes": record.votes,
                "status": (
                    "elected" if record.candidate_name in winners else "not_elected"
                ),
                "election_round": election_round.get(record.candidate_name),
            }
            for record in self.rounds
            if record.round == final_round
        ]

        return pd.DataFrame(results_data).sort_values(
            ["final_votes", "candidate_name"], ascending=[False, True]
        )

    def get_stats(self) -> Dict[str, Any]:
        return STVResult(
            rounds=self.rounds,
            meta=self.meta,
            winners=sorted(self.winners[: self.seats]),
            rules=self.rules,
        ).stats()


def run_stv(
    ballots: Iterable[Any],
    rules: Union[Rules, Dict[str, Any]],
    candidates: Optional[Iterable[str]] = None,
) -> STVResult:
    """Count one contest: ``run(ballots, rules) -> {rounds, meta, winners}``."""
    return STVTabulator(ballots, rules, candidates=candidates).run_stv_tabulation()
