"""
Reconstruct vote transfers from finished STV round snapshots.

Round records only hold per-candidate totals, so who-gave-to-whom is
inferred from the change between consecutive rounds. When several donors
give in one round the split between them is proportional to what each gave
up; treat the result as an audit aid, not as an authoritative count.
"""

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from .errors import AttributionError
from .stv import ELECTED, ELIMINATED, ROUND_COLUMNS, STANDING, RoundMeta, RoundRecord

logger = logging.getLogger(__name__)

ELIMINATION = "elimination"
SURPLUS = "surplus"

TRANSFER_COLUMNS = [
    "round",
    "from_candidate_name",
    "to_candidate_name",
    "vote_count",
    "transfer_reason",
    "transfer_weight",
]


@dataclass(frozen=True)
class TransferEdge:
    """Votes moved from one candidate to another (or to exhausted) in a round."""

    round: int
    from_candidate_name: str
    to_candidate_name: Optional[str]  # None means exhausted
    vote_count: float
    transfer_reason: str
    transfer_weight: float


def _edge_sort_key(edge: TransferEdge):
    return (
        edge.round,
        edge.from_candidate_name,
        edge.to_candidate_name is None,
        edge.to_candidate_name or "",
    )


class TransferAttributor:
    """
    Derives transfer edges from the round records and metadata of one count.
    """

    def __init__(
        self,
        rounds: Sequence[RoundRecord],
        meta: Sequence[RoundMeta],
        skip_invalid_rounds: bool = False,
    ):
        """
        Args:
            rounds: Every RoundRecord of a finished count
            meta: Every RoundMeta of the same count
            skip_invalid_rounds: Log and skip rounds whose reconstruction is
                impossible instead of raising AttributionError
        """
        self.rounds = list(rounds)
        self.meta = list(meta)
        self.skip_invalid_rounds = skip_invalid_rounds
        self.edges: List[TransferEdge] = []
        self.rejected_rounds: Dict[int, str] = {}

    def _round_changes(self) -> pd.DataFrame:
        """Vote change of every candidate against the previous round."""
        current = pd.DataFrame(
            [asdict(r) for r in self.rounds], columns=ROUND_COLUMNS
        )
        previous = current.rename(
            columns={"votes": "previous_votes", "status": "previous_status"}
        )
        previous["round"] = previous["round"] + 1

        changes = current.merge(previous, on=["round", "candidate_name"], how="left")
        changes["previous_votes"] = changes["previous_votes"].fillna(0.0)
        changes["previous_status"] = changes["previous_status"].fillna(STANDING)
        changes["vote_change"] = changes["votes"] - changes["previous_votes"]

        return changes[changes["round"] > 1]

    def compute_transfers(self) -> List[TransferEdge]:
        """
        Reconstruct transfer edges for every round after the first.

        Returns:
            Edges ordered by round, donor and recipient (exhausted last)

        Raises:
            AttributionError: A round's reconstruction is impossible and
                ``skip_invalid_rounds`` is not set
        """
        self.edges = []
        self.rejected_rounds = {}

        if not self.rounds:
            return self.edges

        exhausted_by_round = {m.round: m.exhausted for m in self.meta}
        changes = self._round_changes()

        for round_num, round_changes in changes.groupby("round", sort=True):
            round_num = int(round_num)
            try:
                round_edges = self._attribute_round(
                    round_num, round_changes, exhausted_by_round
                )
            except AttributionError as e:
                if not self.skip_invalid_rounds:
                    raise
                logger.warning(
                    f"Rejected transfer reconstruction for round {round_num}: {e}"
                )
                self.rejected_rounds[round_num] = str(e)
                continue
            self.edges.extend(round_edges)

        self.edges.sort(key=_edge_sort_key)
        logger.info(
            f"Reconstructed {len(self.edges)} transfers over {len(self.meta)} rounds"
        )
        return self.edges

    def _attribute_round(
        self,
        round_num: int,
        round_changes: pd.DataFrame,
        exhausted_by_round: Dict[int, float],
    ) -> List[TransferEdge]:
        if not exhausted_by_round.keys() >= {round_num, round_num - 1}:
            raise AttributionError(
                f"Missing round metadata around round {round_num}", round_num
            )
        exhausted_change = (
            exhausted_by_round[round_num] - exhausted_by_round[round_num - 1]
        )

        round_changes = round_changes.sort_values("candidate_name")
        donors = round_changes[round_changes["vote_change"] < 0]
        recipients = round_changes[round_changes["vote_change"] > 0]

        if donors.empty:
            if not recipients.empty or exhausted_change > 0:
                raise AttributionError(
                    f"Votes moved in round {round_num} but no candidate gave any up",
                    round_num,
                )
            return []

        total_given = -donors["vote_change"].sum()
        edges = []

        for donor in donors.itertuples(index=False):
            if donor.previous_status == STANDING and donor.status == ELIMINATED:
                reason, weight = ELIMINATION, 1.0
            elif donor.previous_status == STANDING and donor.status == ELECTED:
                reason = SURPLUS
                weight = (
                    abs(donor.vote_change) / donor.previous_votes
                    if donor.previous_votes > 0
                    else 0.0
                )
            else:
                raise AttributionError(
                    f"{donor.candidate_name} lost votes in round {round_num} "
                    f"without being elected or eliminated",
                    round_num,
                )

            share = -donor.vote_change / total_given
            destinations = [
                (recipient.candidate_name, recipient.vote_change * share)
                for recipient in recipients.itertuples(index=False)
            ]
            if exhausted_change != 0:
                destinations.append((None, exhausted_change * share))

            for to_candidate, vote_count in destinations:
                edge = TransferEdge(
                    round=round_num,
                    from_candidate_name=donor.candidate_name,
                    to_candidate_name=to_candidate,
                    vote_count=float(vote_count),
                    transfer_reason=reason,
                    transfer_weight=float(weight),
                )
                self._validate_edge(edge)
                if edge.vote_count > 0:
                    edges.append(edge)

        return edges

    @staticmethod
    def _validate_edge(edge: TransferEdge):
        target = edge.to_candidate_name or "exhausted"
        if not (math.isfinite(edge.vote_count) and math.isfinite(edge.transfer_weight)):
            raise AttributionError(
                f"Non-finite transfer {edge.from_candidate_name} -> {target}",
                edge.round,
            )
        if edge.vote_count < 0:
            raise AttributionError(
                f"Negative transfer of {edge.vote_count} votes "
                f"{edge.from_candidate_name} -> {target} in round {edge.round}",
                edge.round,
            )
        if not 0.0 <= edge.transfer_weight <= 1.0:
            raise AttributionError(
                f"Transfer weight {edge.transfer_weight} out of range for "
                f"{edge.from_candidate_name} in round {edge.round}",
                edge.round,
            )

    def get_transfer_matrix(self) -> pd.DataFrame:
        return transfers_to_frame(self.edges)

    def get_stats(self) -> Dict[str, Any]:
        return transfer_stats(self.edges)


def attribute_transfers(
    rounds: Sequence[RoundRecord],
    meta: Sequence[RoundMeta],
    skip_invalid_rounds: bool = False,
) -> List[TransferEdge]:
    """Reconstruct transfer edges from one finished count."""
    return TransferAttributor(
        rounds, meta, skip_invalid_rounds=skip_invalid_rounds
    ).compute_transfers()


def transfers_to_frame(edges: Sequence[TransferEdge]) -> pd.DataFrame:
    return pd.DataFrame([asdict(e) for e in edges], columns=TRANSFER_COLUMNS)


def transfer_stats(edges: Sequence[TransferEdge]) -> Dict[str, Any]:
    """
    Summarise a transfer matrix.

    Args:
        edges: Transfer edges of one count

    Returns:
        Dictionary with round, transfer and exhausted totals
    """
    return {
        "total_rounds": max((e.round for e in edges), default=0),
        "total_transfers": len(edges),
        "total_exhausted_votes": sum(
            e.vote_count for e in edges if e.to_candidate_name is None
        ),
        "candidates_with_transfers": len({e.from_candidate_name for e in edges}),
        "surplus_transfers": sum(1 for e in edges if e.transfer_reason == SURPLUS),
        "elimination_transfers": sum(
            1 for e in edges if e.transfer_reason == ELIMINATION
        ),
    }
