import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Tuple, Union

import pandas as pd

try:
    from ..tabulation.errors import DataError
except ImportError:
    from tabulation.errors import DataError

logger = logging.getLogger(__name__)

DUPLICATE_RANK_POLICIES = ("overwrite", "error")


class VoteRow(NamedTuple):
    """One mark on one ballot, as delivered by ballot ingestion."""

    ballot_id: str
    candidate_name: str
    rank_position: int
    has_vote: bool = True


@dataclass(frozen=True)
class Ballot:
    """A ballot's preferences in ascending rank order."""

    ballot_id: str
    preferences: Tuple[str, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.preferences) == 0


def _coerce_row(row: Union[VoteRow, Mapping[str, Any], tuple]) -> VoteRow:
    if isinstance(row, VoteRow):
        return row
    if isinstance(row, Mapping):
        ballot_column = "ballot_id" if row.get("ballot_id") is not None else "BallotID"
        ballot_id = row.get(ballot_column)
        return VoteRow(
            ballot_id=ballot_id,
            candidate_name=row.get("candidate_name"),
            rank_position=row.get("rank_position"),
            has_vote=bool(row.get("has_vote", True)),
        )
    return VoteRow(*row)


def normalize_ballots(
    rows: Iterable[Union[VoteRow, Mapping[str, Any], tuple]],
    on_duplicate_rank: str = "overwrite",
) -> List[Ballot]:
    """
    Group raw vote rows into one ordered ballot per ballot id.

    Only rows with ``has_vote`` set contribute preferences, but every ballot
    id seen is materialized, so a ballot without valid marks comes back with
    an empty preference list. When two rows of one ballot share a rank
    position the later row wins, unless ``on_duplicate_rank`` is ``"error"``.
    A candidate ranked more than once keeps only its best rank.

    Args:
        rows: VoteRow tuples or mappings (``ballot_id`` or ``BallotID`` keys)
        on_duplicate_rank: ``"overwrite"`` or ``"error"``

    Returns:
        Ballots in order of first appearance of their id
    """
    if on_duplicate_rank not in DUPLICATE_RANK_POLICIES:
        raise ValueError(f"Unknown duplicate rank policy: {on_duplicate_rank!r}")

    ranks_by_ballot: Dict[str, Dict[int, str]] = {}
    duplicate_ranks = 0

    for raw in rows:
        row = _coerce_row(raw)

        if row.ballot_id is None or str(row.ballot_id).strip() == "":
            raise DataError(f"Vote row without a ballot id: {row}")
        ballot_id = str(row.ballot_id)
        ranks = ranks_by_ballot.setdefault(ballot_id, {})

        if not row.has_vote:
            continue

        if not row.candidate_name or not str(row.candidate_name).strip():
            raise DataError(f"Vote row without a candidate on ballot {ballot_id}")
        try:
            rank_position = int(row.rank_position)
        except (TypeError, ValueError):
            raise DataError(
                f"Invalid rank position {row.rank_position!r} on ballot {ballot_id}"
            ) from None
        if rank_position < 1:
            raise DataError(
                f"Rank position must be >= 1, got {rank_position} on ballot {ballot_id}"
            )

        if rank_position in ranks:
            if on_duplicate_rank == "error":
                raise DataError(
                    f"Ballot {ballot_id} ranks both {ranks[rank_position]!r} and "
                    f"{row.candidate_name!r} at position {rank_position}"
                )
            duplicate_ranks += 1
        ranks[rank_position] = str(row.candidate_name)

    ballots = []
    for ballot_id, ranks in ranks_by_ballot.items():
        preferences: List[str] = []
        for rank_position in sorted(ranks):
            candidate = ranks[rank_position]
            if candidate not in preferences:
                preferences.append(candidate)
        ballots.append(Ballot(ballot_id=ballot_id, preferences=tuple(preferences)))

    if duplicate_ranks:
        logger.warning(f"Overwrote {duplicate_ranks} duplicate rank positions")
    logger.debug(
        f"Normalized {len(ballots)} ballots "
        f"({sum(1 for b in ballots if b.is_empty)} without valid marks)"
    )
    return ballots


def rows_from_frame(df: pd.DataFrame) -> List[VoteRow]:
    """
    Convert a ``ballots_long`` style DataFrame into vote rows.

    Accepts ``BallotID`` or ``ballot_id`` for the ballot column. When the
    frame has no ``has_vote`` column every row counts as a vote.
    """
    ballot_column = "ballot_id" if "ballot_id" in df.columns else "BallotID"
    missing = {ballot_column, "candidate_name", "rank_position"} - set(df.columns)
    if missing:
        raise DataError(f"Vote rows are missing columns: {', '.join(sorted(missing))}")

    has_vote = (
        df["has_vote"].fillna(False).astype(bool)
        if "has_vote" in df.columns
        else pd.Series(True, index=df.index)
    )

    return [
        VoteRow(
            ballot_id=str(ballot_id),
            candidate_name=candidate_name,
            rank_position=int(rank_position) if pd.notna(rank_position) else 0,
            has_vote=bool(vote),
        )
        for ballot_id, candidate_name, rank_position, vote in zip(
            df[ballot_column], df["candidate_name"], df["rank_position"], has_vote
        )
    ]
