import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from pyrankvote import Ballot as PyRankVoteBallot
from pyrankvote import Candidate, single_transferable_vote

from .stv import ELECTED, ELIMINATED, STANDING, RoundMeta, RoundRecord, STVResult
from .transfers import ELIMINATION, SURPLUS, TransferEdge

logger = logging.getLogger(__name__)

STATUSES = (STANDING, ELECTED, ELIMINATED)
CONSERVATION_COLUMNS = [
    "round",
    "held_votes",
    "exhausted",
    "total",
    "difference",
    "conserved",
]
TRANSFER_REASONS = (ELIMINATION, SURPLUS)


def validate_round_records(rounds: Sequence[RoundRecord]) -> List[str]:
    """Check round records against the published row contract."""
    problems = []
    for record in rounds:
        if record.round < 1:
            problems.append(f"Round record with round {record.round} < 1")
        if not record.candidate_name:
            problems.append(f"Round {record.round} record without candidate name")
        if not np.isfinite(record.votes) or record.votes < 0:
            problems.append(
                f"{record.candidate_name} has invalid votes {record.votes} "
                f"in round {record.round}"
            )
        if record.status not in STATUSES:
            problems.append(
                f"{record.candidate_name} has unknown status {record.status!r}"
            )
    return problems


def validate_round_meta(meta: Sequence[RoundMeta]) -> List[str]:
    """Check round metadata against the published row contract."""
    problems = []
    for row in meta:
        if row.round < 1:
            problems.append(f"Round metadata with round {row.round} < 1")
        if not row.quota > 0:
            problems.append(f"Round {row.round} has non-positive quota {row.quota}")
        if not np.isfinite(row.exhausted) or row.exhausted < 0:
            problems.append(f"Round {row.round} has invalid exhausted {row.exhausted}")
        for field_name in ("elected_this_round", "eliminated_this_round"):
            names = getattr(row, field_name)
            if names is not None and list(names) != sorted(names):
                problems.append(f"Round {row.round} {field_name} is not sorted")
    return problems


def validate_transfer_edges(edges: Sequence[TransferEdge]) -> List[str]:
    """Check transfer edges against the published row contract."""
    problems = []
    for edge in edges:
        label = f"{edge.from_candidate_name} -> {edge.to_candidate_name or 'exhausted'}"
        if edge.round <= 1:
            problems.append(f"Transfer {label} in round {edge.round}")
        if edge.vote_count < 0:
            problems.append(f"Transfer {label} has negative vote count")
        if not 0 <= edge.transfer_weight <= 1:
            problems.append(f"Transfer {label} has weight {edge.transfer_weight}")
        if edge.transfer_reason not in TRANSFER_REASONS:
            problems.append(f"Transfer {label} has reason {edge.transfer_reason!r}")
    return problems


class CountVerifier:
    """
    Checks the invariants of a finished STV count.
    """

    def __init__(
        self,
        result: STVResult,
        total_ballots: int,
        edges: Optional[Sequence[TransferEdge]] = None,
    ):
        """
        Initialize verifier.

        Args:
            result: Output of the counting engine
            total_ballots: Number of ballots the count was run on
            edges: Transfer edges reconstructed from ``result``, if any
        """
        self.result = result
        self.total_ballots = total_ballots
        self.edges = list(edges) if edges is not None else None
        self.tolerance = result.rules.precision

    def check_conservation(self) -> pd.DataFrame:
        """
        Per round, held votes plus exhausted must equal the ballot count.

        Returns:
            DataFrame with round, held_votes, exhausted, total, difference, conserved
        """
        rounds = self.result.rounds_frame()
        meta = self.result.meta_frame()
        if rounds.empty:
            return pd.DataFrame(columns=CONSERVATION_COLUMNS)

        held = rounds.groupby("round")["votes"].sum().rename("held_votes").reset_index()
        check = held.merge(meta[["round", "exhausted"]], on="round", how="left")
        check["total"] = check["held_votes"] + check["exhausted"]
        check["difference"] = check["total"] - self.total_ballots
        check["conserved"] = np.isclose(
            check["total"].to_numpy(dtype=float),
            float(self.total_ballots),
            rtol=0.0,
            atol=self.tolerance,
        )
        return check

    def check_status_transitions(self) -> List[str]:
        """Elected and eliminated are terminal; nothing returns to standing."""
        problems = []
        last_status: Dict[str, str] = {}
        for record in sorted(self.result.rounds, key=lambda r: r.round):
            previous = last_status.get(record.candidate_name, STANDING)
            if previous != STANDING and record.status != previous:
                problems.append(
                    f"{record.candidate_name} went from {previous} to "
                    f"{record.status} in round {record.round}"
                )
            last_status[record.candidate_name] = record.status
        return problems

    def check_quota(self) -> List[str]:
        quotas = {m.quota for m in self.result.meta}
        if len(quotas) > 1:
            return [f"Quota changed during the count: {sorted(quotas)}"]
        expected = self.total_ballots // (self.result.rules.seats + 1) + 1
        if quotas and quotas != {float(expected)}:
            return [f"Quota {quotas.pop()} does not match Droop quota {expected}"]
        return []

    def check_winners(self) -> List[str]:
        winners = self.result.winners
        seats = self.result.rules.seats
        candidates = {r.candidate_name for r in self.result.rounds}
        problems = []

        if len(winners) != len(set(winners)):
            problems.append(f"Duplicate winners: {winners}")
        if winners != sorted(winners):
            problems.append(f"Winners are not sorted: {winners}")
        if len(winners) != min(seats, len(candidates)):
            problems.append(
                f"Expected {min(seats, len(candidates))} winners, got {len(winners)}"
            )

        if self.result.rounds:
            final_round = max(r.round for r in self.result.rounds)
            final_status = {
                r.candidate_name: r.status
                for r in self.result.rounds
                if r.round == final_round
            }
            for winner in winners:
                if final_status.get(winner) != ELECTED:
                    problems.append(
                        f"Winner {winner} is not elected in the final round"
                    )
        return problems

    def check_elimination_transfers(self) -> List[str]:
        """Elimination edges of a donor sum to its total before the transfer."""
        if not self.edges:
            return []

        previous_votes = {
            (r.round + 1, r.candidate_name): r.votes for r in self.result.rounds
        }
        given: Dict[tuple, float] = {}
        for edge in self.edges:
            if edge.transfer_reason == ELIMINATION:
                key = (edge.round, edge.from_candidate_name)
                given[key] = given.get(key, 0.0) + edge.vote_count

        problems = []
        for (round_num, donor), total in sorted(given.items()):
            expected = previous_votes.get((round_num, donor), 0.0)
            if not np.isclose(total, expected, rtol=0.0, atol=self.tolerance):
                problems.append(
                    f"{donor} gave {total} votes in round {round_num}, "
                    f"expected {expected}"
                )
        return problems

    def verify(self) -> Dict[str, Any]:
        """
        Run every check.

        Returns:
            Verification report dictionary
        """
        logger.info("Verifying STV count invariants")

        conservation = self.check_conservation()
        contract_problems = validate_round_records(
            self.result.rounds
        ) + validate_round_meta(self.result.meta)
        if self.edges is not None:
            contract_problems += validate_transfer_edges(self.edges)

        report = {
            "conservation": conservation,
            "conservation_passed": bool(conservation["conserved"].all()),
            "max_conservation_difference": (
                float(conservation["difference"].abs().max())
                if not conservation.empty
                else 0.0
            ),
            "contract_problems": contract_problems,
            "status_problems": self.check_status_transitions(),
            "quota_problems": self.check_quota(),
            "winner_problems": self.check_winners(),
            "transfer_problems": self.check_elimination_transfers(),
        }
        report["verification_passed"] = report["conservation_passed"] and not any(
            report[key]
            for key in (
                "contract_problems",
                "status_problems",
                "quota_problems",
                "winner_problems",
                "transfer_problems",
            )
        )

        if not report["verification_passed"]:
            logger.warning("STV count failed verification")
        return report

    def generate_verification_report(self, report: Dict[str, Any]) -> str:
        """
        Generate a human-readable verification report.

        Args:
            report: Results from verify()

        Returns:
            Formatted report string
        """
        lines = ["=" * 60, "STV COUNT VERIFICATION REPORT", "=" * 60]

        if report["verification_passed"]:
            lines.append("PASSED - all invariants hold")
        else:
            lines.append("FAILED - invariant violations found")

        lines.append("")
        lines.append(
            f"Max conservation difference: {report['max_conservation_difference']:.3e}"
        )

        for key, title in (
            ("contract_problems", "Output contract"),
            ("status_problems", "Status transitions"),
            ("quota_problems", "Quota"),
            ("winner_problems", "Winners"),
            ("transfer_problems", "Elimination transfers"),
        ):
            problems = report[key]
            summary = "ok" if not problems else f"{len(problems)} problem(s)"
            lines.append(f"{title}: {summary}")
            for problem in problems:
                lines.append(f"  - {problem}")

        return "\n".join(lines)


def cross_check_with_pyrankvote(
    ballots: Sequence[Any], result: STVResult
) -> Dict[str, Any]:
    """
    Compare winners against the pyrankvote library's STV.

    pyrankvote counts with its own quota and transfer rules, so a mismatch
    is a prompt for investigation rather than proof of an error.

    Args:
        ballots: The ballots the count was run on
        result: Output of the counting engine

    Returns:
        Dictionary with both winner lists and their differences
    """
    seats = result.rules.seats
    names = sorted({r.candidate_name for r in result.rounds})
    candidates_map = {name: Candidate(name) for name in names}

    if seats >= len(candidates_map):
        logger.warning(
            f"Seats ({seats}) >= candidates ({len(candidates_map)}), "
            f"electing all candidates"
        )
        reference_winners = names
    else:
        pyrankvote_ballots = [
            PyRankVoteBallot(
                ranked_candidates=[candidates_map[name] for name in ballot.preferences]
            )
            for ballot in ballots
            if ballot.preferences
        ]
        election = single_transferable_vote(
            candidates=list(candidates_map.values()),
            ballots=pyrankvote_ballots,
            number_of_seats=seats,
        )
        reference_winners = sorted(c.name for c in election.get_winners())

    our_winners = list(result.winners)
    return {
        "winners_match": set(our_winners) == set(reference_winners),
        "our_winners": our_winners,
        "reference_winners": reference_winners,
        "missing_winners": [w for w in reference_winners if w not in our_winners],
        "extra_winners": [w for w in our_winners if w not in reference_winners],
    }
