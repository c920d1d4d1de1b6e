"""
Unit tests for transfer reconstruction from round snapshots.
"""

import pytest

from tabulation.errors import AttributionError
from tabulation.stv import RoundMeta, RoundRecord, run_stv
from tabulation.transfers import (
    ELIMINATION,
    SURPLUS,
    TRANSFER_COLUMNS,
    TransferAttributor,
    TransferEdge,
    attribute_transfers,
    transfer_stats,
    transfers_to_frame,
)


def snapshot(round_num, votes, statuses=None):
    statuses = statuses or {}
    return [
        RoundRecord(round_num, name, float(count), statuses.get(name, "standing"))
        for name, count in sorted(votes.items())
    ]


def meta(round_num, exhausted, quota=6.0):
    return RoundMeta(round_num, quota, float(exhausted), None, None)


@pytest.mark.unit
def test_elimination_edges_scenario_c(scenario_c_ballots, two_seat_rules):
    result = run_stv(scenario_c_ballots, two_seat_rules)

    edges = attribute_transfers(result.rounds, result.meta)

    # Bob's 1.5 votes (one full ballot, two quarter-ballots) all exhaust
    assert len(edges) == 1
    edge = edges[0]
    assert (edge.round, edge.from_candidate_name, edge.to_candidate_name) == (
        2,
        "Bob",
        None,
    )
    assert edge.vote_count == pytest.approx(1.5)
    assert edge.transfer_reason == ELIMINATION
    assert edge.transfer_weight == 1.0


@pytest.mark.unit
def test_surplus_edges(surplus_ballots, two_seat_rules):
    result = run_stv(surplus_ballots, two_seat_rules)

    edges = attribute_transfers(result.rounds, result.meta)

    assert [(e.round, e.from_candidate_name, e.to_candidate_name) for e in edges] == [
        (2, "Alice", "Carol"),
        (2, "Alice", None),
        (3, "Bob", None),
    ]
    to_carol, exhausted, bob = edges

    assert to_carol.transfer_reason == SURPLUS
    assert to_carol.transfer_weight == pytest.approx(0.2)
    assert to_carol.vote_count == pytest.approx(0.6)
    assert exhausted.vote_count == pytest.approx(0.4)
    assert exhausted.transfer_weight == pytest.approx(0.2)

    assert bob.transfer_reason == ELIMINATION
    assert bob.vote_count == pytest.approx(3.0)


@pytest.mark.unit
def test_surplus_weight_quarter():
    """Alice falls from 4 to the quota of 3: transfer weight 1/4."""
    rounds = snapshot(1, {"Alice": 4, "Bob": 1, "Charlie": 1}) + snapshot(
        2, {"Alice": 3, "Bob": 1.5, "Charlie": 1.5}, {"Alice": "elected"}
    )
    metas = [meta(1, 0, quota=3.0), meta(2, 0, quota=3.0)]

    edges = attribute_transfers(rounds, metas)

    assert edges == [
        TransferEdge(2, "Alice", "Bob", 0.5, SURPLUS, 0.25),
        TransferEdge(2, "Alice", "Charlie", 0.5, SURPLUS, 0.25),
    ]


@pytest.mark.unit
def test_multiple_donors_split_proportionally():
    rounds = snapshot(1, {"A": 10, "B": 8, "C": 1, "D": 1}) + snapshot(
        2, {"A": 6, "B": 6, "C": 4, "D": 3}, {"A": "elected", "B": "elected"}
    )
    metas = [meta(1, 0), meta(2, 1)]

    edges = attribute_transfers(rounds, metas)
    by_pair = {(e.from_candidate_name, e.to_candidate_name): e for e in edges}

    assert by_pair[("A", "C")].vote_count == pytest.approx(2.0)
    assert by_pair[("A", "D")].vote_count == pytest.approx(4 / 3)
    assert by_pair[("A", None)].vote_count == pytest.approx(2 / 3)
    assert by_pair[("B", "C")].vote_count == pytest.approx(1.0)
    assert by_pair[("B", "D")].vote_count == pytest.approx(2 / 3)
    assert by_pair[("B", None)].vote_count == pytest.approx(1 / 3)

    assert by_pair[("A", "C")].transfer_weight == pytest.approx(0.4)
    assert by_pair[("B", "C")].transfer_weight == pytest.approx(0.25)

    # Each donor's edges add up to what it gave up
    given_by_a = sum(e.vote_count for e in edges if e.from_candidate_name == "A")
    assert given_by_a == pytest.approx(4.0)


@pytest.mark.unit
def test_edges_sorted_with_exhausted_last():
    rounds = snapshot(1, {"Zed": 3, "Amy": 2, "Bea": 1}) + snapshot(
        2, {"Zed": 0, "Amy": 4, "Bea": 1.5}, {"Zed": "eliminated"}
    )
    metas = [meta(1, 0), meta(2, 0.5)]

    edges = attribute_transfers(rounds, metas)

    assert [e.to_candidate_name for e in edges] == ["Amy", "Bea", None]
    assert all(e.from_candidate_name == "Zed" for e in edges)


@pytest.mark.unit
def test_round_without_movement_has_no_edges():
    rounds = snapshot(1, {"A": 3, "B": 2}) + snapshot(
        2, {"A": 3, "B": 2}, {"A": "elected"}
    )

    assert attribute_transfers(rounds, [meta(1, 0), meta(2, 0)]) == []


@pytest.mark.unit
def test_standing_candidate_losing_votes_is_rejected():
    rounds = snapshot(1, {"A": 5, "B": 3}) + snapshot(2, {"A": 4, "B": 4})

    with pytest.raises(AttributionError) as excinfo:
        attribute_transfers(rounds, [meta(1, 0), meta(2, 0)])

    assert excinfo.value.round_number == 2


@pytest.mark.unit
def test_gain_without_donor_is_rejected():
    rounds = snapshot(1, {"A": 3, "B": 2}) + snapshot(2, {"A": 3, "B": 3})

    with pytest.raises(AttributionError, match="no candidate gave"):
        attribute_transfers(rounds, [meta(1, 0), meta(2, 0)])


@pytest.mark.unit
def test_falling_exhausted_total_is_rejected():
    rounds = snapshot(1, {"A": 3, "B": 2}) + snapshot(
        2, {"A": 0, "B": 4}, {"A": "eliminated"}
    )

    with pytest.raises(AttributionError, match="Negative transfer"):
        attribute_transfers(rounds, [meta(1, 1), meta(2, 0)])


@pytest.mark.unit
def test_missing_round_meta_is_rejected():
    rounds = snapshot(1, {"A": 3, "B": 2}) + snapshot(
        2, {"A": 0, "B": 5}, {"A": "eliminated"}
    )

    with pytest.raises(AttributionError, match="metadata"):
        attribute_transfers(rounds, [meta(2, 0)])


@pytest.mark.unit
def test_skip_invalid_rounds_keeps_valid_ones():
    rounds = (
        snapshot(1, {"A": 5, "B": 3})
        + snapshot(2, {"A": 4, "B": 4})
        + snapshot(3, {"A": 0, "B": 8}, {"A": "eliminated"})
    )
    metas = [meta(1, 0), meta(2, 0), meta(3, 0)]

    attributor = TransferAttributor(rounds, metas, skip_invalid_rounds=True)
    edges = attributor.compute_transfers()

    assert edges == [TransferEdge(3, "A", "B", 4.0, ELIMINATION, 1.0)]
    assert list(attributor.rejected_rounds) == [2]
    assert "A lost votes" in attributor.rejected_rounds[2]


@pytest.mark.unit
def test_no_rounds():
    attributor = TransferAttributor([], [])

    assert attributor.compute_transfers() == []
    assert attributor.get_transfer_matrix().empty
    assert attributor.get_stats()["total_transfers"] == 0


@pytest.mark.unit
def test_transfer_matrix_frame(surplus_ballots, two_seat_rules):
    result = run_stv(surplus_ballots, two_seat_rules)
    attributor = TransferAttributor(result.rounds, result.meta)
    attributor.compute_transfers()

    matrix = attributor.get_transfer_matrix()

    assert list(matrix.columns) == TRANSFER_COLUMNS
    assert len(matrix) == 3
    assert matrix["to_candidate_name"].isna().sum() == 2
    assert transfers_to_frame([]).columns.tolist() == TRANSFER_COLUMNS


@pytest.mark.unit
def test_transfer_stats(surplus_ballots, two_seat_rules):
    result = run_stv(surplus_ballots, two_seat_rules)

    stats = transfer_stats(attribute_transfers(result.rounds, result.meta))

    assert stats["total_rounds"] == 3
    assert stats["total_transfers"] == 3
    assert stats["total_exhausted_votes"] == pytest.approx(3.4)
    assert stats["candidates_with_transfers"] == 2
    assert stats["surplus_transfers"] == 2
    assert stats["elimination_transfers"] == 1


@pytest.mark.unit
@pytest.mark.invariant
def test_edges_satisfy_row_contract(surplus_ballots, two_seat_rules):
    result = run_stv(surplus_ballots, two_seat_rules)

    for edge in attribute_transfers(result.rounds, result.meta):
        assert edge.round > 1
        assert edge.vote_count > 0
        assert 0.0 <= edge.transfer_weight <= 1.0
        assert edge.transfer_reason in (ELIMINATION, SURPLUS)
