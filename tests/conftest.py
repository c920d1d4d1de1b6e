"""
Shared pytest configuration and fixtures for the STV round tabulator.

This module provides common test fixtures and utilities used across
all test modules.
"""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from data.ballots import Ballot  # noqa: E402
from data.database import TabulationDatabase  # noqa: E402
from tabulation.rules import Rules  # noqa: E402


def build_ballots(groups):
    """
    Expand (count, preferences) groups into ballots with ids B1, B2, ...
    """
    ballots = []
    for count, preferences in groups:
        for _ in range(count):
            ballots.append(
                Ballot(ballot_id=f"B{len(ballots) + 1}", preferences=tuple(preferences))
            )
    return ballots


@pytest.fixture
def make_ballots():
    """Provide the ballot builder to tests."""
    return build_ballots


@pytest.fixture
def two_seat_rules():
    return Rules(seats=2)


@pytest.fixture
def temp_db():
    """Provide a temporary in-memory database for testing."""
    db = TabulationDatabase(":memory:")
    yield db
    db.close()


@pytest.fixture
def scenario_a_ballots():
    """3x Alice>Bob, 2x Bob>Alice, 1x Charlie>Alice."""
    return build_ballots(
        [(3, ["Alice", "Bob"]), (2, ["Bob", "Alice"]), (1, ["Charlie", "Alice"])]
    )


@pytest.fixture
def scenario_c_ballots():
    """Alice has a surplus of one vote split between Bob and Charlie."""
    return build_ballots(
        [
            (2, ["Alice", "Bob"]),
            (2, ["Alice", "Charlie"]),
            (1, ["Bob"]),
            (1, ["Charlie"]),
        ]
    )


@pytest.fixture
def surplus_ballots():
    """
    Dave is eliminated in round 1, pushing Alice over quota; Alice's surplus
    is transferred in round 2 (part to Carol, part exhausted).
    """
    return build_ballots(
        [
            (3, ["Alice", "Carol"]),
            (2, ["Dave", "Alice"]),
            (3, ["Bob"]),
            (3, ["Carol"]),
        ]
    )


@pytest.fixture
def sample_vote_rows():
    """Provide raw ingestion rows, including a non-vote and an empty ballot."""
    return [
        ("B001", "Alice", 1, True),
        ("B001", "Bob", 2, True),
        ("B001", "Charlie", 3, True),
        ("B002", "Bob", 1, True),
        ("B002", "Alice", 2, True),
        ("B003", "Charlie", 2, True),
        ("B003", "Diana", 1, True),
        ("B003", "Alice", 3, False),
        ("B004", "Alice", 1, False),
    ]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (medium speed, database required)",
    )
    config.addinivalue_line(
        "markers",
        "golden: marks tests as golden dataset validation (hand-computed counts)",
    )
    config.addinivalue_line(
        "markers", "invariant: marks tests as mathematical invariant validation"
    )
    config.addinivalue_line(
        "markers", "smoke: marks tests as smoke tests (basic functionality check)"
    )
