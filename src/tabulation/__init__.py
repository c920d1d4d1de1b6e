"""
Tabulation module for multi-seat ranked-choice elections.

This module provides the STV counting core:
- STVTabulator / run_stv: Droop quota, Gregory fractional surplus transfer
- TransferAttributor / attribute_transfers: per-round transfer reconstruction
- CountVerifier: invariant checks over a finished count
"""

from .errors import (
    AlgorithmicOverrun,
    AttributionError,
    DataError,
    NumericAnomaly,
    TabulationError,
)
from .rules import Rules
from .stv import RoundMeta, RoundRecord, STVResult, STVTabulator, run_stv
from .transfers import (
    TransferAttributor,
    TransferEdge,
    attribute_transfers,
    transfer_stats,
    transfers_to_frame,
)
from .verification import CountVerifier, cross_check_with_pyrankvote

__all__ = [
    "STVTabulator",
    "run_stv",
    "STVResult",
    "RoundRecord",
    "RoundMeta",
    "Rules",
    "TransferAttributor",
    "TransferEdge",
    "attribute_transfers",
    "transfer_stats",
    "transfers_to_frame",
    "CountVerifier",
    "cross_check_with_pyrankvote",
    "TabulationError",
    "DataError",
    "AlgorithmicOverrun",
    "NumericAnomaly",
    "AttributionError",
]
