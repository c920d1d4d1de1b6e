#!/usr/bin/env python3
"""
Run STV tabulation on vote rows stored in a DuckDB database.
"""

import argparse
import logging
import sys
from pathlib import Path

# Add src to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from data.ballots import normalize_ballots  # noqa: E402
from data.database import TabulationDatabase  # noqa: E402
from tabulation import (  # noqa: E402
    CountVerifier,
    Rules,
    STVTabulator,
    TabulationError,
    TransferAttributor,
)

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

STATUS_SYMBOLS = {"elected": "*", "eliminated": "x", "standing": " "}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run STV tabulation")
    parser.add_argument("--db", help="Path to DuckDB database file with vote rows")
    parser.add_argument(
        "--table", default="ballots_long", help="Vote row table (default: ballots_long)"
    )
    parser.add_argument(
        "--seats", type=int, default=3, help="Number of seats to fill (default: 3)"
    )
    parser.add_argument(
        "--precision",
        type=float,
        default=1e-6,
        help="Tolerance when comparing votes with the quota (default: 1e-6)",
    )
    parser.add_argument(
        "--tie-break",
        choices=["lexicographic", "random"],
        default="lexicographic",
        help="How ties for lowest candidate are broken",
    )
    parser.add_argument(
        "--random-seed", type=int, help="Seed for the random tie-break"
    )
    parser.add_argument(
        "--store",
        action="store_true",
        help="Write stv_rounds, stv_meta and transfer_matrix tables to the database",
    )
    parser.add_argument("--export", help="Export results to CSV files with this stem")
    return parser


def print_rounds(tabulator: STVTabulator):
    print("\n=== Round-by-Round Results ===")
    round_summary = tabulator.get_round_summary()

    for round_num in sorted(round_summary["round"].unique()):
        round_data = round_summary[round_summary["round"] == round_num]
        print(f"\nRound {round_num}:")
        print(f"Quota: {round_data.iloc[0]['quota']:.1f}")

        for _, row in round_data.sort_values(
            ["votes", "candidate_name"], ascending=[False, True]
        ).iterrows():
            symbol = STATUS_SYMBOLS.get(row["status"], " ")
            print(f"  {symbol} {row['candidate_name']:25s}: {row['votes']:10.4f} votes")

        if round_data.iloc[0]["exhausted_votes"] > 0:
            exhausted = round_data.iloc[0]["exhausted_votes"]
            print(f"    {'Exhausted':25s}: {exhausted:10.4f} votes")


def print_final_results(tabulator: STVTabulator, seats: int):
    print("\n=== Final Results ===")
    final_results = tabulator.get_final_results()

    elected = final_results[final_results["status"] == "elected"]
    print(f"\nElected ({len(elected)} of {seats} seats):")
    for i, (_, row) in enumerate(elected.iterrows(), 1):
        print(
            f"  {i}. {row['candidate_name']:30s}: {row['final_votes']:10.4f} votes "
            f"(Round {row['election_round']})"
        )

    print("\nNot Elected:")
    not_elected = final_results[final_results["status"] == "not_elected"].head(10)
    for _, row in not_elected.iterrows():
        print(f"     {row['candidate_name']:30s}: {row['final_votes']:10.4f} votes")


def main():
    args = build_parser().parse_args()

    if not args.db or not Path(args.db).exists():
        logger.error("Database file required and must exist.")
        sys.exit(1)

    try:
        rules = Rules(
            seats=args.seats,
            precision=args.precision,
            tie_break=args.tie_break,
            random_seed=args.random_seed,
        )

        with TabulationDatabase(args.db, read_only=not args.store) as db:
            ballots = normalize_ballots(db.load_vote_rows(args.table))

            logger.info(f"=== STV Tabulation ({args.seats} seats) ===")
            tabulator = STVTabulator(ballots, rules)
            result = tabulator.run_stv_tabulation()

            attributor = TransferAttributor(
                result.rounds, result.meta, skip_invalid_rounds=True
            )
            edges = attributor.compute_transfers()

            print_rounds(tabulator)
            print_final_results(tabulator, args.seats)

            verifier = CountVerifier(result, len(ballots), edges)
            print()
            print(verifier.generate_verification_report(verifier.verify()))

            if args.store:
                db.store_results(result, edges)
                print("\n✓ Results stored in stv_rounds, stv_meta and transfer_matrix")

            if args.export:
                export_path = Path(args.export)
                outputs = {
                    "_rounds": result.rounds_frame(),
                    "_meta": result.meta_frame(),
                    "_transfers": attributor.get_transfer_matrix(),
                }
                for suffix, frame in outputs.items():
                    path = export_path.with_name(export_path.stem + suffix + ".csv")
                    frame.to_csv(path, index=False)
                    print(f"✓ Exported: {path}")

            stats = result.stats()
            print(
                f"\n✓ STV tabulation completed: {len(stats['winners'])} winners "
                f"in {stats['number_of_rounds']} rounds"
            )

    except TabulationError as e:
        logger.error(f"Error running STV tabulation: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
