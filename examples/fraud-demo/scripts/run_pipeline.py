#!/usr/bin/env python3
"""End-to-end runner for the fraud-demo example.

Walks through the freshtable workflow:
    1. freshtable up        -- register tables, initial refresh
    2. freshtable ingest    -- load the sample transactions
    3. freshtable refresh   -- bring every dynamic table up to date
    4. freshtable query     -- run the analytics queries
    5. freshtable show      -- observability: lag, state, staleness
    6. freshtable history   -- refresh history

Run with freshtable installed:
    python scripts/run_pipeline.py
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path

from freshtable.fraud_demo import ANALYTICS_QUERIES


def run_cmd(args: list[str], description: str, cwd: Path) -> None:
    """Run a CLI command with output and error handling."""
    print(f"\n{'='*60}")
    print(f"  {description}")
    print(f"{'='*60}\n")

    result = subprocess.run(args, cwd=cwd, capture_output=False, text=True)

    if result.returncode != 0:
        print(f"\nWARNING: '{' '.join(args)}' exited with code {result.returncode}")
        print("Continuing pipeline execution...")


def main() -> None:
    project_root = Path(__file__).resolve().parent.parent
    config = project_root / "freshtable.yaml"
    if not config.exists():
        print(f"Error: freshtable.yaml not found at {config}")
        sys.exit(1)

    cli = [sys.executable, "-m", "freshtable"]

    run_cmd([*cli, "up", "--yes"], "Step 1: Registering tables (freshtable up)", project_root)
    run_cmd(
        [*cli, "ingest", "transactions_raw", str(project_root / "data" / "transactions.csv")],
        "Step 2: Loading transactions (freshtable ingest)",
        project_root,
    )
    run_cmd([*cli, "refresh"], "Step 3: Refreshing dynamic tables (freshtable refresh)", project_root)
    for name, sql in ANALYTICS_QUERIES.items():
        run_cmd([*cli, "query", sql], f"Step 4: Analytics query '{name}'", project_root)
    run_cmd([*cli, "show"], "Step 5: Dynamic table status (freshtable show)", project_root)
    run_cmd([*cli, "history"], "Step 6: Refresh history (freshtable history)", project_root)


if __name__ == "__main__":
    main()
