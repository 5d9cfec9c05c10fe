from __future__ import annotations
from pathlib import Path

import dotenv
dotenv.load_dotenv()

from listing_match.config import load_config
from listing_match.db import connect, init_db
from listing_match.simulate import seed_workbook
from listing_match.utils import setup_logging

"""
Seeds the Excel workbook with synthetic data for a local run.
1) load data/config.default.json for the workbook path and tunables;
2) clear every sheet;
3) write the Moscow-style reference addresses and the noisy listings;
4) record labelled feedback pairs and store them with a fresh model state;
5) print counts and point at cli_run.
"""

def main():
    setup_logging()
    root = Path(__file__).resolve().parent
    data_dir = root / "data"
    cfg = load_config(data_dir / "config.default.json")

    conn = connect(cfg.db_path)
    init_db(conn)
    counts = seed_workbook(conn, cfg, n_addresses=60, n_feedback=60, seed=7)

    print(f"Workbook written: {cfg.db_path}")
    print(f"Inserted addresses: {counts['addresses']}")
    print(f"Inserted listings: {counts['listings']}")
    print(f"Training examples: {counts['training']}")
    print("Next: python cli_run.py")

if __name__ == "__main__":
    main()
