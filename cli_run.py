from __future__ import annotations
from pathlib import Path

import dotenv
dotenv.load_dotenv()

from listing_match.config import load_config
from listing_match.utils import dumps, setup_logging
from listing_match.pipeline import ListingMatchPipeline

def main():
    setup_logging()
    root = Path(__file__).resolve().parent
    data_dir = root / "data"
    cfg = load_config(data_dir / "config.default.json")

    pipe = ListingMatchPipeline(cfg, str(data_dir))
    result = pipe.run()
    print("Pipeline finished:", dumps(result, indent=2))
    print("Workbook:", cfg.db_path)

if __name__ == "__main__":
    main()
