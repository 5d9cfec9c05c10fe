from __future__ import annotations
from pathlib import Path

import dotenv
dotenv.load_dotenv()

from listing_match.config import load_config
from listing_match.pipeline import ListingMatchPipeline
from listing_match.utils import dumps, setup_logging

def main():
    setup_logging()
    root = Path(__file__).resolve().parent
    data_dir = root / "data"
    cfg = load_config(data_dir / "config.default.json")

    pipe = ListingMatchPipeline(cfg, str(data_dir))
    pipe.load()

    cur = pipe.evaluate()
    print(f"Model v{pipe.model.version} metrics:", dumps(cur, indent=2))

    if not pipe.training.ready_for_retrain():
        print("Not enough feedback to retrain:", pipe.training.counts())
        return

    report = pipe.matcher().retrain_from_store()
    print("Retrain:", dumps(report, indent=2))
    if report.retrained:
        print(f"Model v{pipe.model.version} metrics:", dumps(pipe.evaluate(), indent=2))
        pipe.save_model()
        print("Saved model to:", cfg.db_path)

if __name__ == "__main__":
    main()
