from __future__ import annotations
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

DEFAULT_WEIGHTS: Dict[str, float] = {
    "textual_similarity": 0.40,
    "semantic_similarity": 0.35,
    "structural_similarity": 0.15,
    "fuzzy_score": 0.05,
    "length_ratio": 0.05,
}

DEFAULT_THRESHOLDS: Dict[str, float] = {
    "excellent": 0.90,
    "high": 0.75,
    "medium": 0.60,
    "low": 0.45,
}


@dataclass
class Config:
    db_path: str = "data/listing_match.xlsx"
    grid_precision: int = 2
    search_radius_m: float = 500.0
    proximity_radius_m: float = 20.0
    proximity_score_floor: float = 0.9
    consolidation_radius_m: float = 20.0
    min_positive_examples: int = 5
    min_negative_examples: int = 5
    min_total_examples: int = 20
    max_training_examples: int = 1000
    learning_rate: float = 0.1
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    thresholds: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))


def default_config() -> Config:
    return Config()


def load_config(path: str | Path) -> Config:
    p = Path(path)
    raw: Dict[str, Any] = json.loads(p.read_text(encoding="utf-8"))
    base = Config()
    return Config(
        db_path=str(raw.get("db_path", base.db_path)),
        grid_precision=int(raw.get("grid_precision", base.grid_precision)),
        search_radius_m=float(raw.get("search_radius_m", base.search_radius_m)),
        proximity_radius_m=float(raw.get("proximity_radius_m", base.proximity_radius_m)),
        proximity_score_floor=float(raw.get("proximity_score_floor", base.proximity_score_floor)),
        consolidation_radius_m=float(raw.get("consolidation_radius_m", base.consolidation_radius_m)),
        min_positive_examples=int(raw.get("min_positive_examples", base.min_positive_examples)),
        min_negative_examples=int(raw.get("min_negative_examples", base.min_negative_examples)),
        min_total_examples=int(raw.get("min_total_examples", base.min_total_examples)),
        max_training_examples=int(raw.get("max_training_examples", base.max_training_examples)),
        learning_rate=float(raw.get("learning_rate", base.learning_rate)),
        weights=_checked(raw.get("weights", base.weights), DEFAULT_WEIGHTS, "weights"),
        thresholds=_checked(raw.get("thresholds", base.thresholds), DEFAULT_THRESHOLDS, "thresholds"),
    )


def _checked(values: Dict[str, Any], expected: Dict[str, float], what: str) -> Dict[str, float]:
    unknown = set(values) - set(expected)
    if unknown:
        raise ValueError(f"Unknown {what}: {sorted(unknown)}")
    merged = dict(expected)
    merged.update({k: float(v) for k, v in values.items()})
    return merged
