from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import Config, default_config
from .evaluate import best_f1_threshold
from .models import SIMILARITY_FEATURES, Confidence, FeatureVector, TrainingExample

logger = logging.getLogger(__name__)

_TOLERANCE = 1e-6
_THRESHOLD_BOUNDS = (0.05, 0.99)
_THRESHOLD_GAP = 0.01
# offsets of each tier boundary from the best separating threshold
_THRESHOLD_OFFSETS = {"low": -0.15, "medium": 0.0, "high": 0.15, "excellent": 0.25}


@dataclass(frozen=True)
class Weights:
    textual_similarity: float = 0.40
    semantic_similarity: float = 0.35
    structural_similarity: float = 0.15
    fuzzy_score: float = 0.05
    length_ratio: float = 0.05

    def to_dict(self) -> Dict[str, float]:
        return {f.name: float(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Weights":
        unknown = set(raw) - set(SIMILARITY_FEATURES)
        if unknown:
            raise ValueError(f"Unknown weights: {sorted(unknown)}")
        return cls(**{k: float(v) for k, v in raw.items()})


@dataclass(frozen=True)
class Thresholds:
    excellent: float = 0.90
    high: float = 0.75
    medium: float = 0.60
    low: float = 0.45

    def tiers(self) -> List[Tuple[Confidence, float]]:
        return [
            (Confidence.EXCELLENT, self.excellent),
            (Confidence.HIGH, self.high),
            (Confidence.MEDIUM, self.medium),
            (Confidence.LOW, self.low),
        ]

    def to_dict(self) -> Dict[str, float]:
        return {f.name: float(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Thresholds":
        names = {f.name for f in fields(cls)}
        unknown = set(raw) - names
        if unknown:
            raise ValueError(f"Unknown thresholds: {sorted(unknown)}")
        return cls(**{k: float(v) for k, v in raw.items()})


def weighted_score(weights: Weights, features: FeatureVector) -> float:
    w = {k: max(0.0, v) for k, v in weights.to_dict().items()}
    denom = sum(w.values())
    if denom <= 0.0:
        return 0.0
    num = 0.0
    for name, wk in w.items():
        num += wk * float(getattr(features, name))
    return min(1.0, max(0.0, num / denom))


@dataclass(frozen=True)
class ModelState:
    """Immutable scoring snapshot. Retraining publishes a new one."""

    version: int = 1
    weights: Weights = Weights()
    thresholds: Thresholds = Thresholds()
    trained_examples: int = 0
    updated_at: Optional[int] = None

    @classmethod
    def from_config(cls, cfg: Config) -> "ModelState":
        return cls(weights=Weights.from_dict(cfg.weights), thresholds=Thresholds.from_dict(cfg.thresholds))

    def score(self, features: FeatureVector) -> float:
        return weighted_score(self.weights, features)

    def classify(self, score: float) -> Confidence:
        for tier, threshold in self.thresholds.tiers():
            if score >= threshold:
                return tier
        return Confidence.VERY_LOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "weights": self.weights.to_dict(),
            "thresholds": self.thresholds.to_dict(),
            "trained_examples": self.trained_examples,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ModelState":
        return cls(
            version=int(raw["version"]),
            weights=Weights.from_dict(raw["weights"]),
            thresholds=Thresholds.from_dict(raw["thresholds"]),
            trained_examples=int(raw.get("trained_examples", 0)),
            updated_at=raw.get("updated_at"),
        )


@dataclass(frozen=True)
class RetrainReport:
    retrained: bool
    reason: str
    version: int
    positive: int = 0
    negative: int = 0
    skipped: int = 0
    best_threshold: Optional[float] = None


def apply_proximity_override(features: FeatureVector, score: float, confidence: Confidence,
                             radius_m: float = 20.0, floor: float = 0.9) -> Tuple[float, Confidence]:
    """Within radius_m of the candidate the match is at least HIGH with score >= floor.

    Never lowers either value.
    """
    if features.distance_meters <= radius_m:
        return max(score, floor), max(confidence, Confidence.HIGH)
    return score, confidence


class ScoringModel:
    def __init__(self, state: Optional[ModelState] = None, cfg: Optional[Config] = None):
        self.cfg = cfg or default_config()
        self._state = state or ModelState.from_config(self.cfg)
        self._retrain_lock = threading.Lock()

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def version(self) -> int:
        return self._state.version

    def load(self, state: ModelState) -> None:
        with self._retrain_lock:
            self._state = state

    def score(self, features: FeatureVector) -> float:
        return self._state.score(features)

    def classify(self, score: float) -> Confidence:
        return self._state.classify(score)

    def apply_proximity_override(self, features: FeatureVector, score: float,
                                 confidence: Confidence) -> Tuple[float, Confidence]:
        return apply_proximity_override(features, score, confidence,
                                        self.cfg.proximity_radius_m, self.cfg.proximity_score_floor)

    def retrain(self, examples: Sequence[TrainingExample], now: Optional[int] = None) -> RetrainReport:
        valid = [ex for ex in examples if _usable(ex)]
        skipped = len(examples) - len(valid)
        if skipped:
            logger.warning("Skipped %d malformed training examples", skipped)
        pos = [ex for ex in valid if ex.is_correct]
        neg = [ex for ex in valid if not ex.is_correct]

        with self._retrain_lock:
            cur = self._state
            reason = self._precondition_failure(len(pos), len(neg), len(valid))
            if reason:
                logger.info("Retrain skipped (%s): %d positive, %d negative", reason, len(pos), len(neg))
                return RetrainReport(False, reason, cur.version, len(pos), len(neg), skipped)

            lr = self.cfg.learning_rate
            weights = _nudge_weights(cur.weights, pos, neg, lr)
            scored = [(weighted_score(weights, ex.features), ex.is_correct) for ex in valid]
            t_star = best_f1_threshold(scored)
            thresholds = _nudge_thresholds(cur.thresholds, t_star, lr)

            if _same(weights.to_dict(), cur.weights.to_dict()) and _same(thresholds.to_dict(), cur.thresholds.to_dict()):
                logger.info("Retrain converged at version %d", cur.version)
                return RetrainReport(False, "converged", cur.version, len(pos), len(neg), skipped, t_star)

            new_state = replace(
                cur,
                version=cur.version + 1,
                weights=weights,
                thresholds=thresholds,
                trained_examples=len(valid),
                updated_at=int(time.time() * 1000) if now is None else now,
            )
            self._state = new_state

        logger.info("Model retrained to version %d on %d examples (threshold %.3f)",
                    new_state.version, len(valid), t_star)
        return RetrainReport(True, "retrained", new_state.version, len(pos), len(neg), skipped, t_star)

    def _precondition_failure(self, n_pos: int, n_neg: int, n_total: int) -> Optional[str]:
        if n_pos < self.cfg.min_positive_examples:
            return "not_enough_positive"
        if n_neg < self.cfg.min_negative_examples:
            return "not_enough_negative"
        if n_total < self.cfg.min_total_examples:
            return "not_enough_total"
        return None


def _usable(ex: Any) -> bool:
    return isinstance(ex, TrainingExample) and isinstance(ex.features, FeatureVector) and ex.features.is_complete()


def _mean(examples: Sequence[TrainingExample], name: str) -> float:
    return sum(float(getattr(ex.features, name)) for ex in examples) / len(examples)


def _nudge_weights(weights: Weights, pos: Sequence[TrainingExample], neg: Sequence[TrainingExample],
                   lr: float) -> Weights:
    # a feature's target share follows how much higher it runs on correct matches
    importance = {n: max(0.0, _mean(pos, n) - _mean(neg, n)) for n in SIMILARITY_FEATURES}
    total = sum(importance.values())
    cur = {k: max(0.0, v) for k, v in weights.to_dict().items()}
    if total <= 0.0:
        stepped = cur
    else:
        stepped = {n: max(0.0, cur[n] + lr * (importance[n] / total - cur[n])) for n in SIMILARITY_FEATURES}
    s = sum(stepped.values())
    if s <= 0.0:
        return weights
    return Weights(**{n: v / s for n, v in stepped.items()})


def _nudge_thresholds(thresholds: Thresholds, t_star: float, lr: float) -> Thresholds:
    order = ["low", "medium", "high", "excellent"]
    cur = thresholds.to_dict()
    lo, hi = _THRESHOLD_BOUNDS
    vals = []
    for name in order:
        target = t_star + _THRESHOLD_OFFSETS[name]
        vals.append(min(hi, max(lo, cur[name] + lr * (target - cur[name]))))
    for i in range(1, len(vals)):
        vals[i] = max(vals[i], vals[i - 1] + _THRESHOLD_GAP)
    for i in range(len(vals) - 1, -1, -1):
        vals[i] = min(vals[i], hi - _THRESHOLD_GAP * (len(vals) - 1 - i))
        if i < len(vals) - 1:
            vals[i] = min(vals[i], vals[i + 1] - _THRESHOLD_GAP)
    return Thresholds(**dict(zip(order, vals)))


def _same(a: Dict[str, float], b: Dict[str, float]) -> bool:
    return all(abs(a[k] - b[k]) <= _TOLERANCE for k in a)
