from __future__ import annotations
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from .models import Confidence, TrainingExample


def confusion_at(scored: Iterable[Tuple[float, bool]], threshold: float) -> Dict[str, int]:
    tp = fp = tn = fn = 0
    for score, y in scored:
        pred = score >= threshold
        if pred and y: tp += 1
        elif pred and not y: fp += 1
        elif not pred and not y: tn += 1
        else: fn += 1
    return {"tp": tp, "fp": fp, "tn": tn, "fn": fn}


def metrics_from(counts: Dict[str, int]) -> Dict[str, Any]:
    tp, fp, fn = counts["tp"], counts["fp"], counts["fn"]
    prec = tp / (tp + fp) if (tp + fp) else 0.0
    rec = tp / (tp + fn) if (tp + fn) else 0.0
    f1 = (2 * prec * rec / (prec + rec)) if (prec + rec) else 0.0
    out: Dict[str, Any] = dict(counts)
    out.update({"precision": prec, "recall": rec, "f1": f1})
    return out


def best_f1_threshold(scored: Sequence[Tuple[float, bool]], default: float = 0.5) -> float:
    """Threshold with the highest F1 over the labelled scores.

    Candidates are the lowest score and the midpoints between adjacent
    distinct scores, tried in ascending order; ties keep the lower threshold.
    """
    values = sorted({float(s) for s, _ in scored})
    if not values:
        return default
    candidates: List[float] = [values[0]]
    candidates += [(a + b) / 2.0 for a, b in zip(values, values[1:])]

    best_t, best_f1 = default, -1.0
    for t in candidates:
        f1 = metrics_from(confusion_at(scored, t))["f1"]
        if f1 > best_f1:
            best_t, best_f1 = t, f1
    return best_t


def evaluate_examples(examples: Iterable[TrainingExample], state) -> Dict[str, Any]:
    """Confusion counts of a model snapshot against labelled examples.

    A prediction is positive when the example classifies as MEDIUM or better.
    """
    tp = fp = tn = fn = 0
    skipped = 0
    for ex in examples:
        if not ex.features.is_complete():
            skipped += 1
            continue
        pred = state.classify(state.score(ex.features)) >= Confidence.MEDIUM
        y = bool(ex.is_correct)
        if pred and y: tp += 1
        elif pred and not y: fp += 1
        elif not pred and not y: tn += 1
        else: fn += 1
    out = metrics_from({"tp": tp, "fp": fp, "tn": tn, "fn": fn})
    out["skipped"] = skipped
    return out
