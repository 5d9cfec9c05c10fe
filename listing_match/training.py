from __future__ import annotations
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

from .config import Config, default_config
from .models import TrainingExample

logger = logging.getLogger(__name__)


class TrainingStore:
    """Bounded FIFO of labelled feature vectors; the oldest example is evicted first."""

    def __init__(self, cfg: Optional[Config] = None):
        self.cfg = cfg or default_config()
        self.capacity = self.cfg.max_training_examples
        self._items: Deque[TrainingExample] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def record(self, example: TrainingExample) -> None:
        with self._lock:
            self._items.append(example)

    def examples(self) -> List[TrainingExample]:
        with self._lock:
            return list(self._items)

    def counts(self) -> Dict[str, int]:
        items = self.examples()
        pos = sum(1 for ex in items if ex.is_correct)
        return {"positive": pos, "negative": len(items) - pos, "total": len(items)}

    def ready_for_retrain(self) -> bool:
        c = self.counts()
        return (c["positive"] >= self.cfg.min_positive_examples
                and c["negative"] >= self.cfg.min_negative_examples
                and c["total"] >= self.cfg.min_total_examples)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def export_all(self) -> List[Dict[str, Any]]:
        return [ex.to_dict() for ex in self.examples()]

    def import_all(self, rows: Iterable[Dict[str, Any]]) -> Dict[str, int]:
        """Append exported rows; malformed rows are skipped and counted."""
        imported = skipped = 0
        for row in rows:
            try:
                ex = TrainingExample.from_dict(row)
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.warning("Skipping malformed training row: %s", e)
                continue
            if not ex.features.is_complete():
                skipped += 1
                logger.warning("Skipping training row with out-of-range features")
                continue
            self.record(ex)
            imported += 1
        logger.info("Imported %d training examples (%d skipped), store size %d", imported, skipped, len(self))
        return {"imported": imported, "skipped": skipped}
