from __future__ import annotations
import json
import logging
from typing import Dict, Optional

from .errors import PersistenceError
from .repositories import KeyValueStore
from .scoring import ModelState
from .training import TrainingStore

logger = logging.getLogger(__name__)

MODEL_STATE_KEY = "model_state"
TRAINING_KEY = "training_examples"


def _decode(raw: bytes, key: str):
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PersistenceError(f"Stored value under {key!r} is not valid JSON: {e}") from e


def save_model_state(store: KeyValueStore, state: ModelState) -> None:
    store.set(MODEL_STATE_KEY, json.dumps(state.to_dict(), ensure_ascii=False).encode("utf-8"))
    logger.info("Saved model state v%d", state.version)


def load_model_state(store: KeyValueStore) -> Optional[ModelState]:
    raw = store.get(MODEL_STATE_KEY)
    if raw is None:
        return None
    data = _decode(raw, MODEL_STATE_KEY)
    try:
        return ModelState.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise PersistenceError(f"Stored model state is malformed: {e}") from e


def save_training_store(store: KeyValueStore, training: TrainingStore) -> None:
    rows = training.export_all()
    store.set(TRAINING_KEY, json.dumps(rows, ensure_ascii=False).encode("utf-8"))
    logger.info("Saved %d training examples", len(rows))


def load_training_store(store: KeyValueStore, training: TrainingStore) -> Dict[str, int]:
    """Append stored examples to `training`; malformed rows are skipped and counted."""
    raw = store.get(TRAINING_KEY)
    if raw is None:
        return {"imported": 0, "skipped": 0}
    rows = _decode(raw, TRAINING_KEY)
    if not isinstance(rows, list):
        raise PersistenceError(f"Stored training data is not a list: {type(rows).__name__}")
    return training.import_all(rows)
