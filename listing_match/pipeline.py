from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .base_data import default_alias_map, load_alias_map
from .config import Config
from .conflicts import ConsistencyChecker
from .consolidation import DuplicateConsolidator
from .db import (
    ExcelConnection,
    ExcelKeyValueStore,
    connect,
    init_db,
    insert_conflicts,
    insert_match_log,
    list_addresses,
    list_listings,
    list_objects,
    write_listings,
    write_objects,
)
from .evaluate import evaluate_examples
from .features import FeatureExtractor
from .matcher import AddressMatcher
from .models import Coordinate, Listing, MatchResult
from .persistence import load_model_state, load_training_store, save_model_state, save_training_store
from .repositories import InMemoryAddressRepository, InMemoryListingRepository
from .scoring import ScoringModel
from .training import TrainingStore

logger = logging.getLogger(__name__)


def result_to_dict(r: Optional[MatchResult]) -> Optional[Dict[str, Any]]:
    if r is None:
        return None
    return {
        "address_id": r.address_id,
        "score": round(r.score, 4),
        "confidence": r.confidence.label,
        "distance_meters": round(r.distance_meters, 2),
        "method": r.method,
        "proximity_applied": r.proximity_applied,
        "features": {k: round(v, 4) for k, v in r.features.to_dict().items()} if r.features else None,
    }


class ListingMatchPipeline:
    """Workbook flow: load -> match -> audit -> consolidate -> persist."""

    def __init__(self, cfg: Config, data_dir: str):
        self.cfg = cfg
        self.data_dir = Path(data_dir)
        alias_path = self.data_dir / "alias_streets.json"
        extra = load_alias_map(alias_path) if alias_path.exists() else None
        self.extractor = FeatureExtractor(default_alias_map(extra))
        self.model = ScoringModel(cfg=cfg)
        self.training = TrainingStore(cfg)
        self.checker = ConsistencyChecker(cfg)
        self.conn: Optional[ExcelConnection] = None
        self.addresses: Optional[InMemoryAddressRepository] = None

    def load(self) -> ExcelConnection:
        """Open the workbook and restore model and training data from its kv sheet."""
        conn = connect(self.cfg.db_path)
        init_db(conn)
        kv = ExcelKeyValueStore(conn)
        state = load_model_state(kv)
        if state is not None:
            self.model.load(state)
        self.training.clear()
        load_training_store(kv, self.training)
        self.addresses = InMemoryAddressRepository(list_addresses(conn), self.cfg.grid_precision)
        self.conn = conn
        logger.info("Loaded %d addresses, model v%d, %d training examples",
                    len(self.addresses.index), self.model.version, len(self.training))
        return conn

    def matcher(self, listing_repo: Optional[InMemoryListingRepository] = None) -> AddressMatcher:
        return AddressMatcher(self.model, self.training, address_repo=self.addresses,
                              listing_repo=listing_repo, extractor=self.extractor, cfg=self.cfg)

    def save_model(self) -> None:
        kv = ExcelKeyValueStore(self.conn)
        save_model_state(kv, self.model.state)
        save_training_store(kv, self.training)

    def run(self) -> Dict[str, Any]:
        conn = self.load()
        listings = list_listings(conn)
        repo = InMemoryListingRepository(listings)
        matcher = self.matcher(repo)

        def log_result(listing: Listing, result: Optional[MatchResult]) -> None:
            insert_match_log(conn, listing.id, result_to_dict(result), self.model.version, autosave=False)

        summary = matcher.match_batch(listings, on_result=log_result)
        write_listings(conn, listings)

        conflicts = self.checker.audit(listings, self.addresses)
        insert_conflicts(conn, conflicts)

        consolidator = DuplicateConsolidator(self.cfg)
        for obj in list_objects(conn):
            consolidator.objects[obj.id] = obj
        cons = consolidator.consolidate(listings)
        write_objects(conn, consolidator.objects.values())
        write_listings(conn, listings)

        self.save_model()
        return {
            "listings": len(listings),
            "matched": summary.matched,
            "unmatched": summary.unmatched,
            "errored": summary.errored,
            "model_version": summary.model_version,
            "conflicts": len(conflicts),
            "objects": len(consolidator.objects),
            "merged_this_run": len(cons.merged_objects),
            "extended_this_run": len(cons.extended_objects),
            "inconsistent_groups": len(cons.inconsistent_groups),
            "stats": matcher.stats(),
        }

    def match_text(self, text: str, lat: float, lng: float, top_n: int = 5) -> Dict[str, Any]:
        """Match one ad-hoc address against the reference base without storing it."""
        if self.addresses is None:
            self.load()
        listing = Listing(id="adhoc", address_text=text, coordinates=Coordinate(lat, lng))
        matcher = self.matcher()
        near = self.addresses.get_candidates_near(listing.coordinates, self.cfg.search_radius_m)
        ranked = matcher.rank_candidates(listing, near or self.addresses.all())
        return {
            "best": result_to_dict(ranked[0]) if ranked else None,
            "alternatives": [result_to_dict(r) for r in ranked[1:top_n]],
            "model_version": self.model.version,
        }

    def compare(self, text_a: str, lat_a: float, lng_a: float,
                text_b: str, lat_b: float, lng_b: float) -> Dict[str, Any]:
        if self.conn is None:
            self.load()
        fv = self.extractor.extract_texts(text_a, Coordinate(lat_a, lng_a), text_b, Coordinate(lat_b, lng_b))
        state = self.model.state
        raw = state.score(fv)
        conf = state.classify(raw)
        score, final_conf = self.model.apply_proximity_override(fv, raw, conf)
        return {
            "normalized": [self.extractor.prepare(text_a)[0], self.extractor.prepare(text_b)[0]],
            "features": {k: round(v, 4) for k, v in fv.to_dict().items()},
            "raw_score": round(raw, 4),
            "score": round(score, 4),
            "confidence": final_conf.label,
            "proximity_applied": fv.distance_meters <= self.cfg.proximity_radius_m,
            "model_version": state.version,
        }

    def evaluate(self) -> Dict[str, Any]:
        if self.conn is None:
            self.load()
        return evaluate_examples(self.training.examples(), self.model.state)

    def model_info(self) -> Dict[str, Any]:
        info = self.model.state.to_dict()
        info["training"] = self.training.counts()
        info["ready_for_retrain"] = self.training.ready_for_retrain()
        return info
