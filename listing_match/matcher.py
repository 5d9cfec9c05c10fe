from __future__ import annotations
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import Config
from .errors import InputError
from .features import FeatureExtractor
from .models import (
    AddressRecord,
    BatchSummary,
    Confidence,
    Coordinate,
    Listing,
    MatchResult,
    MatchState,
    TrainingExample,
)
from .repositories import AddressRepository, ListingRepository
from .scoring import ModelState, RetrainReport, ScoringModel
from .training import TrainingStore
from .utils import now_ms

logger = logging.getLogger(__name__)

METHOD = "smart-ml"


def validate_listing(listing: Listing) -> None:
    if not isinstance(listing.coordinates, Coordinate):
        raise InputError(f"Listing {listing.id}: coordinates missing")
    if not isinstance(listing.address_text, str) or not listing.address_text.strip():
        raise InputError(f"Listing {listing.id}: empty address text")


def is_valid_candidate(c: Any) -> bool:
    return (
        isinstance(c, AddressRecord)
        and c.id is not None
        and isinstance(c.text, str) and bool(c.text.strip())
        and isinstance(c.coordinates, Coordinate)
    )


class AddressMatcher:
    """Matches listings to reference addresses with the current scoring model."""

    def __init__(self, model: ScoringModel, training_store: TrainingStore,
                 address_repo: Optional[AddressRepository] = None,
                 listing_repo: Optional[ListingRepository] = None,
                 extractor: Optional[FeatureExtractor] = None,
                 cfg: Optional[Config] = None):
        self.model = model
        self.training_store = training_store
        self.address_repo = address_repo
        self.listing_repo = listing_repo
        self.cfg = cfg or model.cfg
        self.extractor = extractor or FeatureExtractor()
        self._stats_lock = threading.Lock()
        self._stats: Dict[str, Any] = {"total": 0, "successful": 0, "score_sum": 0.0,
                                       "by_confidence": {c.label: 0 for c in Confidence}}

    def rank_candidates(self, listing: Listing, candidates: Sequence[AddressRecord],
                        state: Optional[ModelState] = None) -> List[MatchResult]:
        """Score every usable candidate, best first.

        Candidates beyond search_radius_m are only considered when none is inside it.
        Ties go to the nearer candidate, then to the earlier one.
        """
        validate_listing(listing)
        state = state or self.model.state

        usable: List[AddressRecord] = []
        for c in candidates:
            if is_valid_candidate(c):
                usable.append(c)
            else:
                logger.warning("Listing %s: skipping malformed candidate %r", listing.id, getattr(c, "id", c))

        scored = []
        for idx, c in enumerate(usable):
            fv = self.extractor.extract(listing, c)
            scored.append((idx, c, fv))
        nearby = [s for s in scored if s[2].distance_meters <= self.cfg.search_radius_m]
        pool = nearby or scored

        results = []
        for idx, c, fv in pool:
            raw = state.score(fv)
            conf = state.classify(raw)
            score, conf2 = self.model.apply_proximity_override(fv, raw, conf)
            logger.debug("Listing %s vs %s: raw=%.4f final=%.4f (%s) d=%.1fm",
                         listing.id, c.id, raw, score, conf2.label, fv.distance_meters)
            res = MatchResult(
                address_id=c.id,
                score=score,
                confidence=conf2,
                distance_meters=fv.distance_meters,
                method=METHOD,
                features=fv,
                proximity_applied=fv.distance_meters <= self.cfg.proximity_radius_m,
            )
            results.append((-score, fv.distance_meters, idx, res))
        results.sort(key=lambda r: r[:3])
        return [r[3] for r in results]

    def find_best_match(self, listing: Listing, candidates: Sequence[AddressRecord],
                        state: Optional[ModelState] = None) -> Optional[MatchResult]:
        ranked = self.rank_candidates(listing, candidates, state)
        return ranked[0] if ranked else None

    def _fetch_candidates(self, listing: Listing) -> List[AddressRecord]:
        if self.address_repo is None:
            raise ValueError("No candidates given and no address repository configured")
        near = self.address_repo.get_candidates_near(listing.coordinates, self.cfg.search_radius_m)
        return near or self.address_repo.all()

    def match_listing(self, listing: Listing, candidates: Optional[Sequence[AddressRecord]] = None,
                      state: Optional[ModelState] = None) -> Optional[MatchResult]:
        validate_listing(listing)
        listing.match_state = MatchState.MATCHING
        try:
            if candidates is None:
                candidates = self._fetch_candidates(listing)
            result = self.find_best_match(listing, candidates, state)
        except Exception:
            listing.match_state = MatchState.UNMATCHED
            raise

        if result is None:
            listing.matched_address_id = None
            listing.match_confidence = None
            listing.match_score = None
            listing.match_distance_meters = None
            listing.match_method = None
            listing.match_state = MatchState.UNMATCHABLE
            logger.debug("Listing %s: no candidates", listing.id)
        else:
            listing.matched_address_id = result.address_id
            listing.match_confidence = result.confidence
            listing.match_score = result.score
            listing.match_distance_meters = result.distance_meters
            listing.match_method = result.method
            listing.match_state = MatchState.MATCHED

        self._count(result)
        if self.listing_repo is not None:
            self.listing_repo.save(listing)
        return result

    def match_batch(self, listings: Sequence[Listing], candidates: Optional[Sequence[AddressRecord]] = None,
                    cancel: Optional[Callable[[], bool]] = None,
                    on_result: Optional[Callable[[Listing, Optional[MatchResult]], None]] = None) -> BatchSummary:
        state = self.model.state
        summary = BatchSummary(model_version=state.version)
        for listing in listings:
            if cancel is not None and cancel():
                summary.cancelled = True
                logger.info("Batch cancelled after %d listings", summary.processed)
                break
            summary.processed += 1
            try:
                result = self.match_listing(listing, candidates, state)
            except InputError as e:
                summary.errored += 1
                summary.errors[str(listing.id)] = str(e)
                logger.warning("Listing %s skipped: %s", listing.id, e)
                continue
            if on_result is not None:
                on_result(listing, result)
            if result is None:
                summary.unmatched += 1
            else:
                summary.matched += 1
        logger.info("Batch done: %d processed, %d matched, %d unmatched, %d errored (model v%d)",
                    summary.processed, summary.matched, summary.unmatched, summary.errored, summary.model_version)
        return summary

    def record_feedback(self, listing: Listing, candidate: AddressRecord, is_correct: bool,
                        timestamp: Optional[int] = None) -> TrainingExample:
        validate_listing(listing)
        if not is_valid_candidate(candidate):
            raise InputError(f"Malformed candidate for feedback on listing {listing.id}")
        ex = TrainingExample(
            features=self.extractor.extract(listing, candidate),
            is_correct=bool(is_correct),
            timestamp=now_ms() if timestamp is None else int(timestamp),
        )
        self.training_store.record(ex)
        return ex

    def retrain_from_store(self) -> RetrainReport:
        return self.model.retrain(self.training_store.examples())

    def _count(self, result: Optional[MatchResult]) -> None:
        with self._stats_lock:
            self._stats["total"] += 1
            if result is None:
                return
            self._stats["successful"] += 1
            self._stats["score_sum"] += result.score
            self._stats["by_confidence"][result.confidence.label] += 1

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            total = self._stats["total"]
            ok = self._stats["successful"]
            return {
                "total": total,
                "successful": ok,
                "success_rate": ok / total if total else 0.0,
                "average_score": self._stats["score_sum"] / ok if ok else 0.0,
                "by_confidence": dict(self._stats["by_confidence"]),
                "model_version": self.model.version,
                "training_examples": len(self.training_store),
            }
