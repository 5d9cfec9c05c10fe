from __future__ import annotations
import logging
from typing import Iterable, List, Optional

from .config import Config, default_config
from .geo import distance_meters
from .models import AddressRecord, Confidence, Conflict, Listing

logger = logging.getLogger(__name__)

DISTANCE_TOLERANCE_M = 1.0


class ConsistencyChecker:
    """Audits stored match results against the reference addresses."""

    def __init__(self, cfg: Optional[Config] = None):
        self.cfg = cfg or default_config()

    def check(self, listing: Listing, address: Optional[AddressRecord]) -> List[Conflict]:
        if listing.matched_address_id is None:
            return []
        conflicts: List[Conflict] = []

        # matched address no longer in the reference base
        if address is None:
            conflicts.append(Conflict(listing.id, "MISSING_ADDRESS",
                                      f"matched_address_id={listing.matched_address_id} not found"))
            return conflicts

        d = distance_meters(listing.coordinates, address.coordinates)
        stored = listing.match_distance_meters
        if stored is None or abs(stored - d) > DISTANCE_TOLERANCE_M:
            conflicts.append(Conflict(listing.id, "DISTANCE_MISMATCH",
                                      f"stored={stored} vs recomputed={d:.2f}"))

        if d <= self.cfg.proximity_radius_m:
            conf = listing.match_confidence
            score = listing.match_score
            if conf is None or conf < Confidence.HIGH or score is None or score < self.cfg.proximity_score_floor:
                label = conf.label if conf is not None else None
                conflicts.append(Conflict(listing.id, "PROXIMITY_RULE_VIOLATION",
                                          f"distance={d:.2f} confidence={label} score={score}"))
        return conflicts

    def audit(self, listings: Iterable[Listing], address_repo) -> List[Conflict]:
        out: List[Conflict] = []
        for l in listings:
            if l.matched_address_id is None:
                continue
            out.extend(self.check(l, address_repo.get_by_id(l.matched_address_id)))
        for c in out:
            logger.warning("Conflict %s on listing %s: %s", c.conflict_type, c.listing_id, c.detail)
        return out
