from __future__ import annotations
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from .config import Config, default_config
from .errors import InputError
from .geo import distance_meters
from .models import CanonicalObject, Confidence, Listing

logger = logging.getLogger(__name__)

OWNER_SELLER_TYPES = {"owner", "частное лицо"}
PROCESSED = "processed"
DUPLICATE_CHECK_NEEDED = "duplicate_check_needed"

_LOW_TIERS = {Confidence.VERY_LOW, Confidence.LOW}
_HIGH_TIERS = {Confidence.HIGH, Confidence.EXCELLENT}


@dataclass
class ConsolidationSummary:
    groups: int = 0
    singletons: int = 0
    merged_objects: List[str] = field(default_factory=list)
    extended_objects: List[str] = field(default_factory=list)
    inconsistent_groups: List[List[str]] = field(default_factory=list)
    mixed_address_groups: List[List[str]] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


def is_owner(listing: Listing) -> bool:
    return (listing.seller_type or "").strip().casefold() in OWNER_SELLER_TYPES


class DuplicateConsolidator:
    """Groups listings of the same property and merges them into canonical objects.

    Listings are never deleted; merging stamps object_id on them and
    splitting clears it again.
    """

    def __init__(self, cfg: Optional[Config] = None):
        self.cfg = cfg or default_config()
        self.objects: Dict[str, CanonicalObject] = {}
        self._listings: Dict[str, Listing] = {}

    def group_by_proximity(self, listings: Sequence[Listing], radius_m: Optional[float] = None) -> List[List[Listing]]:
        """Single-linkage groups: every listing lands in exactly one group."""
        radius = self.cfg.consolidation_radius_m if radius_m is None else radius_m
        visited = set()
        groups: List[List[Listing]] = []
        for i in range(len(listings)):
            if i in visited:
                continue
            visited.add(i)
            group = [i]
            queue = deque([i])
            while queue:
                cur = queue.popleft()
                for j in range(len(listings)):
                    if j in visited:
                        continue
                    if distance_meters(listings[cur].coordinates, listings[j].coordinates) <= radius:
                        visited.add(j)
                        group.append(j)
                        queue.append(j)
            groups.append([listings[k] for k in sorted(group)])
        return groups

    def group_by_address(self, listings: Iterable[Listing]) -> List[List[Listing]]:
        by_addr: Dict[str, List[Listing]] = {}
        groups: List[List[Listing]] = []
        for l in listings:
            if l.matched_address_id is None:
                groups.append([l])
                continue
            if l.matched_address_id not in by_addr:
                by_addr[l.matched_address_id] = []
                groups.append(by_addr[l.matched_address_id])
            by_addr[l.matched_address_id].append(l)
        return groups

    def detect_inconsistent_groups(self, groups: Iterable[List[Listing]]) -> List[List[Listing]]:
        """Groups that mix a LOW/VERY_LOW match with a HIGH/EXCELLENT one. Reported, never corrected."""
        out = []
        for g in groups:
            tiers = {l.match_confidence for l in g if l.match_confidence is not None}
            if tiers & _LOW_TIERS and tiers & _HIGH_TIERS:
                logger.warning("Inconsistent confidence in group %s: %s",
                               [l.id for l in g], sorted(t.label for t in tiers))
                out.append(g)
        return out

    def validate_merge_by_address(self, listings: Iterable[Listing]) -> bool:
        return len({l.matched_address_id for l in listings if l.matched_address_id is not None}) <= 1

    def track(self, listings: Iterable[Listing]) -> None:
        """Remember listings by id so objects can be recalculated from their members."""
        for l in listings:
            self._listings[l.id] = l

    def members(self, object_id: str) -> List[Listing]:
        obj = self.objects.get(object_id)
        if obj is None:
            return []
        listed = set(obj.listing_ids)
        out = [self._listings[i] for i in obj.listing_ids
               if i in self._listings and self._listings[i].object_id == object_id]
        out += [l for l in self._listings.values() if l.object_id == object_id and l.id not in listed]
        return out

    def merge_into_object(self, listings: Sequence[Listing], address_id: Optional[str] = None) -> CanonicalObject:
        """New object from `listings`. Objects they belonged to are recalculated, or dropped when emptied."""
        if not listings:
            raise InputError("Nothing to merge")
        if not self.validate_merge_by_address(listings):
            raise InputError(f"Listings {[l.id for l in listings]} point at different addresses")
        if address_id is None:
            address_id = next((l.matched_address_id for l in listings if l.matched_address_id), None)

        self.track(listings)
        sources = _object_ids(listings, self.objects)
        obj = CanonicalObject(id=uuid.uuid4().hex[:12], address_id=address_id)
        _fill(obj, listings)
        for l in listings:
            l.object_id = obj.id
            l.processing_status = PROCESSED
        self.objects[obj.id] = obj
        for oid in sources:
            self.refresh_object(oid)
        logger.info("Merged %d listings into object %s", len(listings), obj.id)
        return obj

    def add_listings_to_object(self, object_id: str, listings: Sequence[Listing]) -> CanonicalObject:
        obj = self.objects.get(object_id)
        if obj is None:
            raise InputError(f"Unknown object {object_id}")
        addresses = {l.matched_address_id for l in listings if l.matched_address_id is not None}
        if obj.address_id is not None:
            addresses.add(obj.address_id)
        if len(addresses) > 1:
            raise InputError(f"Listings {[l.id for l in listings]} do not match object {object_id} address")

        self.track(listings)
        sources = [oid for oid in _object_ids(listings, self.objects) if oid != object_id]
        for l in listings:
            l.object_id = object_id
            l.processing_status = PROCESSED
        if obj.address_id is None and addresses:
            obj.address_id = addresses.pop()
        self.refresh_object(object_id)
        for oid in sources:
            self.refresh_object(oid)
        logger.info("Added %d listings to object %s", len(listings), object_id)
        return obj

    def refresh_object(self, object_id: str, listings: Iterable[Listing] = ()) -> Optional[CanonicalObject]:
        """Recalculate an object from its current members; drop it when none are left."""
        obj = self.objects.get(object_id)
        if obj is None:
            raise InputError(f"Unknown object {object_id}")
        self.track(listings)
        members = self.members(object_id)
        # ids never seen by this consolidator stay listed but cannot be priced
        unseen = [i for i in obj.listing_ids if i not in self._listings]
        if not members and not unseen:
            del self.objects[object_id]
            logger.info("Object %s removed: no listings left", object_id)
            return None
        if unseen:
            logger.warning("Object %s: listings %s not loaded, aggregates cover the rest", object_id, unseen)
        _fill(obj, members)
        obj.listing_ids += unseen
        obj.listings_count += len(unseen)
        return obj

    def split_objects_to_listings(self, object_ids: Iterable[str], listings: Iterable[Listing]) -> Dict[str, int]:
        ids = set(object_ids)
        self.track(listings)
        released = 0
        for l in self._listings.values():
            if l.object_id in ids:
                l.object_id = None
                l.processing_status = DUPLICATE_CHECK_NEEDED
                released += 1
        removed = 0
        for oid in ids:
            if self.objects.pop(oid, None) is not None:
                removed += 1
        logger.info("Split %d objects back into %d listings", removed, released)
        return {"objects": removed, "listings": released}

    def exclude_listings_from_object(self, object_id: str, listing_ids: Iterable[str],
                                     listings: Iterable[Listing]) -> Optional[CanonicalObject]:
        """Detach some listings; the object is recalculated, or dropped when empty."""
        obj = self.objects.get(object_id)
        if obj is None:
            raise InputError(f"Unknown object {object_id}")
        self.track(listings)
        drop = set(listing_ids)
        for l in self.members(object_id):
            if l.id in drop:
                l.object_id = None
                l.processing_status = DUPLICATE_CHECK_NEEDED
        obj.listing_ids = [i for i in obj.listing_ids if i not in drop]
        return self.refresh_object(object_id)

    def consolidate(self, listings: Sequence[Listing], radius_m: Optional[float] = None) -> ConsolidationSummary:
        """Merge nearby listings of one address. A failing group does not stop the rest.

        Members of existing objects take part in grouping: a new listing next
        to an object of the same address joins it. Objects whose members are
        passed in are recalculated first, and members whose matched address
        moved away are detached.
        """
        self.track(listings)
        touched: List[str] = []
        for l in listings:
            obj = self.objects.get(l.object_id) if l.object_id is not None else None
            if obj is None:
                continue
            if l.object_id not in touched:
                touched.append(l.object_id)
            if obj.address_id is not None and l.matched_address_id != obj.address_id:
                logger.info("Listing %s left object %s: address changed to %s",
                            l.id, obj.id, l.matched_address_id)
                l.object_id = None
                l.processing_status = DUPLICATE_CHECK_NEEDED
        for oid in touched:
            self.refresh_object(oid)

        groups = [g for g in self.group_by_proximity(listings, radius_m)
                  if any(l.object_id not in self.objects for l in g)]
        summary = ConsolidationSummary(groups=len(groups))
        inconsistent = {id(g) for g in self.detect_inconsistent_groups(groups)}

        for g in groups:
            ids = [l.id for l in g]
            if len(g) < 2:
                summary.singletons += 1
                continue
            if id(g) in inconsistent:
                summary.inconsistent_groups.append(ids)
                continue
            pending = [l for l in g if l.object_id not in self.objects]
            nearby = _object_ids(g, self.objects)
            try:
                if nearby:
                    target = self._attachable(pending, nearby)
                    if target is None:
                        summary.mixed_address_groups.append(ids)
                        continue
                    self.add_listings_to_object(target, pending)
                    summary.extended_objects.append(target)
                    continue
                if not self.validate_merge_by_address(g):
                    summary.mixed_address_groups.append(ids)
                    continue
                obj = self.merge_into_object(g)
            except InputError as e:
                summary.failed[",".join(ids)] = str(e)
                logger.warning("Merge of %s failed: %s", ids, e)
                continue
            summary.merged_objects.append(obj.id)

        logger.info("Consolidation: %d groups, %d objects, %d extended, %d inconsistent, %d mixed-address",
                    summary.groups, len(summary.merged_objects), len(summary.extended_objects),
                    len(summary.inconsistent_groups), len(summary.mixed_address_groups))
        return summary

    def _attachable(self, pending: Sequence[Listing], object_ids: Sequence[str]) -> Optional[str]:
        """The single nearby object whose address agrees with every pending listing."""
        if not self.validate_merge_by_address(pending):
            return None
        addr = next((l.matched_address_id for l in pending if l.matched_address_id is not None), None)
        fits = [oid for oid in object_ids
                if addr is None or self.objects[oid].address_id in (None, addr)]
        return fits[0] if len(fits) == 1 else None


def _object_ids(listings: Iterable[Listing], objects: Dict[str, CanonicalObject]) -> List[str]:
    out: List[str] = []
    for l in listings:
        if l.object_id in objects and l.object_id not in out:
            out.append(l.object_id)
    return out


def _fill(obj: CanonicalObject, listings: Sequence[Listing]) -> None:
    prices = [float(l.price) for l in listings if l.price is not None]
    obj.listing_ids = [l.id for l in listings]
    obj.price_min = min(prices) if prices else None
    obj.price_max = max(prices) if prices else None
    obj.price_avg = sum(prices) / len(prices) if prices else None

    priced = [l for l in listings if l.price is not None]
    latest = max(priced, key=lambda l: l.updated if l.updated is not None else -1, default=None)
    obj.current_price = float(latest.price) if latest is not None else None

    owners = [l for l in listings if is_owner(l)]
    if any(l.status == "active" for l in owners):
        obj.owner_status = "owner_active"
    elif owners:
        obj.owner_status = "owner_past"
    else:
        obj.owner_status = "agents_only"

    active = sum(1 for l in listings if l.status == "active")
    obj.status = "active" if active else "archive"
    obj.listings_count = len(listings)
    obj.active_listings_count = active

    created = [l.created for l in listings if l.created is not None]
    updated = [l.updated for l in listings if l.updated is not None]
    obj.created = min(created) if created else None
    obj.updated = max(updated) if updated else None
