from __future__ import annotations
import math
from dataclasses import dataclass, field, fields
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from .errors import InputError


class Confidence(IntEnum):
    VERY_LOW = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    EXCELLENT = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "Confidence":
        try:
            return cls[(label or "").strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown confidence label: {label!r}") from None


class MatchState(str, Enum):
    UNMATCHED = "unmatched"
    MATCHING = "matching"
    MATCHED = "matched"
    UNMATCHABLE = "unmatchable"


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

    def __post_init__(self) -> None:
        try:
            lat = float(self.lat)
            lng = float(self.lng)
        except (TypeError, ValueError):
            raise InputError(f"Coordinates are not numeric: lat={self.lat!r} lng={self.lng!r}") from None
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise InputError(f"Coordinates are not finite: lat={lat} lng={lng}")
        if not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
            raise InputError(f"Coordinates out of range: lat={lat} lng={lng}")
        # frozen: normalise str/int input through object.__setattr__
        object.__setattr__(self, "lat", lat)
        object.__setattr__(self, "lng", lng)


@dataclass
class AddressRecord:
    id: str
    text: str
    coordinates: Coordinate


@dataclass
class Listing:
    id: str
    address_text: str
    coordinates: Coordinate
    matched_address_id: Optional[str] = None
    match_confidence: Optional[Confidence] = None
    match_score: Optional[float] = None
    match_distance_meters: Optional[float] = None
    match_method: Optional[str] = None
    match_state: MatchState = MatchState.UNMATCHED
    # consolidation inputs
    price: Optional[float] = None
    seller_type: Optional[str] = None
    status: str = "active"
    object_id: Optional[str] = None
    processing_status: Optional[str] = None
    created: Optional[int] = None
    updated: Optional[int] = None


@dataclass(frozen=True)
class FeatureVector:
    textual_similarity: float
    semantic_similarity: float
    structural_similarity: float
    fuzzy_score: float
    length_ratio: float
    distance_meters: float

    def similarities(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in SIMILARITY_FEATURES}

    def is_complete(self) -> bool:
        for name in SIMILARITY_FEATURES:
            v = getattr(self, name)
            if not isinstance(v, (int, float)) or not math.isfinite(v) or not 0.0 <= v <= 1.0:
                return False
        d = self.distance_meters
        return isinstance(d, (int, float)) and math.isfinite(d) and d >= 0.0

    def to_dict(self) -> Dict[str, float]:
        return {f.name: float(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "FeatureVector":
        names = [f.name for f in fields(cls)]
        unknown = set(raw) - set(names)
        if unknown:
            raise ValueError(f"Unknown features: {sorted(unknown)}")
        missing = [n for n in names if n not in raw]
        if missing:
            raise ValueError(f"Missing features: {missing}")
        return cls(**{n: float(raw[n]) for n in names})


# Features that take part in the weighted score; distance only drives the proximity rule.
SIMILARITY_FEATURES = (
    "textual_similarity",
    "semantic_similarity",
    "structural_similarity",
    "fuzzy_score",
    "length_ratio",
)


@dataclass(frozen=True)
class MatchResult:
    address_id: str
    score: float
    confidence: Confidence
    distance_meters: float
    method: str = "smart-ml"
    features: Optional[FeatureVector] = None
    proximity_applied: bool = False


@dataclass
class TrainingExample:
    features: FeatureVector
    is_correct: bool
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "features": self.features.to_dict(),
            "is_correct": bool(self.is_correct),
            "timestamp": int(self.timestamp),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TrainingExample":
        return cls(
            features=FeatureVector.from_dict(raw["features"]),
            is_correct=bool(raw["is_correct"]),
            timestamp=int(raw["timestamp"]),
        )


@dataclass
class CanonicalObject:
    id: str
    address_id: Optional[str]
    listing_ids: List[str] = field(default_factory=list)
    price_min: Optional[float] = None
    price_avg: Optional[float] = None
    price_max: Optional[float] = None
    current_price: Optional[float] = None
    owner_status: str = "agents_only"
    status: str = "archive"
    listings_count: int = 0
    active_listings_count: int = 0
    created: Optional[int] = None
    updated: Optional[int] = None


@dataclass
class Conflict:
    listing_id: str
    conflict_type: str
    detail: str


@dataclass
class BatchSummary:
    processed: int = 0
    matched: int = 0
    unmatched: int = 0
    errored: int = 0
    cancelled: bool = False
    model_version: int = 0
    errors: Dict[str, str] = field(default_factory=dict)
