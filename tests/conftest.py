"""Shared fixtures."""

import pytest

from listing_match.config import default_config
from listing_match.models import AddressRecord, Coordinate, FeatureVector, Listing, TrainingExample
from listing_match.scoring import ScoringModel
from listing_match.training import TrainingStore
from listing_match.utils import offset_latlon

ORIGIN = (55.7500, 37.6100)


def at(dist_m: float, bearing: float = 0.0, origin=ORIGIN) -> Coordinate:
    """Coordinate dist_m meters from origin along bearing (degrees)."""
    lat, lng = offset_latlon(origin[0], origin[1], bearing, dist_m)
    return Coordinate(lat, lng)


def make_listing(lid: str, text: str, coords: Coordinate = None, **kw) -> Listing:
    return Listing(id=lid, address_text=text, coordinates=coords or at(0), **kw)


def make_features(value: float, distance: float = 100.0) -> FeatureVector:
    return FeatureVector(
        textual_similarity=value,
        semantic_similarity=value,
        structural_similarity=value,
        fuzzy_score=value,
        length_ratio=value,
        distance_meters=distance,
    )


def labelled(n_pos: int, n_neg: int, pos_value: float = 0.9, neg_value: float = 0.2):
    out = [TrainingExample(make_features(pos_value), True, i) for i in range(n_pos)]
    out += [TrainingExample(make_features(neg_value), False, n_pos + i) for i in range(n_neg)]
    return out


@pytest.fixture
def cfg():
    return default_config()


@pytest.fixture
def model(cfg):
    return ScoringModel(cfg=cfg)


@pytest.fixture
def training(cfg):
    return TrainingStore(cfg)


@pytest.fixture
def addresses():
    return [
        AddressRecord("a1", "Москва, ул. Тестовая, д. 10", at(150, 0)),
        AddressRecord("a2", "Москва, ул. Тестовая, д. 12", at(200, 90)),
        AddressRecord("a3", "Москва, пр-т Мира, д. 5", at(300, 180)),
    ]
