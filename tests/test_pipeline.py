from pathlib import Path

import pytest

from listing_match.db import (
    ExcelConnection,
    ExcelKeyValueStore,
    connect,
    init_db,
    list_conflicts,
    list_listings,
    list_match_logs,
    list_objects,
)
from listing_match.models import Confidence, Coordinate, MatchState
from listing_match.persistence import save_model_state
from listing_match.pipeline import ListingMatchPipeline
from listing_match.scoring import ModelState, Weights
from listing_match.simulate import generate_addresses, seed_workbook

DATA_DIR = Path(__file__).resolve().parent.parent / "data"


@pytest.fixture
def seeded(cfg, tmp_path):
    cfg.db_path = str(tmp_path / "listing_match.xlsx")
    conn = connect(cfg.db_path)
    init_db(conn)
    counts = seed_workbook(conn, cfg, n_addresses=30, n_feedback=30, seed=7)
    return cfg, counts


def test_seed_counts(seeded):
    cfg, counts = seeded
    assert counts["addresses"] == 30
    assert counts["training"] == {"positive": 15, "negative": 15, "total": 30}
    assert len(counts["truth"]) == counts["listings"]


def test_generated_addresses_are_unique():
    addrs = generate_addresses(n=40, seed=3)
    assert len({a.text for a in addrs}) == 40
    assert addrs == generate_addresses(n=40, seed=3)


def test_run_end_to_end(seeded):
    cfg, counts = seeded
    pipe = ListingMatchPipeline(cfg, str(DATA_DIR))
    result = pipe.run()

    assert result["listings"] == counts["listings"]
    assert result["errored"] == 0
    assert result["matched"] + result["unmatched"] == counts["listings"]
    assert result["conflicts"] == 0

    fresh = connect(cfg.db_path)
    listings = list_listings(fresh)
    assert len(list_match_logs(fresh)) == counts["listings"]
    assert list_conflicts(fresh) == []

    truth = counts["truth"]
    matched = [l for l in listings if l.match_state == MatchState.MATCHED]
    correct = sum(1 for l in matched if l.matched_address_id == truth[l.id])
    assert correct >= 0.8 * len(listings)

    for l in matched:
        if l.match_distance_meters <= cfg.proximity_radius_m:
            assert l.match_confidence >= Confidence.HIGH
            assert l.match_score >= cfg.proximity_score_floor

    objects = list_objects(fresh)
    assert len(objects) == result["objects"] > 0
    by_id = {l.id: l for l in listings}
    for obj in objects:
        members = [by_id[i] for i in obj.listing_ids]
        assert len(members) >= 2
        assert {m.object_id for m in members} == {obj.id}
        assert {m.matched_address_id for m in members} == {obj.address_id}


def test_second_run_keeps_objects(seeded):
    cfg, _ = seeded
    first = ListingMatchPipeline(cfg, str(DATA_DIR)).run()
    second = ListingMatchPipeline(cfg, str(DATA_DIR)).run()
    assert second["objects"] == first["objects"]
    assert second["merged_this_run"] == 0


def test_retrain_survives_reload(seeded):
    cfg, _ = seeded
    pipe = ListingMatchPipeline(cfg, str(DATA_DIR))
    pipe.load()
    assert pipe.training.ready_for_retrain()
    report = pipe.matcher().retrain_from_store()
    pipe.save_model()

    again = ListingMatchPipeline(cfg, str(DATA_DIR))
    again.load()
    assert again.model.state == pipe.model.state
    assert again.model.version == report.version
    assert again.training.counts() == pipe.training.counts()


def test_match_text_finds_reference(seeded):
    cfg, _ = seeded
    pipe = ListingMatchPipeline(cfg, str(DATA_DIR))
    pipe.load()
    target = pipe.addresses.all()[0]
    out = pipe.match_text(target.text, target.coordinates.lat, target.coordinates.lng, top_n=3)
    assert out["best"]["address_id"] == target.id
    assert out["best"]["confidence"] == "excellent"
    assert len(out["alternatives"]) <= 2


def test_compare(cfg, tmp_path):
    cfg.db_path = str(tmp_path / "compare.xlsx")
    pipe = ListingMatchPipeline(cfg, str(DATA_DIR))
    same = pipe.compare("Москва, ул. Тверская, д. 12", 55.76, 37.61, "г. Москва, улица Тверская, 12", 55.765, 37.61)
    assert same["proximity_applied"] is False
    assert same["normalized"][0] == same["normalized"][1]
    assert same["confidence"] == "excellent"

    near = pipe.compare("ул. Арбат, 5", 55.75, 37.59, "пр-т Мира, 40", 55.75, 37.59)
    assert near["proximity_applied"] is True
    assert near["raw_score"] < near["score"] == cfg.proximity_score_floor
    assert near["confidence"] == "high"


def test_compare_uses_stored_model(seeded):
    cfg, _ = seeded
    save_model_state(ExcelKeyValueStore(connect(cfg.db_path)),
                     ModelState(version=7, weights=Weights(0.0, 0.0, 0.0, 0.0, 1.0)))
    pipe = ListingMatchPipeline(cfg, str(DATA_DIR))
    out = pipe.compare("ул. Арбат, 5", 55.75, 37.59, "пр-т Мира, 40", 55.76, 37.59)
    fv = pipe.extractor.extract_texts("ул. Арбат, 5", Coordinate(55.75, 37.59),
                                      "пр-т Мира, 40", Coordinate(55.76, 37.59))
    assert out["model_version"] == 7
    assert out["raw_score"] == round(fv.length_ratio, 4)


def test_load_does_not_rewrite_workbook(seeded, monkeypatch):
    cfg, _ = seeded
    saves = []
    monkeypatch.setattr(ExcelConnection, "save", lambda self: saves.append(self.path))
    pipe = ListingMatchPipeline(cfg, str(DATA_DIR))
    pipe.load()
    pipe.match_text("ул. Арбат, 5", 55.75, 37.59)
    pipe.model_info()
    assert saves == []
