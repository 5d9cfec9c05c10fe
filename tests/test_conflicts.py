import pytest

from listing_match.conflicts import ConsistencyChecker
from listing_match.evaluate import best_f1_threshold, confusion_at, evaluate_examples
from listing_match.geo import distance_meters
from listing_match.matcher import AddressMatcher
from listing_match.models import AddressRecord, Confidence
from listing_match.repositories import InMemoryAddressRepository
from listing_match.scoring import ModelState

from conftest import at, labelled, make_listing


def _types(conflicts):
    return [c.conflict_type for c in conflicts]


class TestConsistencyChecker:
    def test_matched_listing_is_consistent(self, model, training, addresses):
        listing = make_listing("l1", "ул. Тестовая, 10")
        AddressMatcher(model, training).match_listing(listing, addresses)
        assert ConsistencyChecker().check(listing, addresses[0]) == []

    def test_unmatched_listing_is_ignored(self):
        assert ConsistencyChecker().check(make_listing("l1", "x"), None) == []

    def test_missing_address(self):
        listing = make_listing("l1", "x", matched_address_id="gone")
        assert _types(ConsistencyChecker().check(listing, None)) == ["MISSING_ADDRESS"]

    def test_distance_mismatch(self):
        addr = AddressRecord("a1", "x", at(100))
        listing = make_listing("l1", "x", matched_address_id="a1", match_distance_meters=50.0,
                               match_confidence=Confidence.MEDIUM, match_score=0.6)
        assert _types(ConsistencyChecker().check(listing, addr)) == ["DISTANCE_MISMATCH"]

    def test_proximity_rule_violation(self):
        addr = AddressRecord("a1", "x", at(10))
        d = distance_meters(at(0), addr.coordinates)
        listing = make_listing("l1", "x", matched_address_id="a1", match_distance_meters=d,
                               match_confidence=Confidence.MEDIUM, match_score=0.95)
        assert _types(ConsistencyChecker().check(listing, addr)) == ["PROXIMITY_RULE_VIOLATION"]

    def test_audit_over_repository(self, addresses):
        repo = InMemoryAddressRepository(addresses)
        ok = make_listing("ok", "x")
        bad = make_listing("bad", "x", matched_address_id="nope")
        conflicts = ConsistencyChecker().audit([ok, bad], repo)
        assert [(c.listing_id, c.conflict_type) for c in conflicts] == [("bad", "MISSING_ADDRESS")]


class TestEvaluate:
    def test_confusion_at(self):
        scored = [(0.9, True), (0.8, False), (0.3, True), (0.1, False)]
        assert confusion_at(scored, 0.5) == {"tp": 1, "fp": 1, "tn": 1, "fn": 1}

    def test_best_f1_threshold_separates_classes(self):
        scored = [(0.9, True), (0.85, True), (0.4, False), (0.2, False)]
        assert best_f1_threshold(scored) == pytest.approx(0.625)
        assert best_f1_threshold([]) == 0.5

    def test_single_distinct_score(self):
        # a single distinct score leaves only one candidate threshold
        scored = [(0.5, True), (0.5, False)]
        assert best_f1_threshold(scored) == 0.5

    def test_evaluate_examples(self):
        metrics = evaluate_examples(labelled(6, 4), ModelState())
        assert (metrics["tp"], metrics["fn"], metrics["tn"], metrics["fp"]) == (6, 0, 4, 0)
        assert metrics["f1"] == 1.0
        assert metrics["skipped"] == 0
