import pytest

from listing_match.errors import InputError
from listing_match.matcher import AddressMatcher
from listing_match.models import AddressRecord, Confidence, MatchState
from listing_match.repositories import InMemoryAddressRepository, InMemoryListingRepository
from listing_match.scoring import ModelState, Weights
from listing_match.simulate import generate_addresses, generate_listings

from conftest import at, make_listing


@pytest.fixture
def matcher(model, training):
    return AddressMatcher(model, training)


class TestFindBestMatch:
    def test_exact_text_is_excellent(self, matcher, addresses):
        listing = make_listing("l1", "ул. Тестовая, 10")
        result = matcher.find_best_match(listing, addresses)
        assert result.address_id == "a1"
        assert result.confidence == Confidence.EXCELLENT
        assert result.score == pytest.approx(1.0)
        assert result.method == "smart-ml"
        assert not result.proximity_applied

    def test_neighbouring_house_number_is_medium(self, matcher):
        listing = make_listing("l1", "ул. Тестовая, 10")
        cand = AddressRecord("a2", "ул. Тестовая, 12", at(200, 90))
        result = matcher.find_best_match(listing, [cand])
        assert result.confidence == Confidence.MEDIUM
        assert 0.70 < result.score < 0.72

    def test_proximity_override_applies_to_close_candidate(self, matcher):
        listing = make_listing("l1", "ул. Тестовая, 10")
        cand = AddressRecord("a3", "пр-т Мира, 5", at(10))
        result = matcher.find_best_match(listing, [cand])
        assert result.proximity_applied
        assert result.confidence == Confidence.HIGH
        assert result.score == pytest.approx(0.9)

    def test_ranking_uses_overridden_scores(self, matcher):
        listing = make_listing("l1", "ул. Тестовая, 10")
        medium_far = AddressRecord("far", "ул. Тестовая, 12", at(300))
        poor_close = AddressRecord("close", "пр-т Мира, 5", at(10, 180))
        result = matcher.find_best_match(listing, [medium_far, poor_close])
        assert result.address_id == "close"

    def test_ties_go_to_nearer_then_earlier(self, matcher):
        listing = make_listing("l1", "ул. Тестовая, 10")
        farther = AddressRecord("farther", "ул. Тестовая, 10", at(100))
        nearer = AddressRecord("nearer", "ул. Тестовая, 10", at(50))
        assert matcher.find_best_match(listing, [farther, nearer]).address_id == "nearer"
        twin_a = AddressRecord("twin_a", "ул. Тестовая, 10", at(60))
        twin_b = AddressRecord("twin_b", "ул. Тестовая, 10", at(60))
        assert matcher.find_best_match(listing, [twin_a, twin_b]).address_id == "twin_a"

    def test_candidates_inside_search_radius_win(self, matcher):
        listing = make_listing("l1", "ул. Тестовая, 10")
        near = AddressRecord("near", "пр-т Мира, 5", at(100))
        far = AddressRecord("far", "ул. Тестовая, 10", at(2000))
        assert matcher.find_best_match(listing, [far, near]).address_id == "near"

    def test_falls_back_to_all_candidates(self, matcher):
        listing = make_listing("l1", "ул. Тестовая, 10")
        far_a = AddressRecord("far_a", "пр-т Мира, 5", at(2000))
        far_b = AddressRecord("far_b", "ул. Тестовая, 10", at(3000))
        assert matcher.find_best_match(listing, [far_a, far_b]).address_id == "far_b"

    def test_no_candidates(self, matcher):
        assert matcher.find_best_match(make_listing("l1", "ул. Тестовая, 10"), []) is None

    def test_malformed_candidates_are_skipped(self, matcher, addresses):
        listing = make_listing("l1", "ул. Тестовая, 10")
        broken = AddressRecord("broken", "   ", at(5))
        result = matcher.find_best_match(listing, [broken, None] + addresses)
        assert result.address_id == "a1"

    def test_falsy_candidate_id_is_accepted(self, matcher):
        listing = make_listing("l1", "ул. Тестовая, 10")
        result = matcher.find_best_match(listing, [AddressRecord(0, "ул. Тестовая, 10", at(150))])
        assert result is not None and result.address_id == 0
        assert matcher.find_best_match(listing, [AddressRecord(None, "ул. Тестовая, 10", at(150))]) is None

    def test_empty_listing_text_raises(self, matcher, addresses):
        with pytest.raises(InputError):
            matcher.find_best_match(make_listing("l1", "  "), addresses)

    def test_is_deterministic(self, matcher, addresses):
        listing = make_listing("l1", "Москва, Тестовая ул, дом 12")
        assert matcher.find_best_match(listing, addresses) == matcher.find_best_match(listing, addresses)


class TestMatchListing:
    def test_writes_result_and_state(self, model, training, addresses):
        repo = InMemoryListingRepository()
        matcher = AddressMatcher(model, training, listing_repo=repo)
        listing = make_listing("l1", "ул. Тестовая, 10")
        matcher.match_listing(listing, addresses)
        assert listing.match_state == MatchState.MATCHED
        assert listing.matched_address_id == "a1"
        assert listing.match_confidence == Confidence.EXCELLENT
        assert listing.match_method == "smart-ml"
        assert listing.match_distance_meters == pytest.approx(150, abs=1)
        assert repo.get("l1") is listing

    def test_unmatchable_clears_fields(self, matcher):
        listing = make_listing("l1", "ул. Тестовая, 10", matched_address_id="old", match_score=0.5)
        assert matcher.match_listing(listing, []) is None
        assert listing.match_state == MatchState.UNMATCHABLE
        assert listing.matched_address_id is None
        assert listing.match_score is None

    def test_input_error_reverts_state(self, matcher, addresses):
        listing = make_listing("l1", "")
        with pytest.raises(InputError):
            matcher.match_listing(listing, addresses)
        assert listing.match_state == MatchState.UNMATCHED

    def test_uses_address_repository(self, model, training, addresses):
        matcher = AddressMatcher(model, training, address_repo=InMemoryAddressRepository(addresses))
        listing = make_listing("l1", "ул. Тестовая, 12")
        assert matcher.match_listing(listing).address_id == "a2"

    def test_repository_fallback_when_nothing_is_near(self, model, training, addresses):
        matcher = AddressMatcher(model, training, address_repo=InMemoryAddressRepository(addresses))
        listing = make_listing("l1", "пр-т Мира, 5", at(20000, 45))
        assert matcher.match_listing(listing).address_id == "a3"


class TestMatchBatch:
    def test_counts_and_errors(self, matcher, addresses):
        listings = [make_listing("l1", "ул. Тестовая, 10"), make_listing("bad", ""),
                    make_listing("l3", "пр-т Мира, 5")]
        summary = matcher.match_batch(listings, addresses)
        assert (summary.processed, summary.matched, summary.errored) == (3, 2, 1)
        assert "bad" in summary.errors
        assert not summary.cancelled
        assert summary.model_version == 1

    def test_cancellation_between_listings(self, matcher, addresses):
        listings = [make_listing(f"l{i}", "ул. Тестовая, 10") for i in range(5)]
        calls = []

        def cancel():
            calls.append(1)
            return len(calls) > 2

        summary = matcher.match_batch(listings, addresses, cancel=cancel)
        assert summary.cancelled
        assert summary.processed == 2
        assert [l.match_state for l in listings[2:]] == [MatchState.UNMATCHED] * 3

    def test_one_snapshot_per_batch(self, model, training, addresses):
        matcher = AddressMatcher(model, training)
        first = make_listing("l1", "ул. Тестовая, 12")
        second = make_listing("l2", "Тестовая 10 ул")
        expected = matcher.find_best_match(second, addresses, state=model.state)
        swapped = []

        def swap_model_after_first():
            if first.match_state == MatchState.MATCHED and not swapped:
                model.load(ModelState(version=9, weights=Weights(0, 0, 0, 0, 1.0)))
                swapped.append(True)
            return False

        summary = matcher.match_batch([first, second], addresses, cancel=swap_model_after_first)
        assert swapped
        assert summary.model_version == 1
        assert second.match_score == pytest.approx(expected.score)
        assert model.version == 9

    def test_proximity_invariant_on_simulated_data(self, model, training):
        addresses = generate_addresses(n=40, seed=3)
        listings, truth = generate_listings(addresses, per_address=3, seed=5)
        matcher = AddressMatcher(model, training, address_repo=InMemoryAddressRepository(addresses))
        summary = matcher.match_batch(listings)
        assert summary.matched == len(listings)
        for l in listings:
            if l.match_distance_meters <= 20:
                assert l.match_confidence >= Confidence.HIGH
                assert l.match_score >= 0.9
        correct = sum(1 for l in listings if l.matched_address_id == truth[l.id])
        assert correct / len(listings) > 0.8


def test_feedback_and_retrain_from_store(matcher, addresses, training):
    listing = make_listing("l1", "ул. Тестовая, 10")
    ex = matcher.record_feedback(listing, addresses[0], True, timestamp=42)
    assert ex.timestamp == 42 and ex.is_correct
    assert len(training) == 1
    report = matcher.retrain_from_store()
    assert not report.retrained
    assert report.reason == "not_enough_positive"


def test_feedback_rejects_malformed_candidate(matcher):
    with pytest.raises(InputError):
        matcher.record_feedback(make_listing("l1", "ул. Тестовая, 10"), AddressRecord("x", "", at(0)), False)


def test_stats(matcher, addresses):
    matcher.match_listing(make_listing("l1", "ул. Тестовая, 10"), addresses)
    matcher.match_listing(make_listing("l2", "ул. Тестовая, 10"), [])
    stats = matcher.stats()
    assert stats["total"] == 2
    assert stats["successful"] == 1
    assert stats["by_confidence"]["excellent"] == 1
    assert stats["average_score"] == pytest.approx(1.0)
    assert stats["model_version"] == 1
