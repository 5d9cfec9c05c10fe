import pytest

from listing_match.db import (
    ExcelKeyValueStore,
    clear_table,
    connect,
    get_listing,
    init_db,
    insert_conflicts,
    insert_match_log,
    list_addresses,
    list_conflicts,
    list_listings,
    list_match_logs,
    list_objects,
    upsert_address,
    upsert_listing,
    write_objects,
)
from listing_match.errors import PersistenceError
from listing_match.models import AddressRecord, CanonicalObject, Confidence, Conflict, MatchState
from listing_match.persistence import (
    MODEL_STATE_KEY,
    TRAINING_KEY,
    load_model_state,
    load_training_store,
    save_model_state,
    save_training_store,
)
from listing_match.repositories import InMemoryKeyValueStore
from listing_match.scoring import ModelState, Weights
from listing_match.training import TrainingStore

from conftest import at, labelled, make_listing


@pytest.fixture
def conn(tmp_path):
    c = connect(tmp_path / "db.xlsx")
    init_db(c)
    return c


def reopen(conn):
    return connect(conn.path)


class TestWorkbook:
    def test_addresses_round_trip(self, conn):
        upsert_address(conn, AddressRecord("101", "ул. Тестовая, 10", at(0)))
        upsert_address(conn, AddressRecord("a2", "пр-т Мира, 5", at(50)))
        upsert_address(conn, AddressRecord("101", "ул. Тестовая, 10к1", at(0)))
        rows = list_addresses(reopen(conn))
        assert [a.id for a in rows] == ["101", "a2"]
        assert rows[0].text == "ул. Тестовая, 10к1"
        assert rows[1].coordinates.lat == pytest.approx(at(50).lat)

    def test_invalid_coordinates_are_skipped(self, conn):
        upsert_address(conn, AddressRecord("ok", "x", at(0)))
        conn.tables["addresses"].at[0, "lat"] = 123.0
        conn.save()
        assert list_addresses(reopen(conn)) == []

    def test_listing_round_trip(self, conn):
        l = make_listing("7", "ул. Тестовая, 10", at(5), matched_address_id="101",
                         match_confidence=Confidence.HIGH, match_score=0.91, match_distance_meters=5.0,
                         match_method="smart-ml", match_state=MatchState.MATCHED, price=12_500_000.0,
                         seller_type="Частное лицо", status="archive", created=1, updated=2)
        upsert_listing(conn, l)
        upsert_listing(conn, make_listing("8", "пр-т Мира, 5"))
        fresh = reopen(conn)
        back = get_listing(fresh, "7")
        assert back == l
        assert [x.id for x in list_listings(fresh)] == ["7", "8"]
        assert get_listing(fresh, "missing") is None

    def test_objects_conflicts_and_logs(self, conn):
        obj = CanonicalObject(id="o1", address_id="101", listing_ids=["7", "8"], price_min=1.0, price_avg=1.5,
                              price_max=2.0, current_price=2.0, owner_status="owner_active", status="active",
                              listings_count=2, active_listings_count=1, created=10, updated=20)
        write_objects(conn, [obj])
        insert_conflicts(conn, [Conflict("7", "MISSING_ADDRESS", "gone")])
        insert_conflicts(conn, [Conflict("8", "DISTANCE_MISMATCH", "far")])
        insert_match_log(conn, "7", {"address_id": "101", "score": 0.9}, model_version=2)
        fresh = reopen(conn)
        assert list_objects(fresh) == [obj]
        assert [c.conflict_type for c in list_conflicts(fresh)] == ["MISSING_ADDRESS", "DISTANCE_MISMATCH"]
        logs = list_match_logs(fresh)
        assert len(logs) == 1 and logs[0]["listing_id"] == "7" and logs[0]["model_version"] == 2

    def test_clear_table(self, conn):
        upsert_address(conn, AddressRecord("a", "x", at(0)))
        clear_table(conn, "addresses")
        assert list_addresses(reopen(conn)) == []
        with pytest.raises(ValueError):
            clear_table(conn, "nope")

    def test_unreadable_workbook(self, tmp_path):
        path = tmp_path / "broken.xlsx"
        path.write_text("not a workbook", encoding="utf-8")
        with pytest.raises(PersistenceError):
            connect(path)


class TestKeyValue:
    def test_large_values_span_chunks(self, conn):
        kv = ExcelKeyValueStore(conn)
        blob = bytes(range(256)) * 300
        kv.set("blob", blob)
        kv.set("small", b"x")
        kv.set("blob", blob[::-1])
        fresh = ExcelKeyValueStore(reopen(conn))
        assert fresh.get("blob") == blob[::-1]
        assert fresh.get("small") == b"x"
        assert fresh.get("missing") is None

    def test_empty_value(self, conn):
        kv = ExcelKeyValueStore(conn)
        kv.set("empty", b"")
        assert ExcelKeyValueStore(reopen(conn)).get("empty") == b""


class TestModelAndTraining:
    @pytest.mark.parametrize("kind", ["memory", "excel"])
    def test_round_trip(self, kind, conn):
        kv = InMemoryKeyValueStore() if kind == "memory" else ExcelKeyValueStore(conn)
        state = ModelState(version=4, weights=Weights(0.5, 0.2, 0.1, 0.1, 0.1), trained_examples=30, updated_at=99)
        training = TrainingStore()
        for ex in labelled(3, 2):
            training.record(ex)
        save_model_state(kv, state)
        save_training_store(kv, training)
        if kind == "excel":
            kv = ExcelKeyValueStore(reopen(conn))
        assert load_model_state(kv) == state
        restored = TrainingStore()
        assert load_training_store(kv, restored) == {"imported": 5, "skipped": 0}
        assert restored.export_all() == training.export_all()

    def test_missing_keys(self):
        kv = InMemoryKeyValueStore()
        assert load_model_state(kv) is None
        assert load_training_store(kv, TrainingStore()) == {"imported": 0, "skipped": 0}

    def test_corrupt_values_raise(self):
        kv = InMemoryKeyValueStore()
        kv.set(MODEL_STATE_KEY, b"{not json")
        with pytest.raises(PersistenceError):
            load_model_state(kv)
        kv.set(MODEL_STATE_KEY, b'{"version": 1}')
        with pytest.raises(PersistenceError):
            load_model_state(kv)
        kv.set(TRAINING_KEY, b'{"rows": []}')
        with pytest.raises(PersistenceError):
            load_training_store(kv, TrainingStore())
