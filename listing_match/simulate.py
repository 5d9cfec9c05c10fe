from __future__ import annotations
import random
from typing import Dict, List, Tuple

from .config import Config
from .db import TABLE_SCHEMAS, ExcelConnection, ExcelKeyValueStore, clear_table, upsert_address, upsert_listing
from .matcher import AddressMatcher
from .models import AddressRecord, Coordinate, Listing
from .persistence import save_model_state, save_training_store
from .scoring import ScoringModel
from .training import TrainingStore
from .utils import offset_latlon

"""
Synthetic data for local runs and tests.

1. generate_addresses(): a Moscow-style reference base, one record per
   street + house number, scattered around the city centre.
2. generate_listings(): several scraped listings per address with the
   usual noise of Avito/Cian strings: abbreviation styles ("ул." /
   "улица"), "д." prefixes, city prefixes, occasional typos, and GPS
   jitter (mostly within 15 m, sometimes up to 150 m).
3. generate_feedback_pairs(): labelled (listing, address, is_correct)
   pairs. Positives pair a listing with its true address, negatives with
   a random other address.
"""

BASE_LAT, BASE_LNG = 55.7558, 37.6173

STREETS = [
    ("ул.", "Тверская"), ("ул.", "Арбат"), ("пр-т", "Мира"), ("ул.", "Профсоюзная"),
    ("пер.", "Столешников"), ("б-р", "Тверской"), ("наб.", "Пресненская"),
    ("ш.", "Варшавское"), ("ул.", "Маросейка"), ("пр-т", "Ленинский"),
    ("ул.", "Большая Ордынка"), ("ул.", "Новослободская"),
]

_TYPE_STYLES = {
    "ул.": ["ул.", "ул", "улица"],
    "пр-т": ["пр-т", "просп.", "проспект"],
    "пер.": ["пер.", "переулок"],
    "б-р": ["б-р", "бульвар"],
    "наб.": ["наб.", "набережная"],
    "ш.": ["ш.", "шоссе"],
}

SELLER_TYPES = ["agent", "agency", "owner", "Частное лицо", "developer"]


def _house(rng: random.Random) -> str:
    n = str(rng.randint(1, 120))
    r = rng.random()
    if r < 0.15:
        return f"{n}к{rng.randint(1, 4)}"
    if r < 0.25:
        return f"{n}{rng.choice('абв')}"
    return n


def _house_text(rng: random.Random, house: str) -> str:
    if "к" in house:
        num, korp = house.split("к")
        return rng.choice([f"{num}к{korp}", f"{num} к{korp}", f"{num} корп. {korp}", f"{num}, корпус {korp}"])
    return house


def _typo(rng: random.Random, word: str) -> str:
    if len(word) < 5:
        return word
    i = rng.randint(1, len(word) - 2)
    return word[:i] + word[i + 1:] if rng.random() < 0.5 else word[:i] + word[i + 1] + word[i] + word[i + 2:]


def generate_addresses(n: int = 60, seed: int = 7) -> List[AddressRecord]:
    rng = random.Random(seed)
    seen = set()
    out: List[AddressRecord] = []
    while len(out) < n:
        stype, name = rng.choice(STREETS)
        house = _house(rng)
        if (name, house) in seen:
            continue
        seen.add((name, house))
        lat = BASE_LAT + rng.uniform(-0.05, 0.05)
        lng = BASE_LNG + rng.uniform(-0.08, 0.08)
        out.append(AddressRecord(
            id=f"addr{len(out) + 1:04d}",
            text=f"Москва, {stype} {name}, д. {house}",
            coordinates=Coordinate(lat, lng),
        ))
    return out


def _parse_reference(text: str) -> Tuple[str, str, str]:
    # "Москва, ул. Тверская, д. 12к1" -> ("ул.", "Тверская", "12к1")
    _, street, house = [p.strip() for p in text.split(",")]
    stype, name = street.split(" ", 1)
    return stype, name, house.replace("д. ", "")


def listing_text(rng: random.Random, address: AddressRecord, typo_rate: float = 0.1) -> str:
    stype, name, house = _parse_reference(address.text)
    stype = rng.choice(_TYPE_STYLES.get(stype, [stype]))
    if rng.random() < typo_rate:
        name = _typo(rng, name)
    house_part = rng.choice(["", "д. ", "дом "]) + _house_text(rng, house)
    street_part = rng.choice([f"{stype} {name}", f"{name} {stype}"])
    prefix = rng.choice(["", "Москва, ", "г. Москва, ", "Россия, Москва, "])
    return f"{prefix}{street_part}, {house_part}"


def generate_listings(addresses: List[AddressRecord], per_address: int = 3, seed: int = 11,
                      far_rate: float = 0.1) -> Tuple[List[Listing], Dict[str, str]]:
    """Listings plus the ground truth map listing id -> address id."""
    rng = random.Random(seed)
    listings: List[Listing] = []
    truth: Dict[str, str] = {}
    t0 = 1_700_000_000_000
    for a in addresses:
        base_price = rng.randint(8, 60) * 1_000_000
        for _ in range(rng.randint(1, per_address)):
            dist = rng.uniform(0, 15) if rng.random() >= far_rate else rng.uniform(30, 150)
            lat, lng = offset_latlon(a.coordinates.lat, a.coordinates.lng, rng.uniform(0, 360), dist)
            created = t0 + rng.randint(0, 90) * 86_400_000
            l = Listing(
                id=f"lst{len(listings) + 1:05d}",
                address_text=listing_text(rng, a),
                coordinates=Coordinate(lat, lng),
                price=float(base_price + rng.randint(-20, 20) * 100_000),
                seller_type=rng.choice(SELLER_TYPES),
                status="active" if rng.random() < 0.7 else "archive",
                created=created,
                updated=created + rng.randint(0, 30) * 86_400_000,
            )
            listings.append(l)
            truth[l.id] = a.id
    return listings, truth


def generate_feedback_pairs(addresses: List[AddressRecord], listings: List[Listing], truth: Dict[str, str],
                            n: int = 60, seed: int = 13) -> List[Tuple[Listing, AddressRecord, bool]]:
    rng = random.Random(seed)
    by_id = {a.id: a for a in addresses}
    pairs: List[Tuple[Listing, AddressRecord, bool]] = []
    for i in range(n):
        l = rng.choice(listings)
        true_addr = by_id[truth[l.id]]
        if i % 2 == 0:
            pairs.append((l, true_addr, True))
        else:
            other = rng.choice([a for a in addresses if a.id != true_addr.id])
            pairs.append((l, other, False))
    return pairs


def seed_workbook(conn: ExcelConnection, cfg: Config, n_addresses: int = 60, n_feedback: int = 60, seed: int = 7) -> Dict[str, object]:
    """Clear every sheet and fill it with a synthetic address base, listings and feedback."""
    for t in TABLE_SCHEMAS:
        clear_table(conn, t)

    addresses = generate_addresses(n=n_addresses, seed=seed)
    listings, truth = generate_listings(addresses, per_address=3, seed=seed + 4)
    for a in addresses:
        upsert_address(conn, a, autosave=False)
    for l in listings:
        upsert_listing(conn, l, autosave=False)
    conn.save()

    model = ScoringModel(cfg=cfg)
    training = TrainingStore(cfg)
    matcher = AddressMatcher(model, training, cfg=cfg)
    for listing, address, ok in generate_feedback_pairs(addresses, listings, truth, n=n_feedback, seed=seed + 6):
        matcher.record_feedback(listing, address, ok)

    kv = ExcelKeyValueStore(conn)
    save_model_state(kv, model.state)
    save_training_store(kv, training)
    return {"addresses": len(addresses), "listings": len(listings),
            "training": training.counts(), "truth": truth}
