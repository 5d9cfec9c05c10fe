from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from rapidfuzz.distance import LCSseq, Levenshtein

from .base_data import NOISE_TOKENS, STREET_TYPES, _key, default_alias_map

_DEFAULT_ALIASES = default_alias_map()

_HOUSE_RE = re.compile(r"^\d+[а-яa-z]?(?:/\d+[а-яa-z]?)?(?:к\d+)?(?:с\d+)?$")
_STREET_TYPE_WORDS = set(STREET_TYPES)


@dataclass(frozen=True)
class AddressComponents:
    street: str
    house: Optional[str]


def normalize_address(text: Optional[str], aliases: Optional[Dict[str, str]] = None) -> str:
    """Canonical form of a Russian street address.

    "Москва, ул. Тестовая, д. 10 корп. 1" -> "улица тестовая 10к1"
    """
    if text is None:
        return ""
    rev = _DEFAULT_ALIASES if aliases is None else aliases
    t = text.casefold().replace("ё", "е")

    t = t.replace("（", "(").replace("）", ")").replace("【", "[").replace("】", "]")
    t = re.sub(r"\([^)]*\)", " ", t)
    t = re.sub(r"\[[^\]]*\]", " ", t)

    t = re.sub(r"[.,;:!?\"'«»№#*\\]", " ", t)

    # house number suffixes: "10 корп. 1" -> "10к1", "5 стр 2" -> "5с2", "10 а" -> "10а"
    t = re.sub(r"(\d+)\s*(?:корпус|корп|к)\s*(\d+)", r"\1к\2", t)
    t = re.sub(r"(\d+)\s*(?:строение|стр|с)\s*(\d+)", r"\1с\2", t)
    t = re.sub(r"(\d+)\s+([а-я])(?![а-я0-9])", r"\1\2", t)

    out: List[str] = []
    for tok in t.split():
        tok = tok.strip("-")
        if not tok:
            continue
        tok = rev.get(_key(tok), tok)
        if tok in NOISE_TOKENS:
            continue
        out.append(tok)
    return " ".join(out)


def extract_components(normalized: str) -> AddressComponents:
    tokens = normalized.split()
    house_idx = None
    for i in range(len(tokens) - 1, -1, -1):
        if _HOUSE_RE.match(tokens[i]):
            house_idx = i
            break
    street = [tok for i, tok in enumerate(tokens) if i != house_idx and tok not in _STREET_TYPE_WORDS]
    return AddressComponents(
        street=" ".join(street),
        house=tokens[house_idx] if house_idx is not None else None,
    )


def _prep(s: Optional[str]) -> str:
    return " ".join((s or "").casefold().split())


def normalized_edit_similarity(a: Optional[str], b: Optional[str]) -> float:
    """1 - levenshtein / max(len); two empty strings are identical."""
    a, b = _prep(a), _prep(b)
    if not a and not b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b)


def token_overlap_similarity(a: Optional[str], b: Optional[str]) -> float:
    A, B = set(_prep(a).split()), set(_prep(b).split())
    if not A and not B:
        return 1.0
    if not A or not B:
        return 0.0
    return len(A & B) / len(A | B)


def length_ratio(a: Optional[str], b: Optional[str]) -> float:
    la, lb = len(_prep(a)), len(_prep(b))
    if la == 0 and lb == 0:
        return 1.0
    return min(la, lb) / max(la, lb)


def char_ngram_set(s: str, n: int = 2) -> Set[str]:
    s = re.sub(r"\s+", "", s)
    if len(s) < n:
        return {s} if s else set()
    return {s[i:i+n] for i in range(len(s) - n + 1)}


def ngram_similarity(a: str, b: str, n: int = 2) -> float:
    if not a or not b:
        return 0.0
    A, B = char_ngram_set(a, n), char_ngram_set(b, n)
    if not A or not B:
        return 0.0
    return len(A & B) / max(1, len(A | B))


def lcs_ratio(a: Optional[str], b: Optional[str]) -> float:
    a, b = _prep(a), _prep(b)
    if not a and not b:
        return 1.0
    return LCSseq.normalized_similarity(a, b)


def _fuzzy_hits(src: List[str], dst: List[str]) -> int:
    hits = 0
    for w1 in src:
        for w2 in dst:
            if w1 == w2 or (len(w1) >= 3 and len(w2) >= 3
                            and Levenshtein.normalized_similarity(w1, w2, score_cutoff=0.7) >= 0.7):
                hits += 1
                break
    return hits


def fuzzy_token_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Share of words that have an exact or close (edit similarity >= 0.7) partner."""
    wa, wb = _prep(a).split(), _prep(b).split()
    if not wa and not wb:
        return 1.0
    if not wa or not wb:
        return 0.0
    longest = max(len(wa), len(wb))
    return min(_fuzzy_hits(wa, wb), _fuzzy_hits(wb, wa)) / longest


def combined_text_similarity(a: Optional[str], b: Optional[str]) -> float:
    a, b = _prep(a), _prep(b)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return (
        normalized_edit_similarity(a, b) * 0.25
        + token_overlap_similarity(a, b) * 0.25
        + ngram_similarity(a, b, 2) * 0.20
        + ngram_similarity(a, b, 3) * 0.15
        + lcs_ratio(a, b) * 0.15
    )


def component_similarity(c1: AddressComponents, c2: AddressComponents) -> float:
    total = 0.0
    weight = 0.0
    if c1.street and c2.street:
        total += combined_text_similarity(c1.street, c2.street) * 2.0
        weight += 2.0
    if c1.house and c2.house:
        house = 1.0 if c1.house == c2.house else combined_text_similarity(c1.house, c2.house)
        total += house * 1.5
        weight += 1.5
    return total / weight if weight else 0.0
