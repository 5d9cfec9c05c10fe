from __future__ import annotations
import json
from pathlib import Path
from typing import Dict, List, Optional

# canonical -> variants, as they appear in Avito/Cian address strings
STREET_TYPES: Dict[str, List[str]] = {
    "улица": ["ул", "улица", "street", "st", "str"],
    "проспект": ["пр", "просп", "пр-т", "пр-кт", "проспект", "avenue", "ave"],
    "переулок": ["пер", "переулок", "lane"],
    "бульвар": ["бул", "б-р", "бр", "бульвар", "blvd"],
    "площадь": ["пл", "площадь", "square", "sq"],
    "набережная": ["наб", "набережная", "emb"],
    "шоссе": ["ш", "шоссе", "hwy"],
    "тупик": ["туп", "тупик"],
    "проезд": ["пр-д", "проезд"],
    "аллея": ["ал", "аллея", "alley"],
    "линия": ["лин", "линия", "line"],
}

BUILDING_TYPES: Dict[str, List[str]] = {
    "дом": ["д", "дом", "house"],
    "корпус": ["к", "корп", "корпус", "bld"],
    "строение": ["стр", "строение"],
    "владение": ["влд", "вл", "владение"],
    "литер": ["лит", "литер", "литера"],
}

MODIFIERS: Dict[str, List[str]] = {
    "большой": ["б", "бол", "большой", "большая", "большое"],
    "малый": ["м", "мал", "малый", "малая", "малое"],
    "новый": ["нов", "новый", "новая"],
    "старый": ["стар", "старый", "старая"],
    "верхний": ["верх", "верхний", "верхняя"],
    "нижний": ["ниж", "нижний", "нижняя"],
}

# tokens that carry no address identity once a listing is known to be in the city
NOISE_TOKENS = {"москва", "мск", "спб", "санкт-петербург", "г", "город", "россия", "рф", "дом"}


def load_alias_map(path: str | Path) -> Dict[str, List[str]]:
    p = Path(path)
    return json.loads(p.read_text(encoding="utf-8"))


def build_reverse_alias_map(canonical_to_aliases: Dict[str, List[str]]) -> Dict[str, str]:
    """
    Return: alias -> canonical (all lower-case, no spaces)
    """
    rev: Dict[str, str] = {}
    for canon, aliases in canonical_to_aliases.items():
        canon_key = _key(canon)
        rev[canon_key] = canon
        for a in aliases:
            rev[_key(a)] = canon
    return rev


def default_alias_map(extra: Optional[Dict[str, List[str]]] = None) -> Dict[str, str]:
    """Reverse map over street types, modifiers and any extra dictionary.

    Only "дом" is taken from the building types: "к"/"стр" are already folded
    into the house number when tokens are mapped.
    """
    merged: Dict[str, List[str]] = {}
    for src in (STREET_TYPES, MODIFIERS, {"дом": BUILDING_TYPES["дом"]}, extra or {}):
        for canon, aliases in src.items():
            merged.setdefault(canon, []).extend(aliases)
    return build_reverse_alias_map(merged)


def _key(s: str) -> str:
    return "".join((s or "").lower().split()).replace("ё", "е")
