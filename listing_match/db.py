from __future__ import annotations
import base64
import json
import logging
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from .errors import InputError, PersistenceError
from .models import (
    AddressRecord,
    CanonicalObject,
    Confidence,
    Conflict,
    Coordinate,
    Listing,
    MatchState,
)

logger = logging.getLogger(__name__)

TABLE_SCHEMAS: Dict[str, List[str]] = {
    "addresses": ["id", "text", "lat", "lng", "created_at"],
    "listings": [
        "id", "address_text", "lat", "lng",
        "matched_address_id", "match_confidence", "match_score", "match_distance_meters",
        "match_method", "match_state",
        "price", "seller_type", "status", "object_id", "processing_status", "created", "updated",
    ],
    "objects": [
        "id", "address_id", "listing_ids_json", "price_min", "price_avg", "price_max", "current_price",
        "owner_status", "status", "listings_count", "active_listings_count", "created", "updated",
    ],
    "conflicts": ["id", "listing_id", "conflict_type", "detail", "created_at"],
    "match_logs": ["id", "listing_id", "final_json", "model_version", "created_at"],
    "kv": ["key", "chunk", "value", "updated_at"],
}

# identifier columns: Excel turns "101" into 101, read them back as text
KEY_COLUMNS: Dict[str, List[str]] = {
    "addresses": ["id"],
    "listings": ["id", "matched_address_id", "object_id"],
    "objects": ["id", "address_id"],
    "conflicts": ["listing_id"],
    "match_logs": ["listing_id"],
    "kv": ["key"],
}

# one Excel cell holds at most 32767 characters
_KV_CHUNK = 30000

_READ_ERRORS = (OSError, ValueError, KeyError, zipfile.BadZipFile, InvalidFileException)


def _now_str() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _empty_table(name: str) -> pd.DataFrame:
    return pd.DataFrame(columns=TABLE_SCHEMAS[name], dtype=object)


def _ensure_columns(df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    result = df.copy()
    for col in columns:
        if col not in result.columns:
            result[col] = None
    return result[columns].astype(object)


def _clean_value(val: Any) -> Any:
    if val is None:
        return None
    try:
        if pd.isna(val):
            return None
    except (TypeError, ValueError):
        pass
    return val


def _as_str(val: Any) -> Optional[str]:
    val = _clean_value(val)
    if val is None:
        return None
    if isinstance(val, float) and val.is_integer():
        return str(int(val))
    return str(val)


def _as_float(val: Any) -> Optional[float]:
    val = _clean_value(val)
    return None if val is None else float(val)


def _as_int(val: Any) -> Optional[int]:
    val = _clean_value(val)
    return None if val is None else int(float(val))


def _row_to_dict(row: pd.Series) -> Dict[str, Any]:
    return {k: _clean_value(v) for k, v in row.to_dict().items()}


def _next_pk(df: pd.DataFrame, column: str = "id") -> int:
    if df.empty or column not in df.columns:
        return 1
    max_val = pd.to_numeric(df[column], errors="coerce").max()
    if pd.isna(max_val):
        return 1
    return int(max_val) + 1


class ExcelConnection:
    """Workbook-backed "connection": one DataFrame per sheet, written back on save()."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.tables: Dict[str, pd.DataFrame] = {
            name: _empty_table(name) for name in TABLE_SCHEMAS
        }
        if self.path.exists():
            try:
                xls = pd.read_excel(self.path, sheet_name=None, engine="openpyxl")
            except _READ_ERRORS as e:
                raise PersistenceError(f"Cannot read workbook {self.path}: {e}") from e
            for name, cols in TABLE_SCHEMAS.items():
                if name in xls:
                    df = _ensure_columns(xls[name], cols)
                    for col in KEY_COLUMNS[name]:
                        df[col] = df[col].map(_as_str).astype(object)
                    self.tables[name] = df

    def save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with pd.ExcelWriter(self.path, engine="openpyxl") as writer:
                for name, df in self.tables.items():
                    df.to_excel(writer, sheet_name=name, index=False)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot write workbook {self.path}: {e}") from e


def connect(db_path: str | Path) -> ExcelConnection:
    return ExcelConnection(db_path)


def init_db(conn: ExcelConnection) -> None:
    """Write an empty workbook when none exists yet; an existing one is left untouched."""
    if not conn.path.exists():
        conn.save()


def clear_table(conn: ExcelConnection, table: str) -> None:
    if table not in TABLE_SCHEMAS:
        raise ValueError(f"Unknown table: {table}")
    conn.tables[table] = _empty_table(table)
    conn.save()


def _upsert_row(df: pd.DataFrame, row: Dict[str, Any], key_field: str) -> pd.DataFrame:
    if df.empty:
        return pd.DataFrame([row], columns=df.columns, dtype=object)
    mask = df[key_field] == row[key_field]
    if mask.any():
        idx = df.index[mask][0]
        for col in df.columns:
            df.at[idx, col] = row.get(col)
        return df
    return pd.concat([df, pd.DataFrame([row], columns=df.columns, dtype=object)], ignore_index=True)


def _append_rows(df: pd.DataFrame, rows: List[Dict[str, Any]]) -> pd.DataFrame:
    new = pd.DataFrame(rows, columns=df.columns, dtype=object)
    if df.empty:
        return new
    return pd.concat([df, new], ignore_index=True)


# ---- addresses ----

def upsert_address(conn: ExcelConnection, a: AddressRecord, autosave: bool = True) -> None:
    df = conn.tables["addresses"]
    row = {
        "id": a.id,
        "text": a.text,
        "lat": a.coordinates.lat,
        "lng": a.coordinates.lng,
        "created_at": _now_str(),
    }
    mask = df["id"] == a.id
    if mask.any():
        row["created_at"] = _clean_value(df.loc[mask, "created_at"].iloc[0])
    conn.tables["addresses"] = _upsert_row(df, row, "id")
    if autosave:
        conn.save()


def list_addresses(conn: ExcelConnection) -> List[AddressRecord]:
    out: List[AddressRecord] = []
    for _, row in conn.tables["addresses"].iterrows():
        r = _row_to_dict(row)
        try:
            out.append(AddressRecord(id=_as_str(r["id"]), text=r["text"] or "",
                                     coordinates=Coordinate(r["lat"], r["lng"])))
        except InputError as e:
            logger.warning("Skipping address %s: %s", r.get("id"), e)
    return out


# ---- listings ----

def listing_to_row(l: Listing) -> Dict[str, Any]:
    return {
        "id": l.id,
        "address_text": l.address_text,
        "lat": l.coordinates.lat,
        "lng": l.coordinates.lng,
        "matched_address_id": l.matched_address_id,
        "match_confidence": l.match_confidence.label if l.match_confidence is not None else None,
        "match_score": l.match_score,
        "match_distance_meters": l.match_distance_meters,
        "match_method": l.match_method,
        "match_state": l.match_state.value,
        "price": l.price,
        "seller_type": l.seller_type,
        "status": l.status,
        "object_id": l.object_id,
        "processing_status": l.processing_status,
        "created": l.created,
        "updated": l.updated,
    }


def row_to_listing(r: Dict[str, Any]) -> Listing:
    conf = r.get("match_confidence")
    return Listing(
        id=_as_str(r["id"]),
        address_text=r.get("address_text") or "",
        coordinates=Coordinate(r.get("lat"), r.get("lng")),
        matched_address_id=_as_str(r.get("matched_address_id")),
        match_confidence=Confidence.from_label(conf) if conf else None,
        match_score=_as_float(r.get("match_score")),
        match_distance_meters=_as_float(r.get("match_distance_meters")),
        match_method=r.get("match_method"),
        match_state=MatchState(r.get("match_state") or MatchState.UNMATCHED.value),
        price=_as_float(r.get("price")),
        seller_type=r.get("seller_type"),
        status=r.get("status") or "active",
        object_id=_as_str(r.get("object_id")),
        processing_status=r.get("processing_status"),
        created=_as_int(r.get("created")),
        updated=_as_int(r.get("updated")),
    )


def upsert_listing(conn: ExcelConnection, l: Listing, autosave: bool = True) -> None:
    conn.tables["listings"] = _upsert_row(conn.tables["listings"], listing_to_row(l), "id")
    if autosave:
        conn.save()


def write_listings(conn: ExcelConnection, listings: Iterable[Listing]) -> None:
    rows = [listing_to_row(l) for l in listings]
    conn.tables["listings"] = pd.DataFrame(rows, columns=TABLE_SCHEMAS["listings"], dtype=object)
    conn.save()


def list_listings(conn: ExcelConnection) -> List[Listing]:
    out: List[Listing] = []
    for _, row in conn.tables["listings"].iterrows():
        r = _row_to_dict(row)
        try:
            out.append(row_to_listing(r))
        except ValueError as e:
            logger.warning("Skipping listing %s: %s", r.get("id"), e)
    return out


def get_listing(conn: ExcelConnection, listing_id: str) -> Optional[Listing]:
    df = conn.tables["listings"]
    match = df[df["id"] == listing_id]
    if match.empty:
        return None
    return row_to_listing(_row_to_dict(match.iloc[0]))


# ---- objects ----

def write_objects(conn: ExcelConnection, objects: Iterable[CanonicalObject]) -> None:
    rows = []
    for o in objects:
        rows.append({
            "id": o.id,
            "address_id": o.address_id,
            "listing_ids_json": json.dumps(o.listing_ids, ensure_ascii=False),
            "price_min": o.price_min,
            "price_avg": o.price_avg,
            "price_max": o.price_max,
            "current_price": o.current_price,
            "owner_status": o.owner_status,
            "status": o.status,
            "listings_count": o.listings_count,
            "active_listings_count": o.active_listings_count,
            "created": o.created,
            "updated": o.updated,
        })
    conn.tables["objects"] = pd.DataFrame(rows, columns=TABLE_SCHEMAS["objects"], dtype=object)
    conn.save()


def list_objects(conn: ExcelConnection) -> List[CanonicalObject]:
    out: List[CanonicalObject] = []
    for _, row in conn.tables["objects"].iterrows():
        r = _row_to_dict(row)
        out.append(CanonicalObject(
            id=_as_str(r["id"]),
            address_id=_as_str(r.get("address_id")),
            listing_ids=[str(x) for x in json.loads(r.get("listing_ids_json") or "[]")],
            price_min=_as_float(r.get("price_min")),
            price_avg=_as_float(r.get("price_avg")),
            price_max=_as_float(r.get("price_max")),
            current_price=_as_float(r.get("current_price")),
            owner_status=r.get("owner_status") or "agents_only",
            status=r.get("status") or "archive",
            listings_count=_as_int(r.get("listings_count")) or 0,
            active_listings_count=_as_int(r.get("active_listings_count")) or 0,
            created=_as_int(r.get("created")),
            updated=_as_int(r.get("updated")),
        ))
    return out


# ---- diagnostics ----

def insert_conflicts(conn: ExcelConnection, conflicts: List[Conflict]) -> None:
    if not conflicts:
        return
    df = conn.tables["conflicts"]
    next_id = _next_pk(df)
    rows = []
    for c in conflicts:
        rows.append({"id": next_id, "listing_id": c.listing_id, "conflict_type": c.conflict_type,
                     "detail": c.detail, "created_at": _now_str()})
        next_id += 1
    conn.tables["conflicts"] = _append_rows(df, rows)
    conn.save()


def list_conflicts(conn: ExcelConnection) -> List[Conflict]:
    return [Conflict(_as_str(r["listing_id"]), r["conflict_type"], r.get("detail") or "")
            for r in (_row_to_dict(row) for _, row in conn.tables["conflicts"].iterrows())]


def insert_match_log(conn: ExcelConnection, listing_id: str, final: Optional[Dict[str, Any]],
                     model_version: int, autosave: bool = True) -> None:
    df = conn.tables["match_logs"]
    row = {
        "id": _next_pk(df),
        "listing_id": listing_id,
        "final_json": json.dumps(final, ensure_ascii=False),
        "model_version": model_version,
        "created_at": _now_str(),
    }
    conn.tables["match_logs"] = _append_rows(df, [row])
    if autosave:
        conn.save()


def list_match_logs(conn: ExcelConnection) -> List[Dict[str, Any]]:
    return [_row_to_dict(row) for _, row in conn.tables["match_logs"].iterrows()]


# ---- key/value ----

class ExcelKeyValueStore:
    """KeyValueStore on the "kv" sheet. Values are base64 text split over chunk rows."""

    def __init__(self, conn: ExcelConnection):
        self.conn = conn

    def get(self, key: str) -> Optional[bytes]:
        df = self.conn.tables["kv"]
        match = df[df["key"] == key]
        if match.empty:
            return None
        parts = sorted(((_as_int(r["chunk"]) or 0, r["value"] or "")
                        for r in (_row_to_dict(row) for _, row in match.iterrows())),
                       key=lambda p: p[0])
        try:
            return base64.b64decode("".join(str(v) for _, v in parts), validate=True)
        except ValueError as e:
            raise PersistenceError(f"Corrupt value under key {key!r}: {e}") from e

    def set(self, key: str, value: bytes) -> None:
        encoded = base64.b64encode(bytes(value)).decode("ascii")
        chunks = [encoded[i:i + _KV_CHUNK] for i in range(0, len(encoded), _KV_CHUNK)] or [""]
        now = _now_str()
        df = self.conn.tables["kv"]
        df = df[df["key"] != key]
        rows = [{"key": key, "chunk": i, "value": c, "updated_at": now} for i, c in enumerate(chunks)]
        self.conn.tables["kv"] = _append_rows(df.reset_index(drop=True), rows)
        self.conn.save()
