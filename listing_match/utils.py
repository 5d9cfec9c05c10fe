from __future__ import annotations
import json
import logging
import math
import os
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Tuple


def now_ms() -> int:
    return int(time.time() * 1000)


def offset_latlon(lat: float, lon: float, bearing_deg: float, dist_m: float) -> Tuple[float, float]:
    # short-distance approximation: 1 deg lat ~ 111 km, 1 deg lon ~ 111 km * cos(lat)
    b = math.radians(bearing_deg)
    dlat = dist_m * math.cos(b) / 111000.0
    dlon = dist_m * math.sin(b) / (111000.0 * max(0.2, math.cos(math.radians(lat))))
    return (lat + dlat, lon + dlon)


class EnhancedJSONEncoder(json.JSONEncoder):
    def default(self, obj: Any) -> Any:
        if is_dataclass(obj):
            return asdict(obj)
        if isinstance(obj, Enum):
            return obj.name.lower() if isinstance(obj.value, int) else obj.value
        if isinstance(obj, (tuple, set)):
            return list(obj)
        return super().default(obj)


def dumps(obj: Any, **kw: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, cls=EnhancedJSONEncoder, **kw)


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
