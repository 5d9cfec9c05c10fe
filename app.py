from __future__ import annotations
import os
from pathlib import Path
import dotenv
dotenv.load_dotenv()

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from listing_match.config import load_config
from listing_match.errors import InputError
from listing_match.pipeline import ListingMatchPipeline

ROOT = Path(__file__).resolve().parent
DATA_DIR = ROOT / "data"

cfg = load_config(DATA_DIR / "config.default.json")
pipeline = ListingMatchPipeline(cfg, str(DATA_DIR))

app = FastAPI(title="Listing Address Matching Service")


class MatchRequest(BaseModel):
    address_text: str
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    top_n: int = Field(default=5, ge=1, le=50)


class CompareRequest(BaseModel):
    addr1: str
    lat1: float = Field(ge=-90, le=90)
    lng1: float = Field(ge=-180, le=180)
    addr2: str
    lat2: float = Field(ge=-90, le=90)
    lng2: float = Field(ge=-180, le=180)


@app.post("/match")
def match_listing(payload: MatchRequest):
    if not payload.address_text.strip():
        raise HTTPException(status_code=400, detail="address_text must not be empty")
    try:
        return pipeline.match_text(payload.address_text, payload.lat, payload.lng, top_n=payload.top_n)
    except InputError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@app.post("/compare")
def compare_addresses(payload: CompareRequest):
    addr1 = payload.addr1.strip()
    addr2 = payload.addr2.strip()
    if not addr1 or not addr2:
        raise HTTPException(status_code=400, detail="addr1 and addr2 must not be empty")
    return pipeline.compare(addr1, payload.lat1, payload.lng1, addr2, payload.lat2, payload.lng2)


@app.get("/model")
def model_info():
    if pipeline.conn is None:
        pipeline.load()
    return pipeline.model_info()


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("APP_HOST", "0.0.0.0")
    port = int(os.getenv("APP_PORT", "8008"))
    uvicorn.run(app, host=host, port=port)
