from __future__ import annotations
from typing import Dict, Optional, Tuple

from .geo import distance_meters
from .models import AddressRecord, Coordinate, FeatureVector, Listing
from .text_similarity import (
    AddressComponents,
    combined_text_similarity,
    component_similarity,
    extract_components,
    fuzzy_token_similarity,
    length_ratio,
    normalize_address,
    token_overlap_similarity,
)

_PreparedText = Tuple[str, AddressComponents]


class FeatureExtractor:
    """Builds the feature vector for a (listing, candidate address) pair.

    Output depends only on the two inputs; the normalisation cache never
    changes results.
    """

    def __init__(self, aliases: Optional[Dict[str, str]] = None, cache_size: int = 10000):
        self.aliases = aliases
        self.cache_size = cache_size
        self._prepared: Dict[str, _PreparedText] = {}

    def prepare(self, text: str) -> _PreparedText:
        hit = self._prepared.get(text)
        if hit is not None:
            return hit
        norm = normalize_address(text, self.aliases)
        prepared = (norm, extract_components(norm))
        if len(self._prepared) >= self.cache_size:
            self._prepared.clear()
        self._prepared[text] = prepared
        return prepared

    def extract(self, listing: Listing, candidate: AddressRecord) -> FeatureVector:
        return self.extract_texts(listing.address_text, listing.coordinates,
                                  candidate.text, candidate.coordinates)

    def extract_texts(self, text_a: str, coords_a: Coordinate,
                      text_b: str, coords_b: Coordinate) -> FeatureVector:
        norm_a, comp_a = self.prepare(text_a)
        norm_b, comp_b = self.prepare(text_b)
        return FeatureVector(
            textual_similarity=_unit(combined_text_similarity(norm_a, norm_b)),
            semantic_similarity=_unit(component_similarity(comp_a, comp_b)),
            structural_similarity=_unit(token_overlap_similarity(norm_a, norm_b)),
            fuzzy_score=_unit(fuzzy_token_similarity(norm_a, norm_b)),
            length_ratio=_unit(length_ratio(norm_a, norm_b)),
            distance_meters=distance_meters(coords_a, coords_b),
        )


def _unit(v: float) -> float:
    return min(1.0, max(0.0, float(v)))
