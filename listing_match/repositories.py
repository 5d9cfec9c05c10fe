from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Protocol

from .candidates import CandidateGenerator
from .models import AddressRecord, Coordinate, Listing


class AddressRepository(Protocol):
    def get_candidates_near(self, coordinates: Coordinate, radius_meters: float) -> List[AddressRecord]: ...

    def get_by_id(self, address_id: str) -> Optional[AddressRecord]: ...

    def all(self) -> List[AddressRecord]: ...


class ListingRepository(Protocol):
    def get(self, listing_id: str) -> Optional[Listing]: ...

    def save(self, listing: Listing) -> None: ...

    def all(self) -> List[Listing]: ...


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes) -> None: ...


class InMemoryAddressRepository:
    def __init__(self, records: Iterable[AddressRecord] = (), grid_precision: int = 2):
        self.index = CandidateGenerator(grid_precision)
        self.index.add_all(records)

    def add(self, rec: AddressRecord) -> None:
        self.index.add(rec)

    def get_candidates_near(self, coordinates: Coordinate, radius_meters: float) -> List[AddressRecord]:
        return self.index.candidates_near(coordinates, radius_meters)

    def get_by_id(self, address_id: str) -> Optional[AddressRecord]:
        return self.index.get(address_id)

    def all(self) -> List[AddressRecord]:
        return self.index.all()


class InMemoryListingRepository:
    def __init__(self, listings: Iterable[Listing] = ()):
        self._rows: Dict[str, Listing] = {}
        for l in listings:
            self.save(l)

    def get(self, listing_id: str) -> Optional[Listing]:
        return self._rows.get(listing_id)

    def save(self, listing: Listing) -> None:
        self._rows[listing.id] = listing

    def all(self) -> List[Listing]:
        return list(self._rows.values())


class InMemoryKeyValueStore:
    def __init__(self):
        self._data: Dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)
