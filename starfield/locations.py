"""
Location filter over the rendered members.

A member is visible when every non-empty field of the filter equals its
country, region or city (trimmed, case-insensitive). Members with no value
for a filtered field are hidden. Options are the distinct values currently
loaded, so they grow as ingestion proceeds.
"""
from typing import Optional

import numpy as np

from starfield.entity_store import EntityStore
from starfield.schemas import LocationFilter, LocationOptions


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def is_active(criteria: LocationFilter) -> bool:
    return bool(_norm(criteria.country) or _norm(criteria.region) or _norm(criteria.city))


def visible_slots(store: EntityStore, criteria: LocationFilter) -> np.ndarray:
    if not is_active(criteria):
        return np.arange(len(store), dtype=np.int64)
    wanted = (_norm(criteria.country), _norm(criteria.region), _norm(criteria.city))
    slots = [
        slot
        for slot, *values in store.locations()
        if all(not w or _norm(v) == w for w, v in zip(wanted, values))
    ]
    return np.asarray(slots, dtype=np.int64)


def filter_options(store: EntityStore, active: Optional[LocationFilter] = None) -> LocationOptions:
    countries: set[str] = set()
    regions: set[str] = set()
    cities: set[str] = set()
    for _, country, region, city in store.locations():
        if country:
            countries.add(country)
        if region:
            regions.add(region)
        if city:
            cities.add(city)
    return LocationOptions(
        countries=sorted(countries),
        regions=sorted(regions),
        cities=sorted(cities),
        active=active or LocationFilter(),
    )
