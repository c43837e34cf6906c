"""
stations.py — Delivery Point Classification

Maps the free-form station name a bot collected to a known pickup station of
the shop. Unknown or missing stations never fail an order: they fall back to
the default pickup point and the substitution is noted for the admins.
"""

import logging
import unicodedata
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger(__name__)

DEFAULT_STATION_ID = 1
DEFAULT_STATION_NAME = "Zürich HB"

# Normalized station name -> shop station id
KNOWN_STATIONS = {
    "zurich hb": 1,
    "zurich": 1,
    "geneva": 2,
    "geneve": 2,
    "basel": 3,
    "bern": 4,
    "lausanne": 5,
    "nyon": 6,
    "vevey": 7,
    "montreux": 8,
    "sion": 9,
    "fribourg": 10,
}


@dataclass(frozen=True)
class StationMatch:
    delivery_type: str
    station_id: int
    substituted: bool
    note: Optional[str] = None


def normalize_station(name: str) -> str:
    """Lowercases, strips accents and collapses whitespace ("Zürich  HB" -> "zurich hb")."""
    decomposed = unicodedata.normalize("NFKD", name or "")
    plain = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(plain.casefold().split())


def classify_station(station: Optional[str]) -> StationMatch:
    """
    Classifies a requested delivery station.

    Exact (normalized) names win; otherwise the longest known name contained in
    the request as a whole word is used ("Geneva Central Station" -> Geneva).

    Returns:
        StationMatch: RAILWAY_STATION for known stations, otherwise the default
        pickup point with ``substituted=True`` and an admin note.
    """
    normalized = normalize_station(station or "")
    station_id = KNOWN_STATIONS.get(normalized)

    if station_id is None and normalized:
        words = f" {normalized} "
        candidates = [key for key in KNOWN_STATIONS if f" {key} " in words]
        if candidates:
            station_id = KNOWN_STATIONS[max(candidates, key=len)]

    if station_id is not None:
        return StationMatch(delivery_type="RAILWAY_STATION", station_id=station_id, substituted=False)

    requested = (station or "").strip() or "none"
    log.warning(f"Unbekannte Station '{requested}', verwende Standard-Abholpunkt {DEFAULT_STATION_NAME}.")
    return StationMatch(
        delivery_type="PICKUP_POINT",
        station_id=DEFAULT_STATION_ID,
        substituted=True,
        note=f"Requested station '{requested}' unknown, substituted default pickup point {DEFAULT_STATION_NAME}.",
    )
