from __future__ import annotations

import re
from typing import Any, Dict, Optional

US_STATE_ABBR: Dict[str, str] = {
    "al": "Alabama", "ak": "Alaska", "az": "Arizona", "ar": "Arkansas",
    "ca": "California", "co": "Colorado", "ct": "Connecticut", "de": "Delaware",
    "fl": "Florida", "ga": "Georgia", "hi": "Hawaii", "id": "Idaho",
    "il": "Illinois", "in": "Indiana", "ia": "Iowa", "ks": "Kansas",
    "ky": "Kentucky", "la": "Louisiana", "me": "Maine", "md": "Maryland",
    "ma": "Massachusetts", "mi": "Michigan", "mn": "Minnesota", "ms": "Mississippi",
    "mo": "Missouri", "mt": "Montana", "ne": "Nebraska", "nv": "Nevada",
    "nh": "New Hampshire", "nj": "New Jersey", "nm": "New Mexico", "ny": "New York",
    "nc": "North Carolina", "nd": "North Dakota", "oh": "Ohio", "ok": "Oklahoma",
    "or": "Oregon", "pa": "Pennsylvania", "ri": "Rhode Island", "sc": "South Carolina",
    "sd": "South Dakota", "tn": "Tennessee", "tx": "Texas", "ut": "Utah",
    "vt": "Vermont", "va": "Virginia", "wa": "Washington", "wv": "West Virginia",
    "wi": "Wisconsin", "wy": "Wyoming", "dc": "District of Columbia", "pr": "Puerto Rico",
}

STATE_NAME_ALIASES: Dict[str, str] = {
    "cal": "California",
    "cali": "California",
    "wash": "Washington",
    "wash state": "Washington",
    "mass": "Massachusetts",
    "jersey": "New Jersey",
    "carolina": "North Carolina",
    "d.c.": "District of Columbia",
    "d.c": "District of Columbia",
    "d c": "District of Columbia",
}

_FULL_NAMES = {name.lower(): name for name in US_STATE_ABBR.values()}

REGIONS: Dict[str, frozenset] = {
    "rust_belt": frozenset(
        {"minnesota", "wisconsin", "michigan", "illinois", "indiana", "ohio", "iowa", "missouri"}
    ),
    "northeast": frozenset(
        {
            "connecticut", "maine", "massachusetts", "new hampshire", "new jersey",
            "pennsylvania", "rhode island", "vermont", "new york", "delaware",
            "maryland", "district of columbia",
        }
    ),
    "south": frozenset(
        {
            "alabama", "arkansas", "florida", "georgia", "kentucky", "louisiana",
            "mississippi", "north carolina", "oklahoma", "south carolina",
            "tennessee", "texas", "virginia", "west virginia",
        }
    ),
    "west": frozenset(
        {
            "alaska", "hawaii", "washington", "oregon", "california", "nevada",
            "idaho", "montana", "wyoming", "utah", "colorado", "arizona", "new mexico",
        }
    ),
}

_PREFIX = re.compile(r"^(state|commonwealth|territory)\s+of\s+", re.IGNORECASE)
_SAINT = re.compile(r"\bst\.?(?=\s|$)", re.IGNORECASE)


def normalize_state_name(value: Any) -> Optional[str]:
    """Map abbreviations, aliases and "State of X" forms to a canonical name."""
    raw = str(value or "").strip()
    if not raw:
        return None
    key = raw.lower()
    if key in US_STATE_ABBR:
        return US_STATE_ABBR[key]
    if key in STATE_NAME_ALIASES:
        return STATE_NAME_ALIASES[key]
    name = re.sub(r"\s+", " ", raw)
    name = _PREFIX.sub("", name)
    name = _SAINT.sub("saint", name).lower()
    return _FULL_NAMES.get(name)


def state_to_region(value: Any) -> Optional[str]:
    name = normalize_state_name(value)
    if not name:
        return None
    lowered = name.lower()
    for region in ("rust_belt", "northeast", "south", "west"):
        if lowered in REGIONS[region]:
            return region
    return None
