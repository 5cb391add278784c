from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

LOGGER = logging.getLogger(__name__)

_NON_NUMERIC = re.compile(r"[^0-9.]")

PARTY_DEM = "dem"
PARTY_GOP = "gop"
PARTY_OTHER = "other"


def parse_number(value: Any) -> float:
    """Parse a display string such as ``$1,234.50`` or ``12.3 ES``; junk is 0."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    cleaned = _NON_NUMERIC.sub("", str(value))
    if not cleaned:
        return 0.0
    try:
        number = float(cleaned)
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def normalize_party(party: Any) -> str:
    label = str(party or "").lower()
    if "democrat" in label:
        return PARTY_DEM
    if "republican" in label:
        return PARTY_GOP
    return PARTY_OTHER


def _optional_days(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class ExternalProfile:
    id: Optional[int] = None
    name: Optional[str] = None
    discord: Optional[str] = None
    party: Optional[str] = None
    state: Optional[str] = None
    position: Optional[str] = None
    cash: Optional[str] = None
    es: Optional[str] = None
    last_online_days: Optional[float] = None
    last_online_text: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback_id: Any = None) -> "ExternalProfile":
        raw_id = data.get("id", fallback_id)
        try:
            profile_id: Optional[int] = int(raw_id) if raw_id is not None else None
        except (TypeError, ValueError):
            profile_id = None
        return cls(
            id=profile_id,
            name=_optional_text(data.get("name")),
            discord=_optional_text(data.get("discord")),
            party=_optional_text(data.get("party")),
            state=_optional_text(data.get("state")),
            position=_optional_text(data.get("position")),
            cash=_optional_text(data.get("cash")),
            es=_optional_text(data.get("es")),
            last_online_days=_optional_days(data.get("lastOnlineDays")),
            last_online_text=_optional_text(data.get("lastOnlineText")),
        )

    @property
    def party_key(self) -> str:
        return normalize_party(self.party)

    @property
    def cash_value(self) -> float:
        return parse_number(self.cash)

    @property
    def es_value(self) -> float:
        return parse_number(self.es)

    @property
    def power_value(self) -> float:
        return self.cash_value + self.es_value

    def last_seen_label(self) -> str:
        if self.last_online_text:
            return self.last_online_text
        if self.last_online_days is not None:
            if self.last_online_days == 0:
                return "Today"
            return f"{self.last_online_days:g} day(s) ago"
        return "Unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "discord": self.discord,
            "party": self.party,
            "state": self.state,
            "position": self.position,
            "cash": self.cash,
            "es": self.es,
            "lastOnlineDays": self.last_online_days,
            "lastOnlineText": self.last_online_text,
        }


@dataclass
class ProfileDataset:
    profiles: List[ExternalProfile] = field(default_factory=list)
    updated_at: Optional[str] = None

    def __len__(self) -> int:
        return len(self.profiles)


def profiles_from_payload(payload: Any) -> List[ExternalProfile]:
    if isinstance(payload, dict):
        raw = payload.get("profiles", {})
    else:
        raw = payload
    items: Iterable[tuple[Any, Any]]
    if isinstance(raw, dict):
        items = raw.items()
    elif isinstance(raw, list):
        items = ((None, entry) for entry in raw)
    else:
        return []
    profiles = []
    for key, entry in items:
        if isinstance(entry, dict):
            profiles.append(ExternalProfile.from_dict(entry, fallback_id=key))
    return profiles


def load_profiles(path: str | Path) -> ProfileDataset:
    """Read the scraped profile dataset; a missing or corrupt file is empty."""
    json_path = Path(path)
    if not json_path.exists():
        return ProfileDataset()
    try:
        payload = json.loads(json_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        LOGGER.warning("Failed reading profile dataset %s: %s", json_path, exc)
        return ProfileDataset()
    updated_at = payload.get("updatedAt") if isinstance(payload, dict) else None
    return ProfileDataset(
        profiles=profiles_from_payload(payload),
        updated_at=str(updated_at) if updated_at else None,
    )
