"""Read-only projections over the scraped profile dataset.

Every function here is pure: the same profile list always yields the same
result, and an empty or missing list yields zeroed/empty results.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .profiles import PARTY_DEM, PARTY_GOP, ExternalProfile
from .states import normalize_state_name

RECENT_DAYS = 3
ACTIVE_DAYS = 5
INACTIVE_MIN_DAYS = 2
INACTIVE_MAX_DAYS = 5
INACTIVITY_LIMIT = 50
INACTIVITY_DETAIL_LINES = 3
STATE_TOP_PLAYERS = 10
LEADERBOARD_PAGE_SIZE = 15
DIRECTORY_PAGE_SIZE = 25

LEADERBOARD_METRICS: Dict[str, Callable[[ExternalProfile], float]] = {
    "cash": lambda p: p.cash_value,
    "es": lambda p: p.es_value,
    "power": lambda p: p.power_value,
}

STRING_SORT_FIELDS: Dict[str, Callable[[ExternalProfile], str]] = {
    "name": lambda p: p.name or "",
    "discord": lambda p: p.discord or "",
    "party": lambda p: p.party or "",
    "state": lambda p: p.state or "",
    "position": lambda p: p.position or "",
}

NUMERIC_SORT_FIELDS: Dict[str, Callable[[ExternalProfile], Optional[float]]] = {
    "cash": lambda p: p.cash_value,
    "es": lambda p: p.es_value,
    "power": lambda p: p.power_value,
    "lastOnlineDays": lambda p: p.last_online_days,
}


def _profiles(profiles: Optional[Iterable[ExternalProfile]]) -> List[ExternalProfile]:
    return list(profiles or [])


def normalize_party_filter(value: Any) -> str:
    label = str(value or "all").strip().lower()
    if label in ("dem", "dems", "democrat", "democrats", "democratic"):
        return PARTY_DEM
    if label in ("gop", "rep", "reps", "republican", "republicans"):
        return PARTY_GOP
    return "all"


def party_matches(profile: ExternalProfile, party: str) -> bool:
    if party == "all":
        return True
    return profile.party_key == party


def paginate(items: Sequence[Any], page: int, page_size: int) -> Tuple[List[Any], int, int]:
    size = max(int(page_size), 1)
    total_pages = max(1, math.ceil(len(items) / size))
    current = min(max(int(page), 1), total_pages)
    start = (current - 1) * size
    return list(items[start : start + size]), current, total_pages


@dataclass(frozen=True)
class PartyActivity:
    count: int = 0
    avg_online_days: float = 0.0
    recent_count: int = 0
    active_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avgOnlineDays": self.avg_online_days,
            "recentCount": self.recent_count,
            "activeCount": self.active_count,
        }


def _party_activity(profiles: List[ExternalProfile]) -> PartyActivity:
    days = [p.last_online_days for p in profiles if p.last_online_days is not None]
    average = round(sum(days) / len(days), 1) if days else 0.0
    return PartyActivity(
        count=len(profiles),
        avg_online_days=average,
        recent_count=sum(1 for d in days if d < RECENT_DAYS),
        active_count=sum(1 for d in days if d < ACTIVE_DAYS),
    )


def party_activity_snapshot(
    profiles: Optional[Iterable[ExternalProfile]],
) -> Dict[str, PartyActivity]:
    rows = _profiles(profiles)
    return {
        PARTY_DEM: _party_activity([p for p in rows if p.party_key == PARTY_DEM]),
        PARTY_GOP: _party_activity([p for p in rows if p.party_key == PARTY_GOP]),
        "all": _party_activity(rows),
    }


@dataclass(frozen=True)
class InactiveProfile:
    id: Optional[int]
    name: str
    days: int
    last_online_text: Optional[str] = None

    def line(self) -> str:
        seen = self.last_online_text or f"{self.days} day(s) ago"
        return f"{self.name} (ID {self.id}, {seen})"


@dataclass
class InactiveMember:
    member: Any
    label: str
    max_days: int
    profiles: List[InactiveProfile] = field(default_factory=list)

    @property
    def details(self) -> List[InactiveProfile]:
        ordered = sorted(self.profiles, key=lambda p: p.days, reverse=True)
        return ordered[:INACTIVITY_DETAIL_LINES]

    @property
    def more(self) -> int:
        return max(len(self.profiles) - INACTIVITY_DETAIL_LINES, 0)


@dataclass
class InactivityReport:
    rows: List[InactiveMember] = field(default_factory=list)
    matched_members: int = 0


def member_label(member: Any) -> str:
    for attr in ("name", "display_name"):
        value = getattr(member, attr, None)
        if value:
            return str(value)
    return str(getattr(member, "id", ""))


def build_handle_index(members: Optional[Iterable[Any]]) -> Dict[str, Any]:
    index: Dict[str, Any] = {}
    for member in members or []:
        for attr in ("name", "global_name", "display_name"):
            handle = str(getattr(member, attr, None) or "").lower()
            if handle and handle not in index:
                index[handle] = member
    return index


def inactivity_report(
    profiles: Optional[Iterable[ExternalProfile]],
    members: Optional[Iterable[Any]],
    limit: int = INACTIVITY_LIMIT,
) -> InactivityReport:
    index = build_handle_index(members)
    aggregated: Dict[Any, InactiveMember] = {}
    for profile in _profiles(profiles):
        handle = (profile.discord or "").lower()
        if not handle:
            continue
        member = index.get(handle)
        if member is None or profile.last_online_days is None:
            continue
        days = math.floor(profile.last_online_days)
        if days < INACTIVE_MIN_DAYS or days > INACTIVE_MAX_DAYS:
            continue
        key = getattr(member, "id", id(member))
        row = aggregated.get(key)
        if row is None:
            row = InactiveMember(member=member, label=member_label(member), max_days=days)
            aggregated[key] = row
        row.max_days = max(row.max_days, days)
        row.profiles.append(
            InactiveProfile(
                id=profile.id,
                name=profile.name or "Unknown",
                days=days,
                last_online_text=profile.last_online_text,
            )
        )
    rows = sorted(aggregated.values(), key=lambda r: (-r.max_days, r.label.casefold()))
    return InactivityReport(rows=rows[: max(limit, 0)], matched_members=len(rows))


@dataclass
class StateStats:
    state: str
    dem_active: int = 0
    gop_active: int = 0
    es_total: float = 0.0
    cash_total: float = 0.0
    player_count: int = 0
    players: List[ExternalProfile] = field(default_factory=list)

    @property
    def avg_cash(self) -> float:
        if not self.player_count:
            return 0.0
        return round(self.cash_total / self.player_count, 2)

    def top_players(self, limit: int = STATE_TOP_PLAYERS) -> List[ExternalProfile]:
        return sorted(self.players, key=lambda p: p.cash_value, reverse=True)[:limit]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "demActive": self.dem_active,
            "gopActive": self.gop_active,
            "esTotal": round(self.es_total, 2),
            "cashTotal": round(self.cash_total, 2),
            "playerCount": self.player_count,
            "avgCash": self.avg_cash,
            "players": [
                {
                    "name": p.name,
                    "party": p.party,
                    "cash": p.cash_value,
                    "es": p.es_value,
                    "lastOnlineDays": p.last_online_days,
                }
                for p in self.top_players()
            ],
        }


def dedupe_by_name(profiles: Iterable[ExternalProfile]) -> List[ExternalProfile]:
    seen = set()
    unique = []
    for profile in profiles:
        key = profile.name
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        unique.append(profile)
    return unique


def _is_active(profile: ExternalProfile, active_days: Optional[float]) -> bool:
    if active_days is None:
        return True
    return profile.last_online_days is not None and profile.last_online_days < active_days


def state_rollup(
    profiles: Optional[Iterable[ExternalProfile]],
    active_days: Optional[float] = None,
    dedupe: bool = False,
) -> Dict[str, StateStats]:
    rows = _profiles(profiles)
    if dedupe:
        rows = dedupe_by_name(rows)
    stats: Dict[str, StateStats] = {}
    for profile in rows:
        state = normalize_state_name(profile.state)
        if not state:
            continue
        entry = stats.get(state)
        if entry is None:
            entry = StateStats(state=state)
            stats[state] = entry
        if _is_active(profile, active_days):
            if profile.party_key == PARTY_DEM:
                entry.dem_active += 1
            elif profile.party_key == PARTY_GOP:
                entry.gop_active += 1
        entry.es_total += profile.es_value
        entry.cash_total += profile.cash_value
        entry.player_count += 1
        entry.players.append(profile)
    return stats


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    profile: ExternalProfile
    value: float


@dataclass
class LeaderboardPage:
    metric: str
    entries: List[LeaderboardEntry] = field(default_factory=list)
    page: int = 1
    total_pages: int = 1
    total: int = 0


def leaderboard(
    profiles: Optional[Iterable[ExternalProfile]],
    metric: str = "cash",
    page: int = 1,
    page_size: int = LEADERBOARD_PAGE_SIZE,
    party: str = "all",
    max_days: Optional[float] = None,
) -> LeaderboardPage:
    metric = metric if metric in LEADERBOARD_METRICS else "cash"
    value_of = LEADERBOARD_METRICS[metric]
    party = normalize_party_filter(party)
    candidates = [
        p
        for p in dedupe_by_name(_profiles(profiles))
        if party_matches(p, party)
        and (max_days is None or p.last_online_days is None or p.last_online_days < max_days)
    ]
    ranked = sorted(((value_of(p), p) for p in candidates), key=lambda t: t[0], reverse=True)
    sliced, current, total_pages = paginate(ranked, page, page_size)
    offset = (current - 1) * max(int(page_size), 1)
    entries = [
        LeaderboardEntry(rank=offset + i + 1, profile=profile, value=value)
        for i, (value, profile) in enumerate(sliced)
    ]
    return LeaderboardPage(
        metric=metric,
        entries=entries,
        page=current,
        total_pages=total_pages,
        total=len(ranked),
    )


@dataclass(frozen=True)
class DirectoryFilters:
    party: str = "all"
    max_days: Optional[float] = None
    search: str = ""


@dataclass
class DirectoryPage:
    rows: List[ExternalProfile] = field(default_factory=list)
    page: int = 1
    total_pages: int = 1
    total: int = 0
    sort: str = "name"
    direction: str = "asc"


def _matches_search(profile: ExternalProfile, needle: str) -> bool:
    if not needle:
        return True
    haystacks = (profile.name, profile.discord, profile.state)
    return any(needle in (value or "").lower() for value in haystacks)


def user_directory(
    profiles: Optional[Iterable[ExternalProfile]],
    filters: Optional[DirectoryFilters] = None,
    sort: str = "name",
    direction: str = "asc",
    page: int = 1,
    page_size: int = DIRECTORY_PAGE_SIZE,
) -> DirectoryPage:
    filters = filters or DirectoryFilters()
    party = normalize_party_filter(filters.party)
    needle = (filters.search or "").strip().lower()
    rows = [
        p
        for p in _profiles(profiles)
        if party_matches(p, party)
        and _is_active(p, filters.max_days)
        and _matches_search(p, needle)
    ]
    descending = str(direction).lower() == "desc"
    if sort in NUMERIC_SORT_FIELDS:
        value_of = NUMERIC_SORT_FIELDS[sort]
        present = [p for p in rows if value_of(p) is not None]
        missing = [p for p in rows if value_of(p) is None]
        present.sort(key=value_of, reverse=descending)
        rows = present + missing
    else:
        sort = sort if sort in STRING_SORT_FIELDS else "name"
        text_of = STRING_SORT_FIELDS[sort]
        rows.sort(key=lambda p: text_of(p).casefold(), reverse=descending)
    sliced, current, total_pages = paginate(rows, page, page_size)
    return DirectoryPage(
        rows=sliced,
        page=current,
        total_pages=total_pages,
        total=len(rows),
        sort=sort,
        direction="desc" if descending else "asc",
    )
