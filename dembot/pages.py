"""HTML rendering for the status dashboard."""

from __future__ import annotations

import socket
from datetime import datetime
from html import escape
from typing import Any, Dict, Iterable, Mapping, Optional
from urllib.parse import urlencode

from .aggregation import (
    LEADERBOARD_PAGE_SIZE,
    NUMERIC_SORT_FIELDS,
    STRING_SORT_FIELDS,
    DirectoryFilters,
    DirectoryPage,
    LeaderboardPage,
    PartyActivity,
    StateStats,
)
from .status import StatusSnapshot

DASHBOARD_TITLE = "DemBot Dashboard"
NAV_LINKS = (
    ("/", "Overview"),
    ("/stats", "Activity"),
    ("/leaderboard", "Leaderboard"),
    ("/users", "Users"),
    ("/states", "States"),
)

STYLE = """
:root { color-scheme: light dark; font-family: "Segoe UI", system-ui, sans-serif;
  background-color: #10131a; color: #e2e8f0; }
body { margin: 0; padding: 2rem; max-width: 1100px; }
nav a { margin-right: 1rem; color: #93c5fd; }
section { margin-bottom: 2rem; padding: 1.5rem; border-radius: 12px; background: #1f2937; }
.summary { list-style: none; padding: 0; margin: 0; display: grid;
  grid-template-columns: repeat(auto-fit, minmax(220px, 1fr)); gap: 0.5rem 1rem; }
.summary li { display: flex; justify-content: space-between; gap: 1rem; padding: 0.35rem 0.5rem;
  border-radius: 6px; background: rgba(15, 23, 42, 0.6); }
.summary span { color: #94a3b8; }
.warning { margin-top: 1rem; padding: 0.75rem 1rem; border-left: 4px solid #f59e0b; }
.table-scroll { overflow-x: auto; }
table { width: 100%; border-collapse: collapse; min-width: 600px; }
th, td { text-align: left; padding: 0.6rem 0.75rem; border-bottom: 1px solid rgba(148, 163, 184, 0.2); }
tr.has-error { background: rgba(220, 38, 38, 0.12); }
article { padding: 0.75rem 1rem; border-radius: 8px; background: rgba(239, 68, 68, 0.12); margin-bottom: 0.75rem; }
pre { margin: 0; white-space: pre-wrap; word-break: break-word; }
"""


def format_duration(seconds: Optional[float]) -> str:
    if not seconds or seconds < 0:
        return "-"
    total = int(seconds)
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours or days:
        parts.append(f"{hours}h")
    if minutes or hours or days:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_money(value: float) -> str:
    return f"${value:,.0f}"


def _query(base: str, params: Mapping[str, Any]) -> str:
    clean = {k: v for k, v in params.items() if v not in (None, "")}
    return f"{base}?{urlencode(clean)}" if clean else base


def layout(title: str, body: str, refresh_seconds: int = 0) -> str:
    refresh = (
        f'<meta http-equiv="refresh" content="{int(refresh_seconds)}">'
        if refresh_seconds > 0
        else ""
    )
    nav = " ".join(f'<a href="{href}">{escape(label)}</a>' for href, label in NAV_LINKS)
    return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8">
    {refresh}
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>{escape(title)}</title>
    <style>{STYLE}</style>
  </head>
  <body>
    <h1>{escape(title)}</h1>
    <nav>{nav}</nav>
    {body}
  </body>
</html>"""


def _table(headers: Iterable[str], rows: Iterable[str]) -> str:
    head = "".join(f"<th>{escape(h)}</th>" for h in headers)
    return (
        '<div class="table-scroll"><table>'
        f"<thead><tr>{head}</tr></thead><tbody>{''.join(rows)}</tbody>"
        "</table></div>"
    )


def _cells(*values: Any) -> str:
    return "".join(f"<td>{escape(str(v))}</td>" for v in values)


def render_bot_status(snapshot: StatusSnapshot) -> str:
    bot = snapshot.bot
    badge = "Ready" if bot.ready else "Offline"
    login = ""
    if bot.login_error:
        login = f'<div class="warning">Login error: {escape(bot.login_error.message)}</div>'
    return f"""
    <section>
      <h2>Bot Status</h2>
      <ul class="summary">
        <li><span>Status</span><strong>{badge}</strong></li>
        <li><span>Ready Since</span><strong>{format_timestamp(bot.ready_at)}</strong></li>
        <li><span>Last Heartbeat</span><strong>{format_timestamp(bot.last_heartbeat)}</strong></li>
        <li><span>Uptime</span><strong>{format_duration(snapshot.uptime_seconds)}</strong></li>
        <li><span>Host</span><strong>{escape(socket.gethostname())}</strong></li>
      </ul>
      {login}
    </section>"""


def render_command_table(snapshot: StatusSnapshot) -> str:
    if not snapshot.commands:
        return "<section><h2>Commands</h2><p>No commands have been invoked yet.</p></section>"
    rows = []
    for cmd in snapshot.commands:
        css = ' class="has-error"' if cmd.last_error_at else ""
        rows.append(
            f"<tr{css}>"
            + _cells(
                cmd.name,
                cmd.run_count,
                cmd.success_count,
                cmd.error_count,
                cmd.reset_count,
                format_timestamp(cmd.last_run_at),
                format_timestamp(cmd.last_success_at),
                format_timestamp(cmd.last_error_at),
                cmd.last_error_message or "",
            )
            + "</tr>"
        )
    headers = (
        "Name", "Runs", "Success", "Errors", "Resets",
        "Last Run", "Last Success", "Last Error", "Last Error Message",
    )
    return f"<section><h2>Commands</h2>{_table(headers, rows)}</section>"


def render_error_log(snapshot: StatusSnapshot) -> str:
    if not snapshot.errors:
        return ""
    items = []
    for err in snapshot.errors:
        stack = ""
        if err.stack:
            stack = f"<details><summary>Stack Trace</summary><pre>{escape(err.stack)}</pre></details>"
        kind = f" [{escape(err.meta.kind)}]" if err.meta else ""
        items.append(
            f"<article><header><strong>{escape(err.command)}</strong>{kind} "
            f"<span>{format_timestamp(err.timestamp)}</span></header>"
            f"<pre>{escape(err.message)}</pre>{stack}</article>"
        )
    return f"<section><h2>Recent Errors</h2>{''.join(items)}</section>"


def render_runtime(snapshot: StatusSnapshot, limit: int = 10) -> str:
    if not snapshot.samples:
        return ""
    rows = [
        "<tr>" + _cells(format_timestamp(s.timestamp), s.rss_mb, s.load1, s.cmd_count_total) + "</tr>"
        for s in reversed(snapshot.samples[-limit:])
    ]
    return (
        "<section><h2>Runtime</h2>"
        f"{_table(('Sampled', 'RSS MB', 'Load (1m)', 'Commands'), rows)}</section>"
    )


def render_top_users(snapshot: StatusSnapshot, limit: int = 10) -> str:
    if not snapshot.users:
        return ""
    rows = [
        "<tr>" + _cells(u.username, u.command_count, format_timestamp(u.last_activity)) + "</tr>"
        for u in snapshot.users[:limit]
    ]
    return f"<section><h2>Top Users</h2>{_table(('User', 'Commands', 'Last Activity'), rows)}</section>"


def render_overview(snapshot: StatusSnapshot, refresh_seconds: int = 0) -> str:
    body = "".join(
        (
            render_bot_status(snapshot),
            render_command_table(snapshot),
            render_error_log(snapshot),
            render_runtime(snapshot),
            render_top_users(snapshot),
        )
    )
    return layout(DASHBOARD_TITLE, body, refresh_seconds)


def render_stats(parties: Dict[str, PartyActivity], updated_at: Optional[str]) -> str:
    labels = (("dem", "Democratic"), ("gop", "Republican"), ("all", "All"))
    rows = []
    for key, label in labels:
        stats = parties.get(key, PartyActivity())
        rows.append(
            "<tr>"
            + _cells(label, stats.count, stats.avg_online_days, stats.recent_count, stats.active_count)
            + "</tr>"
        )
    table = _table(("Party", "Members", "Avg Last Online (days)", "< 3 days", "< 5 days"), rows)
    footer = f"<p>profiles.json updated {escape(updated_at)}</p>" if updated_at else ""
    return layout(
        "Party Activity",
        f"<section><h2>Party Activity Snapshot</h2>{table}{footer}</section>",
    )


def render_leaderboard(
    result: LeaderboardPage,
    party: str,
    page_size: int = LEADERBOARD_PAGE_SIZE,
    max_days: Optional[float] = None,
) -> str:
    if not result.entries:
        body = "<section><p>No profiles found.</p></section>"
    else:
        rows = [
            "<tr>"
            + _cells(
                e.rank,
                e.profile.name or "Unknown",
                e.profile.party or "",
                e.profile.state or "Unknown",
                e.value if result.metric == "es" else format_money(e.value),
                e.profile.last_seen_label(),
            )
            + "</tr>"
            for e in result.entries
        ]
        body = f"<section>{_table(('#', 'Name', 'Party', 'State', result.metric.upper(), 'Last Seen'), rows)}</section>"
    body += _pager(
        "/leaderboard",
        result.page,
        result.total_pages,
        {
            "metric": result.metric,
            "party": party,
            "pageSize": page_size,
            "activity": _days_param(max_days),
        },
    )
    return layout(f"Leaderboard - {result.metric.upper()}", body)


def _days_param(max_days: Optional[float]) -> Optional[str]:
    return f"{max_days:g}" if max_days is not None else None


def _select(name: str, options: Iterable[tuple[str, str]], current: str) -> str:
    items = "".join(
        f'<option value="{escape(value)}"{" selected" if value == current else ""}>'
        f"{escape(label)}</option>"
        for value, label in options
    )
    return f'<select name="{escape(name)}">{items}</select>'


PARTY_OPTIONS = (("all", "All parties"), ("dem", "Democrats"), ("gop", "Republicans"))
DIRECTION_OPTIONS = (("asc", "Ascending"), ("desc", "Descending"))


def render_directory_form(filters: DirectoryFilters, sort: str, direction: str) -> str:
    sort_options = [(key, key) for key in (*STRING_SORT_FIELDS, *NUMERIC_SORT_FIELDS)]
    search = escape(filters.search or "")
    activity = escape(_days_param(filters.max_days) or "")
    fields = [
        f'<input type="search" name="search" placeholder="Name, Discord or state" value="{search}">',
        _select("party", PARTY_OPTIONS, filters.party),
        f'<input type="number" name="activity" min="1" placeholder="Active within days" value="{activity}">',
        _select("sort", sort_options, sort),
        _select("dir", DIRECTION_OPTIONS, direction),
        '<button type="submit">Filter</button>',
    ]
    return f'<form method="get" action="/users">{" ".join(fields)}</form>'


def render_directory(result: DirectoryPage, filters: DirectoryFilters) -> str:
    rows = [
        "<tr>"
        + _cells(
            p.name or "Unknown",
            p.discord or "",
            p.party or "",
            p.state or "",
            p.position or "",
            p.cash or "$0",
            p.es or "0",
            p.last_seen_label(),
        )
        + "</tr>"
        for p in result.rows
    ]
    headers = ("Name", "Discord", "Party", "State", "Position", "Cash", "ES", "Last Seen")
    summary = f"<p>{result.total} matching profiles</p>"
    form = render_directory_form(filters, result.sort, result.direction)
    body = f"<section>{form}{summary}{_table(headers, rows)}</section>"
    body += _pager(
        "/users",
        result.page,
        result.total_pages,
        {
            "party": filters.party,
            "activity": _days_param(filters.max_days),
            "search": filters.search,
            "sort": result.sort,
            "dir": result.direction,
        },
    )
    return layout("User Directory", body)


def render_states(stats: Dict[str, StateStats], activity: Optional[float]) -> str:
    ordered = sorted(
        stats.values(), key=lambda s: s.dem_active + s.gop_active, reverse=True
    )
    rows = [
        "<tr>"
        + _cells(
            s.state,
            s.dem_active,
            s.gop_active,
            s.player_count,
            f"{s.es_total:,.1f}",
            format_money(s.avg_cash),
        )
        + "</tr>"
        for s in ordered
    ]
    window = f"active under {activity:g} days" if activity is not None else "all players"
    table = _table(("State", "Dem Active", "GOP Active", "Players", "ES Total", "Avg Cash"), rows)
    return layout("State Rollup", f"<section><h2>{escape(window)}</h2>{table}</section>")


def _pager(base: str, page: int, total_pages: int, params: Dict[str, Any]) -> str:
    links = []
    if page > 1:
        links.append(f'<a href="{escape(_query(base, {**params, "page": page - 1}))}">Previous</a>')
    links.append(f"<span>Page {page} of {total_pages}</span>")
    if page < total_pages:
        links.append(f'<a href="{escape(_query(base, {**params, "page": page + 1}))}">Next</a>')
    return f"<nav>{' '.join(links)}</nav>"
