from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Set

from aiohttp import web

from . import pages
from .aggregation import (
    LEADERBOARD_PAGE_SIZE,
    DirectoryFilters,
    leaderboard,
    normalize_party_filter,
    party_activity_snapshot,
    state_rollup,
    user_directory,
)
from .profiles import ProfileDataset, load_profiles
from .status import StatusStore

LOGGER = logging.getLogger(__name__)

DEFAULT_BROADCAST_INTERVAL = 5.0
DEFAULT_STATE_ACTIVITY_DAYS = 3.0

json_dumps = functools.partial(json.dumps, default=str)


def _int_param(request: web.Request, name: str, default: int) -> int:
    try:
        return int(request.query.get(name, default))
    except (TypeError, ValueError):
        return default


def parse_days(value: Optional[str], default: Optional[float] = None) -> Optional[float]:
    """Parse an activity window; ``all`` or junk falls back to ``default``."""
    if value is None or value == "":
        return default
    if value.strip().lower() in ("all", "any"):
        return None
    try:
        days = float(value)
    except ValueError:
        return default
    return days if days > 0 else default


@dataclass(eq=False)
class Subscriber:
    response: web.StreamResponse
    closed: asyncio.Event = field(default_factory=asyncio.Event)


class EventBroadcaster:
    """Pushes status snapshots to every connected server-sent-events client."""

    def __init__(self, store: StatusStore, interval: float = DEFAULT_BROADCAST_INTERVAL):
        self.store = store
        self.interval = interval
        self._subscribers: Set[Subscriber] = set()

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, response: web.StreamResponse) -> Subscriber:
        subscriber = Subscriber(response=response)
        self._subscribers.add(subscriber)
        LOGGER.debug("SSE subscriber added (total=%s)", len(self._subscribers))
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)
        subscriber.closed.set()

    def payload(self) -> bytes:
        data = json_dumps(self.store.get_status().to_dict())
        return f"data: {data}\n\n".encode("utf-8")

    async def send(self, subscriber: Subscriber, payload: Optional[bytes] = None) -> bool:
        try:
            await subscriber.response.write(payload or self.payload())
            return True
        except (ConnectionError, RuntimeError) as exc:
            LOGGER.debug("Dropping SSE subscriber: %s", exc)
            self.unsubscribe(subscriber)
            return False

    async def broadcast(self) -> int:
        if not self._subscribers:
            return 0
        payload = self.payload()
        delivered = 0
        for subscriber in list(self._subscribers):
            if await self.send(subscriber, payload):
                delivered += 1
        return delivered

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.broadcast()
            except Exception as exc:
                LOGGER.warning("SSE broadcast failed: %s", exc)

    def close(self) -> None:
        for subscriber in list(self._subscribers):
            self.unsubscribe(subscriber)


class Dashboard:
    def __init__(
        self,
        store: StatusStore,
        profiles_path: str | Path,
        broadcast_interval: float = DEFAULT_BROADCAST_INTERVAL,
        html_refresh_seconds: int = 0,
        state_rollup_dedupe: bool = False,
    ):
        self.store = store
        self.profiles_path = Path(profiles_path)
        self.html_refresh_seconds = html_refresh_seconds
        self.state_rollup_dedupe = state_rollup_dedupe
        self.broadcaster = EventBroadcaster(store, broadcast_interval)

    async def load_profiles(self) -> ProfileDataset:
        return await asyncio.to_thread(load_profiles, self.profiles_path)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.get("/", self.overview),
                web.get("/status.json", self.status_json),
                web.get("/events", self.events),
                web.get("/heartbeat", self.heartbeat),
                web.get("/health", self.health),
                web.get("/stats", self.stats_page),
                web.get("/stats.json", self.stats_json),
                web.get("/states", self.states_page),
                web.get("/state-stats.json", self.state_stats_json),
                web.get("/leaderboard", self.leaderboard_page),
                web.get("/leaderboard.json", self.leaderboard_json),
                web.get("/users", self.users_page),
                web.get("/users.json", self.users_json),
            ]
        )
        app.cleanup_ctx.append(self._broadcast_ctx)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def _broadcast_ctx(self, app: web.Application):
        task = asyncio.create_task(self.broadcaster.run())
        yield
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _on_shutdown(self, app: web.Application) -> None:
        self.broadcaster.close()

    async def start(self, host: str, port: int) -> web.AppRunner:
        runner = web.AppRunner(self.create_app())
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        LOGGER.info("Dashboard listening on http://%s:%s", host, port)
        return runner

    async def overview(self, request: web.Request) -> web.Response:
        html = pages.render_overview(self.store.get_status(), self.html_refresh_seconds)
        return web.Response(text=html, content_type="text/html")

    async def status_json(self, request: web.Request) -> web.Response:
        return web.json_response(self.store.get_status().to_dict(), dumps=json_dumps)

    async def events(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            headers={"Content-Type": "text/event-stream", "Cache-Control": "no-cache"}
        )
        await response.prepare(request)
        subscriber = self.broadcaster.subscribe(response)
        try:
            if await self.broadcaster.send(subscriber):
                await subscriber.closed.wait()
        finally:
            self.broadcaster.unsubscribe(subscriber)
        return response

    async def heartbeat(self, request: web.Request) -> web.Response:
        self.store.mark_heartbeat()
        return web.Response(status=204)

    async def health(self, request: web.Request) -> web.Response:
        snapshot = self.store.get_status()
        return web.json_response(
            {"ok": snapshot.bot.ready, "uptimeMs": int(snapshot.uptime_seconds * 1000)}
        )

    async def _party_stats(self) -> Dict[str, Any]:
        dataset = await self.load_profiles()
        parties = party_activity_snapshot(dataset.profiles)
        return {"parties": parties, "updated_at": dataset.updated_at}

    async def stats_json(self, request: web.Request) -> web.Response:
        stats = await self._party_stats()
        payload: Dict[str, Any] = {k: v.to_dict() for k, v in stats["parties"].items()}
        payload["updatedAt"] = stats["updated_at"]
        return web.json_response(payload)

    async def stats_page(self, request: web.Request) -> web.Response:
        stats = await self._party_stats()
        html = pages.render_stats(stats["parties"], stats["updated_at"])
        return web.Response(text=html, content_type="text/html")

    async def _state_stats(self, request: web.Request):
        activity = parse_days(request.query.get("activity"), DEFAULT_STATE_ACTIVITY_DAYS)
        dedupe = self.state_rollup_dedupe
        if "dedupe" in request.query:
            dedupe = request.query["dedupe"].lower() in ("1", "true", "yes")
        dataset = await self.load_profiles()
        return state_rollup(dataset.profiles, activity, dedupe=dedupe), activity

    async def state_stats_json(self, request: web.Request) -> web.Response:
        stats, _activity = await self._state_stats(request)
        return web.json_response({name: s.to_dict() for name, s in stats.items()})

    async def states_page(self, request: web.Request) -> web.Response:
        stats, activity = await self._state_stats(request)
        return web.Response(text=pages.render_states(stats, activity), content_type="text/html")

    async def _leaderboard(self, request: web.Request):
        party = normalize_party_filter(request.query.get("party"))
        page_size = max(_int_param(request, "pageSize", LEADERBOARD_PAGE_SIZE), 1)
        max_days = parse_days(request.query.get("activity"))
        dataset = await self.load_profiles()
        result = leaderboard(
            dataset.profiles,
            metric=request.query.get("metric", "cash"),
            page=_int_param(request, "page", 1),
            page_size=page_size,
            party=party,
            max_days=max_days,
        )
        return result, party, page_size, max_days

    async def leaderboard_json(self, request: web.Request) -> web.Response:
        result, party, page_size, _max_days = await self._leaderboard(request)
        return web.json_response(
            {
                "metric": result.metric,
                "party": party,
                "page": result.page,
                "pageSize": page_size,
                "totalPages": result.total_pages,
                "total": result.total,
                "entries": [
                    {"rank": e.rank, "value": e.value, "profile": e.profile.to_dict()}
                    for e in result.entries
                ],
            }
        )

    async def leaderboard_page(self, request: web.Request) -> web.Response:
        result, party, page_size, max_days = await self._leaderboard(request)
        html = pages.render_leaderboard(result, party, page_size, max_days)
        return web.Response(text=html, content_type="text/html")

    async def _directory(self, request: web.Request):
        filters = DirectoryFilters(
            party=normalize_party_filter(request.query.get("party")),
            max_days=parse_days(request.query.get("activity")),
            search=request.query.get("search", ""),
        )
        dataset = await self.load_profiles()
        result = user_directory(
            dataset.profiles,
            filters,
            sort=request.query.get("sort", "name"),
            direction=request.query.get("dir", "asc"),
            page=_int_param(request, "page", 1),
        )
        return result, filters

    async def users_json(self, request: web.Request) -> web.Response:
        result, _filters = await self._directory(request)
        return web.json_response(
            {
                "page": result.page,
                "totalPages": result.total_pages,
                "total": result.total,
                "sort": result.sort,
                "dir": result.direction,
                "rows": [p.to_dict() for p in result.rows],
            }
        )

    async def users_page(self, request: web.Request) -> web.Response:
        result, filters = await self._directory(request)
        return web.Response(text=pages.render_directory(result, filters), content_type="text/html")
