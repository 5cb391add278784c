import asyncio
import json

from aiohttp.test_utils import TestClient, TestServer

from dembot.dashboard import Dashboard, EventBroadcaster, parse_days
from dembot.pages import format_duration
from dembot.status import StatusStore
from tests.fakes import FakeClock, FakeProcess

PROFILES = {
    "profiles": {
        "1": {"id": 1, "name": "Ann", "party": "Democratic Party", "state": "OH",
              "cash": "$1,000", "es": "5", "lastOnlineDays": 1},
        "2": {"id": 2, "name": "Ben", "party": "Republican Party", "state": "Texas",
              "cash": "$3,000", "es": "1", "lastOnlineDays": 2},
        "3": {"id": 3, "name": "Cal", "party": "Democratic Party", "state": "Ohio",
              "cash": "$500", "es": "9", "lastOnlineDays": 8},
    },
    "updatedAt": "2024-01-01T00:00:00Z",
}


def make_dashboard(tmp_path, write_profiles=True):
    path = tmp_path / "profiles.json"
    if write_profiles:
        path.write_text(json.dumps(PROFILES), encoding="utf-8")
    store = StatusStore(
        clock=FakeClock(), process=FakeProcess(), load_average=lambda: (0.1, 0.1, 0.1)
    )
    return Dashboard(store, path, broadcast_interval=60), store


def run_client(dashboard, scenario):
    async def runner():
        async with TestClient(TestServer(dashboard.create_app())) as client:
            return await scenario(client)

    return asyncio.run(runner())


def test_status_json_and_overview(tmp_path):
    dashboard, store = make_dashboard(tmp_path)
    store.mark_ready()
    store.record_command_error("update", RuntimeError("<script>boom</script>"))

    async def scenario(client):
        resp = await client.get("/status.json")
        assert resp.status == 200
        payload = await resp.json()
        page = await client.get("/")
        return payload, await page.text()

    payload, html = run_client(dashboard, scenario)
    assert payload["bot"]["ready"] is True
    assert payload["commands"][0]["name"] == "update"
    assert payload["errors"][0]["message"] == "<script>boom</script>"
    assert "&lt;script&gt;boom&lt;/script&gt;" in html
    assert "<script>boom" not in html


def test_heartbeat_returns_no_content(tmp_path):
    dashboard, store = make_dashboard(tmp_path)

    async def scenario(client):
        resp = await client.get("/heartbeat")
        return resp.status, await resp.read()

    status, body = run_client(dashboard, scenario)
    assert status == 204
    assert body == b""
    assert store.get_status().bot.last_heartbeat is not None


def test_health_reports_ready(tmp_path):
    dashboard, store = make_dashboard(tmp_path)

    async def scenario(client):
        before = await (await client.get("/health")).json()
        store.mark_ready()
        after = await (await client.get("/health")).json()
        return before, after

    before, after = run_client(dashboard, scenario)
    assert before["ok"] is False
    assert after["ok"] is True


def test_events_sends_immediate_snapshot(tmp_path):
    dashboard, store = make_dashboard(tmp_path)
    store.record_command_success("status")

    async def scenario(client):
        resp = await client.get("/events")
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        line = await asyncio.wait_for(resp.content.readline(), timeout=5)
        resp.close()
        return line

    line = run_client(dashboard, scenario)
    assert line.startswith(b"data: ")
    payload = json.loads(line[len(b"data: "):])
    assert payload["commands"][0]["name"] == "status"


def test_stats_json(tmp_path):
    dashboard, _ = make_dashboard(tmp_path)

    async def scenario(client):
        return await (await client.get("/stats.json")).json()

    payload = run_client(dashboard, scenario)
    assert payload["dem"]["count"] == 2
    assert payload["gop"]["activeCount"] == 1
    assert payload["updatedAt"] == "2024-01-01T00:00:00Z"


def test_state_stats_defaults_to_three_day_window(tmp_path):
    dashboard, _ = make_dashboard(tmp_path)

    async def scenario(client):
        default = await (await client.get("/state-stats.json")).json()
        everyone = await (await client.get("/state-stats.json?activity=all")).json()
        junk = await client.get("/state-stats.json?activity=soon")
        return default, everyone, junk.status

    default, everyone, junk_status = run_client(dashboard, scenario)
    assert default["Ohio"]["demActive"] == 1
    assert everyone["Ohio"]["demActive"] == 2
    assert default["Texas"]["gopActive"] == 1
    assert junk_status == 200


def test_leaderboard_json_and_page(tmp_path):
    dashboard, _ = make_dashboard(tmp_path)

    async def scenario(client):
        data = await (await client.get("/leaderboard.json?metric=es&page=abc")).json()
        html = await (await client.get("/leaderboard?party=gop")).text()
        return data, html

    data, html = run_client(dashboard, scenario)
    assert data["metric"] == "es"
    assert data["page"] == 1
    assert [e["profile"]["name"] for e in data["entries"]] == ["Cal", "Ann", "Ben"]
    assert "Ben" in html
    assert "Ann" not in html


def test_users_json_filters(tmp_path):
    dashboard, _ = make_dashboard(tmp_path)

    async def scenario(client):
        resp = await client.get("/users.json?party=dem&activity=5&sort=cash&dir=desc")
        return await resp.json()

    data = run_client(dashboard, scenario)
    assert data["total"] == 1
    assert data["rows"][0]["name"] == "Ann"
    assert data["sort"] == "cash"
    assert data["dir"] == "desc"


def test_missing_profiles_render_empty(tmp_path):
    dashboard, _ = make_dashboard(tmp_path, write_profiles=False)

    async def scenario(client):
        stats = await (await client.get("/stats.json")).json()
        states = await (await client.get("/state-stats.json")).json()
        page = await client.get("/users")
        return stats, states, page.status

    stats, states, status = run_client(dashboard, scenario)
    assert stats["all"]["count"] == 0
    assert states == {}
    assert status == 200


def test_broadcaster_drops_failed_subscribers():
    store = StatusStore(clock=FakeClock(), process=FakeProcess())

    class GoodResponse:
        def __init__(self):
            self.chunks = []

        async def write(self, data):
            self.chunks.append(data)

    class BrokenResponse:
        async def write(self, data):
            raise ConnectionResetError("gone")

    async def scenario():
        broadcaster = EventBroadcaster(store, interval=60)
        good = GoodResponse()
        broadcaster.subscribe(good)
        broken = broadcaster.subscribe(BrokenResponse())
        delivered = await broadcaster.broadcast()
        return broadcaster, good, broken, delivered

    broadcaster, good, broken, delivered = asyncio.run(scenario())
    assert delivered == 1
    assert len(broadcaster) == 1
    assert broken.closed.is_set()
    assert good.chunks[0].startswith(b"data: ")


def test_parse_days():
    assert parse_days(None, 3.0) == 3.0
    assert parse_days("all", 3.0) is None
    assert parse_days("7") == 7.0
    assert parse_days("-1", 3.0) == 3.0
    assert parse_days("abc", 3.0) == 3.0


def test_leaderboard_pager_keeps_page_size_and_activity(tmp_path):
    profiles = {
        str(i): {"id": i, "name": f"P{i}", "party": "Democratic Party",
                 "cash": f"${i * 100}", "lastOnlineDays": 1}
        for i in range(1, 31)
    }
    path = tmp_path / "profiles.json"
    path.write_text(json.dumps({"profiles": profiles}), encoding="utf-8")
    store = StatusStore(clock=FakeClock(), process=FakeProcess())
    dashboard = Dashboard(store, path, broadcast_interval=60)

    async def scenario(client):
        html = await (await client.get("/leaderboard?pageSize=5&activity=3")).text()
        data = await (await client.get("/leaderboard.json?pageSize=5&activity=3")).json()
        return html, data

    html, data = run_client(dashboard, scenario)
    assert "Page 1 of 6" in html
    assert "pageSize=5" in html
    assert "activity=3" in html
    assert data["pageSize"] == 5
    assert data["totalPages"] == 6


def test_users_page_has_filter_form(tmp_path):
    dashboard, _ = make_dashboard(tmp_path)

    async def scenario(client):
        return await (await client.get("/users?party=gop&search=b%22n&sort=cash&dir=desc")).text()

    html = run_client(dashboard, scenario)
    assert '<form method="get" action="/users">' in html
    assert 'value="b&quot;n"' in html
    assert '<option value="gop" selected>' in html
    assert '<option value="cash" selected>' in html
    assert '<option value="desc" selected>' in html


def test_format_duration():
    assert format_duration(None) == "-"
    assert format_duration(59) == "59s"
    assert format_duration(3661) == "1h 1m 1s"
    assert format_duration(86400 + 5) == "1d 0h 0m 5s"
