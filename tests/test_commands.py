import asyncio
import json

from discord import app_commands

from dembot.bot import (
    RESTART_DEFERRED_DELAY_SECONDS,
    DemBot,
    can_manage_bot,
    command_signature,
    setup_commands,
    user_error_message,
)
from dembot.config import BotConfig
from tests.fakes import FakeGuild, FakeInteraction, FakeMember, FakePermissions, FakeRole

PROFILES = {
    "profiles": {
        "1": {"id": 1, "name": "Ann Alt", "discord": "ann", "party": "Democratic Party",
              "state": "Ohio", "cash": "$1,000", "es": "5", "lastOnlineDays": 3.5},
        "2": {"id": 2, "name": "Ben", "discord": "ben", "party": "Republican Party",
              "state": "Texas", "cash": "$3,000", "es": "1", "lastOnlineDays": 1},
        "3": {"id": 3, "name": "Cal", "discord": "cal", "party": "Democratic Party",
              "state": "Ohio", "cash": "$2,500", "es": "9", "lastOnlineDays": 0.5},
    },
    "updatedAt": "2024-01-01T00:00:00Z",
}


def make_bot(tmp_path, write_profiles=True, **overrides):
    path = tmp_path / "profiles.json"
    if write_profiles:
        path.write_text(json.dumps(PROFILES), encoding="utf-8")
    config = BotConfig(token="dummy", profiles_path=str(path), **overrides)
    bot = DemBot(config)
    asyncio.run(setup_commands(bot))
    return bot


def make_guild():
    members = [
        FakeMember(id=10, name="ann"),
        FakeMember(id=11, name="ben"),
        FakeMember(id=12, name="cal"),
    ]
    return FakeGuild(id=1, members=members, chunked=False)


def invoke(bot, name, interaction, **kwargs):
    return asyncio.run(bot.tree.get_command(name).callback(interaction, **kwargs))


def test_commands_registered(tmp_path):
    bot = make_bot(tmp_path)
    names = sorted(cmd.name for cmd in bot.tree.get_commands())
    assert names == ["activity", "help", "leaderboard", "restart", "status"]


def test_activity_reports_idle_members(tmp_path):
    bot = make_bot(tmp_path)
    guild = make_guild()
    interaction = FakeInteraction(guild.members[0], guild=guild, command_name="activity")

    invoke(bot, "activity", interaction, general=None)

    assert interaction.response.deferred
    assert guild.chunk_calls == 1
    embed = interaction.followup.embeds[0]
    assert "**ann** - 3 day(s) offline" in embed.description
    assert "Ann Alt (ID 1" in embed.description
    assert "ben" not in embed.description


def test_activity_general_snapshot(tmp_path):
    bot = make_bot(tmp_path)
    interaction = FakeInteraction(FakeMember(id=1, name="x"), command_name="activity")

    invoke(bot, "activity", interaction, general=True)

    embed = interaction.followup.embeds[0]
    assert embed.title == "Party Activity Snapshot"
    assert "Democratic: members 2" in embed.description


def test_activity_requires_guild(tmp_path):
    bot = make_bot(tmp_path)
    interaction = FakeInteraction(FakeMember(id=1, name="x"), command_name="activity")

    invoke(bot, "activity", interaction, general=None)

    assert interaction.response.message == "Run /activity inside the server."


def test_activity_without_profiles(tmp_path):
    bot = make_bot(tmp_path, write_profiles=False)
    guild = make_guild()
    interaction = FakeInteraction(guild.members[0], guild=guild, command_name="activity")

    invoke(bot, "activity", interaction, general=None)

    assert "profiles.json not found" in interaction.followup.message


def test_leaderboard_defaults_to_democrats(tmp_path):
    bot = make_bot(tmp_path)
    interaction = FakeInteraction(FakeMember(id=1, name="x"), command_name="leaderboard")

    invoke(bot, "leaderboard", interaction, party=None, metric=None, page=1)

    embed = interaction.followup.embeds[0]
    assert embed.title == "Democrats - Top Cash"
    lines = embed.description.splitlines()
    assert lines[0].startswith("1. **Cal**")
    assert lines[1].startswith("2. **Ann Alt**")
    assert "Ben" not in embed.description


def test_leaderboard_party_and_metric_choices(tmp_path):
    bot = make_bot(tmp_path)
    interaction = FakeInteraction(FakeMember(id=1, name="x"), command_name="leaderboard")

    invoke(
        bot,
        "leaderboard",
        interaction,
        party=app_commands.Choice(name="Republicans", value="gop"),
        metric=app_commands.Choice(name="ES", value="es"),
        page=1,
    )

    embed = interaction.followup.embeds[0]
    assert embed.title == "Republicans - Top ES"
    assert "1.0 ES" in embed.description


def test_status_command_reports_store(tmp_path):
    bot = make_bot(tmp_path)
    bot.store.mark_ready()
    bot.store.record_command_success("update")
    interaction = FakeInteraction(FakeMember(id=1, name="x"), command_name="status")

    invoke(bot, "status", interaction)

    embed = interaction.followup.embeds[0]
    fields = {f.name: f.value for f in embed.fields}
    assert fields["Profiles"].startswith("3 cached")
    assert fields["Commands"] == "1 runs, 0 errors"
    assert fields["Last /update run"] != "N/A"
    assert fields["Last /race run"] == "N/A"


def test_help_lists_commands(tmp_path):
    bot = make_bot(tmp_path)
    interaction = FakeInteraction(FakeMember(id=1, name="x"), command_name="help")

    invoke(bot, "help", interaction)

    description = interaction.response.embeds[0].description
    assert "`/leaderboard [party] [metric] [page]`" in description
    assert description.index("/activity") < description.index("/status")


def test_command_signature_marks_optional(tmp_path):
    bot = make_bot(tmp_path)
    assert command_signature(bot.tree.get_command("restart")) == "/restart [now]"
    assert command_signature(bot.tree.get_command("status")) == "/status"


def test_restart_requires_manager(tmp_path):
    bot = make_bot(tmp_path, manager_role_id=77)
    interaction = FakeInteraction(FakeMember(id=5, name="nobody"), command_name="restart")

    invoke(bot, "restart", interaction, now=None)

    assert "do not have permission" in interaction.response.message
    assert bot.restart_requested is False


def test_restart_schedules_shutdown(tmp_path):
    bot = make_bot(tmp_path, manager_role_id=77)
    member = FakeMember(id=5, name="mgr", roles=[FakeRole(id=77)])
    interaction = FakeInteraction(member, command_name="restart")

    async def scenario():
        await bot.tree.get_command("restart").callback(interaction, now=False)
        handle = bot._restart_handle
        delay = handle.when() - asyncio.get_running_loop().time()
        handle.cancel()
        return delay

    delay = asyncio.run(scenario())
    assert bot.restart_requested is True
    assert interaction.response.message == f"Restarting bot in {RESTART_DEFERRED_DELAY_SECONDS}s..."
    assert 0 < delay <= RESTART_DEFERRED_DELAY_SECONDS


def test_can_manage_bot_rules():
    config = BotConfig(token="t", manager_role_id=77, bypass_user_ids=[9])
    assert can_manage_bot(FakeMember(id=9, name="owner"), config)
    assert can_manage_bot(FakeMember(id=1, name="m", roles=[FakeRole(id=77)]), config)
    assert can_manage_bot(
        FakeMember(id=2, name="a", guild_permissions=FakePermissions(administrator=True)),
        config,
    )
    assert not can_manage_bot(FakeMember(id=3, name="u"), config)
    assert not can_manage_bot(FakeMember(id=3, name="u"), BotConfig(token="t"))


def test_invocation_records_user_activity(tmp_path):
    bot = make_bot(tmp_path)
    interaction = FakeInteraction(FakeMember(id=42, name="zed"), command_name="status")

    assert bot.record_invocation(interaction) == "status"

    user = bot.store.get_status().users[0]
    assert user.user_id == "42"
    assert user.username == "zed"
    assert user.commands == {"status": 1}


def test_error_handler_records_and_recovers(tmp_path):
    bot = make_bot(tmp_path)
    command = bot.tree.get_command("status")
    interaction = FakeInteraction(FakeMember(id=1, name="x"), command_name="status")
    error = app_commands.CommandInvokeError(command, asyncio.TimeoutError())

    asyncio.run(bot.tree.on_error(interaction, error))

    assert interaction.response.message.startswith("Command timed out")
    snapshot = bot.store.get_status()
    assert snapshot.command("status").error_count == 1
    assert snapshot.errors[0].meta.kind == "network"
    assert bot.reset_policy.pending("status")

    asyncio.run(bot.on_app_command_completion(interaction, command))

    stat = bot.store.get_status().command("status")
    assert stat.reset_count == 1
    assert (stat.run_count, stat.success_count, stat.error_count) == (1, 1, 0)


def test_error_handler_replies_via_followup_when_deferred(tmp_path):
    bot = make_bot(tmp_path)
    command = bot.tree.get_command("leaderboard")
    interaction = FakeInteraction(FakeMember(id=1, name="x"), command_name="leaderboard")
    interaction.response.deferred = True
    error = app_commands.CommandInvokeError(command, ValueError("Invalid metric"))

    asyncio.run(bot.tree.on_error(interaction, error))

    assert interaction.followup.message == "Error: Invalid metric"
    assert not bot.reset_policy.pending("leaderboard")
    assert bot.store.get_status().errors[0].meta.kind == "user_input"


def test_user_error_messages():
    assert user_error_message(asyncio.TimeoutError()).startswith("Command timed out")
    assert user_error_message(ValueError("Missing state")) == "Error: Missing state"
    assert user_error_message(RuntimeError("no access")) == (
        "You do not have permission to use this command."
    )
    assert user_error_message(RuntimeError("boom")) == (
        "There was an error executing that command."
    )


def test_restart_keeps_reference_to_close_task(tmp_path):
    bot = make_bot(tmp_path)
    closed = []

    async def fake_close():
        closed.append(True)

    bot.close = fake_close

    async def scenario():
        bot._begin_restart()
        task = bot._restart_task
        assert isinstance(task, asyncio.Task)
        await task

    asyncio.run(scenario())
    assert closed == [True]


def test_status_embed_formats_uptime(tmp_path):
    bot = make_bot(tmp_path)
    interaction = FakeInteraction(FakeMember(id=1, name="x"), command_name="status")

    invoke(bot, "status", interaction)

    fields = {f.name: f.value for f in interaction.followup.embeds[0].fields}
    assert fields["Uptime"] == "-"
