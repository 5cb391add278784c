from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional

import discord
from aiohttp import web
from discord import app_commands
from discord.ext import commands

from .aggregation import (
    ACTIVE_DAYS,
    INACTIVE_MAX_DAYS,
    INACTIVE_MIN_DAYS,
    InactivityReport,
    LeaderboardPage,
    PartyActivity,
    inactivity_report,
    leaderboard,
    normalize_party_filter,
    party_activity_snapshot,
)
from .config import BotConfig, load_config
from .dashboard import Dashboard
from .pages import format_duration
from .profiles import ProfileDataset, load_profiles
from .resets import CommandResetPolicy, classify_error, unwrap_error
from .status import StatusSnapshot, StatusStore

# Default to INFO until the configured level is applied at startup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
)
LOGGER = logging.getLogger(__name__)

BRAND_COLOR = 0x5865F2
STATUS_COLOR = 0x16A34A
EMBED_DESCRIPTION_LIMIT = 4096
COMMAND_TIMEOUT_SECONDS = 30
RESTART_DELAY_SECONDS = 1
RESTART_DEFERRED_DELAY_SECONDS = 10
LEADERBOARD_ROWS = 15
TRACKED_JOB_COMMANDS = ("update", "primary", "race")

PARTY_CHOICES = [
    app_commands.Choice(name="Democrats", value="dems"),
    app_commands.Choice(name="Republicans", value="gop"),
    app_commands.Choice(name="All Parties", value="all"),
]
PARTY_LABELS = {"dem": "Democrats", "gop": "Republicans", "all": "All Parties"}
METRIC_CHOICES = [
    app_commands.Choice(name="Cash", value="cash"),
    app_commands.Choice(name="ES", value="es"),
    app_commands.Choice(name="Political Power", value="power"),
]
METRIC_LABELS = {"cash": "Cash", "es": "ES", "power": "Political Power"}


def truncate(text: str, limit: int = EMBED_DESCRIPTION_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def user_error_message(error: Any) -> str:
    error = unwrap_error(error)
    text = str(error)
    lowered = text.lower()
    if isinstance(error, asyncio.TimeoutError) or "timeout" in lowered:
        return "Command timed out. Please try again with a simpler request."
    if "Missing" in text or "Invalid" in text:
        return f"Error: {text}"
    if "permission" in lowered or "access" in lowered:
        return "You do not have permission to use this command."
    return "There was an error executing that command."


def can_manage_bot(user: Any, config: BotConfig) -> bool:
    user_id = int(getattr(user, "id", 0) or 0)
    if user_id and user_id in config.bypass_user_ids:
        return True
    perms = getattr(user, "guild_permissions", None)
    if perms is not None and (perms.administrator or perms.manage_guild):
        return True
    if config.manager_role_id is None:
        return False
    return any(
        getattr(role, "id", None) == config.manager_role_id
        for role in getattr(user, "roles", None) or []
    )


def _display_dt(value) -> str:
    return discord.utils.format_dt(value, "f") if value else "N/A"


def build_activity_embed(report: InactivityReport) -> discord.Embed:
    lines = []
    for row in report.rows:
        parts = [detail.line() for detail in row.details]
        if row.more:
            parts.append(f"...{row.more} more")
        lines.append(
            f"• **{row.label}** - {row.max_days} day(s) offline\n   {'; '.join(parts)}"
        )
    embed = discord.Embed(
        title=f"Members idle {INACTIVE_MIN_DAYS}-{INACTIVE_MAX_DAYS} days",
        description=truncate("\n".join(lines)),
        color=BRAND_COLOR,
        timestamp=discord.utils.utcnow(),
    )
    embed.set_footer(text="Source: data/profiles.json (last scrape)")
    return embed


def build_party_embed(
    parties: Dict[str, PartyActivity], updated_at: Optional[str]
) -> discord.Embed:
    labels = (("dem", "Democratic"), ("gop", "Republican"), ("all", "All"))
    lines = []
    for key, label in labels:
        stats = parties.get(key)
        if stats is None:
            continue
        lines.append(
            f"• {label}: members {stats.count}, avg last online {stats.avg_online_days:g}d, "
            f"<3d {stats.recent_count}, <5d {stats.active_count}"
        )
    embed = discord.Embed(
        title="Party Activity Snapshot",
        description="\n".join(lines) or "No data",
        color=BRAND_COLOR,
        timestamp=discord.utils.utcnow(),
    )
    footer = f"profiles.json updated {updated_at}" if updated_at else "profiles.json"
    embed.set_footer(text=footer)
    return embed


def build_leaderboard_embed(result: LeaderboardPage, party: str) -> discord.Embed:
    metric_label = METRIC_LABELS.get(result.metric, "Cash")
    lines = []
    for entry in result.entries:
        profile = entry.profile
        if result.metric == "es":
            value = f"{entry.value:,.1f} ES"
        elif result.metric == "cash":
            value = profile.cash or "$0"
        else:
            value = f"{entry.value:,.0f}"
        lines.append(
            f"{entry.rank}. **{profile.name or 'Unknown'}** - {value} | "
            f"{profile.state or 'Unknown'} | {profile.last_seen_label()}"
        )
    embed = discord.Embed(
        title=f"{PARTY_LABELS.get(party, 'All Parties')} - Top {metric_label}",
        description=truncate("\n".join(lines)),
        color=BRAND_COLOR,
        timestamp=discord.utils.utcnow(),
    )
    embed.set_footer(
        text=f"Page {result.page}/{result.total_pages} - active < {ACTIVE_DAYS} days offline"
    )
    return embed


def build_status_embed(snapshot: StatusSnapshot, dataset: ProfileDataset) -> discord.Embed:
    embed = discord.Embed(
        title="Bot Status", color=STATUS_COLOR, timestamp=discord.utils.utcnow()
    )
    embed.add_field(
        name="Uptime", value=format_duration(snapshot.uptime_seconds), inline=True
    )
    embed.add_field(name="Ready Since", value=_display_dt(snapshot.bot.ready_at), inline=True)
    embed.add_field(
        name="Last Heartbeat", value=_display_dt(snapshot.bot.last_heartbeat), inline=True
    )
    embed.add_field(
        name="Profiles",
        value=f"{len(dataset)} cached\nUpdated: {dataset.updated_at or 'N/A'}",
        inline=True,
    )
    runs = sum(stat.run_count for stat in snapshot.commands)
    errors = sum(stat.error_count for stat in snapshot.commands)
    embed.add_field(name="Commands", value=f"{runs} runs, {errors} errors", inline=True)
    for name in TRACKED_JOB_COMMANDS:
        stat = snapshot.command(name)
        embed.add_field(
            name=f"Last /{name} run",
            value=_display_dt(stat.last_success_at if stat else None),
            inline=True,
        )
    return embed


def command_signature(command: Any) -> str:
    pieces = [f"/{command.name}"]
    for param in getattr(command, "parameters", []) or []:
        if param.required:
            pieces.append(f"<{param.name}>")
        else:
            pieces.append(f"[{param.name}]")
    return " ".join(pieces)


def build_help_embed(registered: Iterable[Any]) -> discord.Embed:
    lines = [
        f"`{command_signature(cmd)}` - {cmd.description or 'No description'}"
        for cmd in sorted(registered, key=lambda c: c.name)
    ]
    return discord.Embed(
        title="DemBot Commands",
        description=truncate("\n".join(lines) or "No commands registered."),
        color=BRAND_COLOR,
    )


class DemBot(commands.Bot):
    def __init__(self, config: BotConfig, store: StatusStore | None = None):
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.store = store or StatusStore(
            error_log_size=config.error_log_size,
            runtime_sample_size=config.runtime_sample_size,
        )
        self.reset_policy = CommandResetPolicy(self.store)
        self.dashboard = Dashboard(
            self.store,
            config.profiles_path,
            broadcast_interval=config.broadcast_interval_seconds,
            html_refresh_seconds=config.html_refresh_seconds,
            state_rollup_dedupe=config.state_rollup_dedupe,
        )
        self.dashboard_runner: web.AppRunner | None = None
        self.heartbeat_task: asyncio.Task[None] | None = None
        self.sampler_task: asyncio.Task[None] | None = None
        self.restart_requested = False
        self._restart_handle: asyncio.TimerHandle | None = None
        self._restart_task: asyncio.Task[None] | None = None

    async def start_dashboard(self) -> None:
        if self.dashboard_runner:
            return
        try:
            self.dashboard_runner = await self.dashboard.start(
                self.config.dashboard_host, self.config.dashboard_port
            )
        except OSError as exc:
            LOGGER.warning(
                "Dashboard failed to bind %s:%s: %s",
                self.config.dashboard_host,
                self.config.dashboard_port,
                exc,
            )

    async def setup_hook(self) -> None:
        await self._start_workers()
        if self.config.guild_id:
            guild = discord.Object(id=self.config.guild_id)
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            LOGGER.info("Guild-registered %s command(s) to %s", len(synced), guild.id)
        else:
            synced = await self.tree.sync()
            LOGGER.info("Global-registered %s command(s)", len(synced))

    async def _start_workers(self):
        if self.heartbeat_task:
            return
        self.heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.sampler_task = asyncio.create_task(self._sampler_loop())

    async def close(self) -> None:
        if self._restart_handle:
            self._restart_handle.cancel()
        for task in (self.heartbeat_task, self.sampler_task):
            if task:
                task.cancel()
        for task in (self.heartbeat_task, self.sampler_task):
            if task:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if self.dashboard_runner:
            await self.dashboard_runner.cleanup()
            self.dashboard_runner = None
        await super().close()

    async def on_ready(self):
        LOGGER.info("Bot ready as %s", self.user)
        self.store.mark_ready()

    async def _heartbeat_loop(self):
        while not self.is_closed():
            self.store.mark_heartbeat()
            await asyncio.sleep(self.config.heartbeat_interval_seconds)

    async def _sampler_loop(self):
        while not self.is_closed():
            sample = self.store.sample_runtime()
            if sample:
                LOGGER.debug(
                    "Runtime sample rss=%sMB load1=%s commands=%s",
                    sample.rss_mb,
                    sample.load1,
                    sample.cmd_count_total,
                )
            await asyncio.sleep(self.config.sample_interval_seconds)

    async def load_profiles(self) -> ProfileDataset:
        return await asyncio.to_thread(load_profiles, self.config.profiles_path)

    def record_invocation(self, interaction: Any) -> Optional[str]:
        if interaction.type != discord.InteractionType.application_command:
            return None
        cmd = interaction.command
        name = cmd.qualified_name if cmd else "unknown"
        user = interaction.user
        self.store.record_user_command(
            getattr(user, "id", None), getattr(user, "name", None), name
        )
        return name

    def record_success(self, name: str) -> None:
        if self.reset_policy.note_success(name):
            LOGGER.info("Command %s recovered; error streak cleared", name)
        self.store.record_command_success(name)

    def record_failure(self, name: str, error: Any, meta: Any = None) -> None:
        meta = meta if meta is not None else classify_error(error)
        self.store.record_command_error(name, unwrap_error(error), meta)
        self.reset_policy.note_error(name, error, meta)

    async def on_app_command_completion(self, interaction: Any, command: Any):
        self.record_success(command.qualified_name)

    def schedule_restart(self, delay: float) -> None:
        self.restart_requested = True
        if self._restart_handle:
            self._restart_handle.cancel()
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(delay, self._begin_restart)
        LOGGER.warning("Restart scheduled in %ss", delay)

    def _begin_restart(self) -> None:
        self._restart_task = asyncio.create_task(self.close())


async def _reply(interaction: Any, content: str, ephemeral: bool = True) -> None:
    if interaction.response.is_done():
        await interaction.followup.send(content, ephemeral=ephemeral)
    else:
        await interaction.response.send_message(content, ephemeral=ephemeral)


# Command registrations
async def setup_commands(bot: DemBot):
    tree = bot.tree

    @bot.listen("on_interaction")
    async def log_app_command(interaction: discord.Interaction):
        name = bot.record_invocation(interaction)
        if name is None:
            return
        data = getattr(interaction, "namespace", None)
        try:
            payload = vars(data) if data else {}
        except Exception:
            payload = str(data)
        guild = interaction.guild
        guild_label = f"{guild.name} ({guild.id})" if guild else "DM"
        LOGGER.info(
            "Slash command %s by %s in %s with options %s",
            name,
            getattr(interaction.user, "id", "unknown"),
            guild_label,
            payload,
        )

    @tree.error
    async def on_app_command_error(
        interaction: discord.Interaction, error: app_commands.AppCommandError
    ):
        if isinstance(error, app_commands.CheckFailure):
            if not interaction.response.is_done():
                await interaction.response.send_message(
                    "You do not have permission to use this command.",
                    ephemeral=True,
                )
            return
        cmd = interaction.command
        name = cmd.qualified_name if cmd else "unknown"
        LOGGER.error("App command %s failed: %s", name, error, exc_info=error)
        bot.record_failure(name, error)
        try:
            await _reply(interaction, user_error_message(error))
        except discord.HTTPException as exc:
            LOGGER.warning("Failed sending error response for command: %s", exc)

    @tree.command(
        name="activity",
        description="Show members with cached profiles 2-5 days offline",
    )
    @app_commands.describe(
        general="If true, show the overall activity snapshot by party"
    )
    async def activity(interaction: discord.Interaction, general: Optional[bool] = None):
        if not general and interaction.guild is None:
            await interaction.response.send_message(
                "Run /activity inside the server.", ephemeral=True
            )
            return
        await interaction.response.defer(thinking=True)
        dataset = await bot.load_profiles()
        if general:
            embed = build_party_embed(
                party_activity_snapshot(dataset.profiles), dataset.updated_at
            )
            await interaction.followup.send(embed=embed)
            return
        if not dataset.profiles:
            await interaction.followup.send(
                "profiles.json not found or empty. Run /update first."
            )
            return
        guild = interaction.guild
        if not getattr(guild, "chunked", True):
            await asyncio.wait_for(guild.chunk(), timeout=COMMAND_TIMEOUT_SECONDS)
        report = inactivity_report(dataset.profiles, guild.members)
        if not report.rows:
            await interaction.followup.send(
                f"No guild members found between {INACTIVE_MIN_DAYS}-{INACTIVE_MAX_DAYS} days offline."
            )
            return
        await interaction.followup.send(embed=build_activity_embed(report))

    @tree.command(
        name="leaderboard", description="Show the top cached profiles by cash or ES"
    )
    @app_commands.describe(
        party="Filter by party (defaults to Democrats)",
        metric="Sort by cash, ES or political power (defaults to cash)",
        page="Page number",
    )
    @app_commands.choices(party=PARTY_CHOICES, metric=METRIC_CHOICES)
    async def leaderboard_command(
        interaction: discord.Interaction,
        party: Optional[app_commands.Choice[str]] = None,
        metric: Optional[app_commands.Choice[str]] = None,
        page: int = 1,
    ):
        await interaction.response.defer(thinking=True)
        party_key = normalize_party_filter(party.value if party else "dems")
        metric_key = metric.value if metric else "cash"
        dataset = await bot.load_profiles()
        if not dataset.profiles:
            await interaction.followup.send(
                "profiles.json is empty. Run /update to populate it."
            )
            return
        result = leaderboard(
            dataset.profiles,
            metric=metric_key,
            page=page,
            page_size=LEADERBOARD_ROWS,
            party=party_key,
            max_days=ACTIVE_DAYS,
        )
        if not result.entries:
            await interaction.followup.send(
                f"No recent profiles found for {PARTY_LABELS.get(party_key)} "
                f"({METRIC_LABELS.get(result.metric)})."
            )
            return
        await interaction.followup.send(embed=build_leaderboard_embed(result, party_key))

    @tree.command(
        name="status", description="Show bot uptime and data freshness"
    )
    async def status(interaction: discord.Interaction):
        await interaction.response.defer(thinking=True)
        dataset = await bot.load_profiles()
        embed = build_status_embed(bot.store.get_status(), dataset)
        await interaction.followup.send(embed=embed)

    @tree.command(name="help", description="List available commands")
    async def help_command(interaction: discord.Interaction):
        embed = build_help_embed(bot.tree.get_commands())
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @tree.command(
        name="restart", description="Restart the bot process (managers only)"
    )
    @app_commands.describe(now="Restart immediately (default true)")
    async def restart(interaction: discord.Interaction, now: Optional[bool] = None):
        if not can_manage_bot(interaction.user, bot.config):
            await interaction.response.send_message(
                "You do not have permission to restart the bot.", ephemeral=True
            )
            return
        delay = RESTART_DEFERRED_DELAY_SECONDS if now is False else RESTART_DELAY_SECONDS
        await interaction.response.send_message(
            f"Restarting bot in {delay}s...", ephemeral=True
        )
        LOGGER.warning(
            "Restart requested by %s", getattr(interaction.user, "id", "unknown")
        )
        bot.schedule_restart(delay)


async def main():
    bot_config = load_config()
    logging.getLogger().setLevel(bot_config.log_level)
    LOGGER.setLevel(bot_config.log_level)
    store = StatusStore(
        error_log_size=bot_config.error_log_size,
        runtime_sample_size=bot_config.runtime_sample_size,
    )
    bot = DemBot(bot_config, store)
    await setup_commands(bot)
    await bot.start_dashboard()
    try:
        await bot.start(bot_config.token)
    except discord.LoginFailure as exc:
        store.mark_login_error(exc)
        LOGGER.error("Client login failed: %s", exc)
        if bot.dashboard_runner:
            # Keep serving the dashboard so the login failure stays visible.
            await asyncio.Event().wait()
        raise
    finally:
        if bot.dashboard_runner:
            await bot.dashboard_runner.cleanup()
    if bot.restart_requested:
        LOGGER.info("Restart requested; exiting so the supervisor restarts the bot")


if __name__ == "__main__":
    asyncio.run(main())
