"""In-memory status store for bot lifecycle, command metrics and runtime samples.

The store is owned by the process entry point and handed to every consumer
(command hooks, dashboard handlers). All mutations are synchronous so they
cannot interleave on the event loop. Recording calls never raise: a failure
inside the store is logged and dropped so command handlers are never broken
by telemetry.
"""

from __future__ import annotations

import functools
import logging
import traceback
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple, Union

import psutil

LOGGER = logging.getLogger(__name__)

DEFAULT_ERROR_LOG_SIZE = 100
DEFAULT_RUNTIME_SAMPLE_SIZE = 1440
UNKNOWN = "unknown"
UNKNOWN_ERROR = "Unknown error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class NetworkErrorMeta:
    code: Optional[str] = None
    status: Optional[int] = None
    kind: str = field(default="network", init=False)


@dataclass(frozen=True)
class AuthErrorMeta:
    status: Optional[int] = None
    kind: str = field(default="auth", init=False)


@dataclass(frozen=True)
class RateLimitMeta:
    retry_after: Optional[float] = None
    kind: str = field(default="rate_limit", init=False)


@dataclass(frozen=True)
class UserInputMeta:
    field_name: Optional[str] = None
    kind: str = field(default="user_input", init=False)


@dataclass(frozen=True)
class GenericMeta:
    data: Dict[str, Any] = field(default_factory=dict)
    kind: str = field(default="generic", init=False)


ErrorMeta = Union[NetworkErrorMeta, AuthErrorMeta, RateLimitMeta, UserInputMeta, GenericMeta]
META_TYPES = (NetworkErrorMeta, AuthErrorMeta, RateLimitMeta, UserInputMeta, GenericMeta)


def coerce_meta(meta: Any) -> Optional[ErrorMeta]:
    """Turn caller-supplied meta into one of the known meta shapes."""
    if meta is None:
        return None
    if isinstance(meta, GenericMeta):
        return GenericMeta(data=dict(meta.data))
    if isinstance(meta, META_TYPES):
        return meta
    if isinstance(meta, Mapping):
        return GenericMeta(data={str(key): value for key, value in meta.items()})
    return GenericMeta(data={"value": str(meta)})


def meta_to_dict(meta: Optional[ErrorMeta]) -> Optional[Dict[str, Any]]:
    if meta is None:
        return None
    payload = asdict(meta)
    if isinstance(meta, GenericMeta):
        payload["data"] = dict(meta.data)
    return payload


@dataclass(frozen=True)
class LoginError:
    message: str
    timestamp: datetime


@dataclass
class BotLifecycle:
    ready: bool = False
    ready_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    login_error: Optional[LoginError] = None


@dataclass
class CommandStat:
    name: str
    run_count: int = 0
    success_count: int = 0
    error_count: int = 0
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_error_message: Optional[str] = None
    reset_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "runCount": self.run_count,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "lastRunAt": format_timestamp(self.last_run_at),
            "lastSuccessAt": format_timestamp(self.last_success_at),
            "lastErrorAt": format_timestamp(self.last_error_at),
            "lastErrorMessage": self.last_error_message,
            "resetCount": self.reset_count,
        }


@dataclass(frozen=True)
class ErrorEntry:
    command: str
    message: str
    timestamp: datetime
    stack: Optional[str] = None
    meta: Optional[ErrorMeta] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "message": self.message,
            "stack": self.stack,
            "meta": meta_to_dict(self.meta),
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass
class UserActivity:
    user_id: str
    username: str
    command_count: int = 0
    commands: Dict[str, int] = field(default_factory=dict)
    last_activity: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "commandCount": self.command_count,
            "commands": dict(self.commands),
            "lastActivity": format_timestamp(self.last_activity),
        }


@dataclass(frozen=True)
class RuntimeSample:
    timestamp: datetime
    rss_mb: float
    load1: float
    cmd_count_total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "rssMB": self.rss_mb,
            "load1": self.load1,
            "cmdCountTotal": self.cmd_count_total,
        }


@dataclass(frozen=True)
class StatusSnapshot:
    bot: BotLifecycle
    uptime_seconds: float = 0.0
    commands: Tuple[CommandStat, ...] = ()
    errors: Tuple[ErrorEntry, ...] = ()
    users: Tuple[UserActivity, ...] = ()
    samples: Tuple[RuntimeSample, ...] = ()

    def command(self, name: str) -> Optional[CommandStat]:
        for stat in self.commands:
            if stat.name == name:
                return stat
        return None

    def to_dict(self) -> Dict[str, Any]:
        login_error = None
        if self.bot.login_error:
            login_error = {
                "message": self.bot.login_error.message,
                "timestamp": format_timestamp(self.bot.login_error.timestamp),
            }
        return {
            "bot": {
                "ready": self.bot.ready,
                "readyAt": format_timestamp(self.bot.ready_at),
                "lastHeartbeat": format_timestamp(self.bot.last_heartbeat),
                "loginError": login_error,
                "uptimeMs": int(self.uptime_seconds * 1000),
            },
            "commands": [stat.to_dict() for stat in self.commands],
            "errors": [entry.to_dict() for entry in self.errors],
            "users": [user.to_dict() for user in self.users],
            "metrics": {"samples": [sample.to_dict() for sample in self.samples]},
        }


def _error_message(error: Any) -> str:
    if error is None:
        return UNKNOWN_ERROR
    if isinstance(error, BaseException):
        text = str(error) or error.__class__.__name__
    elif isinstance(error, Mapping):
        text = str(error.get("message") or "")
    else:
        text = str(getattr(error, "message", None) or error)
    return text or UNKNOWN_ERROR


def _error_stack(error: Any) -> Optional[str]:
    if isinstance(error, BaseException):
        if error.__traceback__ is None:
            return None
        return "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    if isinstance(error, Mapping):
        stack = error.get("stack")
    else:
        stack = getattr(error, "stack", None)
    return str(stack) if stack else None


def _copy_entry(entry: ErrorEntry) -> ErrorEntry:
    if isinstance(entry.meta, GenericMeta):
        return replace(entry, meta=coerce_meta(entry.meta))
    return entry


def _best_effort(func):
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception:
            LOGGER.exception("Status store %s failed", func.__name__)
            return None

    return wrapper


class StatusStore:
    def __init__(
        self,
        error_log_size: int = DEFAULT_ERROR_LOG_SIZE,
        runtime_sample_size: int = DEFAULT_RUNTIME_SAMPLE_SIZE,
        clock: Callable[[], datetime] = utcnow,
        process: Any = None,
        load_average: Callable[[], Tuple[float, float, float]] = psutil.getloadavg,
    ):
        self._clock = clock
        self._process = process
        self._load_average = load_average
        self._bot = BotLifecycle()
        self._commands: Dict[str, CommandStat] = {}
        self._errors: Deque[ErrorEntry] = deque(maxlen=max(1, int(error_log_size)))
        self._users: Dict[str, UserActivity] = {}
        self._samples: Deque[RuntimeSample] = deque(
            maxlen=max(1, int(runtime_sample_size))
        )

    @property
    def error_log_size(self) -> int:
        return self._errors.maxlen or 0

    @property
    def runtime_sample_size(self) -> int:
        return self._samples.maxlen or 0

    def _now(self) -> datetime:
        return self._clock()

    def _ensure_command(self, name: Any) -> CommandStat:
        key = str(name) if name else UNKNOWN
        stat = self._commands.get(key)
        if stat is None:
            stat = CommandStat(name=key)
            self._commands[key] = stat
        return stat

    @_best_effort
    def mark_ready(self) -> None:
        now = self._now()
        self._bot.ready = True
        if self._bot.ready_at is None:
            self._bot.ready_at = now
        self._bot.last_heartbeat = now

    @_best_effort
    def mark_login_error(self, error: Any) -> None:
        now = self._now()
        self._bot.login_error = LoginError(message=_error_message(error), timestamp=now)
        self._bot.last_heartbeat = now

    @_best_effort
    def mark_heartbeat(self) -> None:
        self._bot.last_heartbeat = self._now()

    @_best_effort
    def record_command_success(self, name: Any) -> None:
        stat = self._ensure_command(name)
        now = self._now()
        stat.run_count += 1
        stat.success_count += 1
        stat.last_run_at = now
        stat.last_success_at = now

    @_best_effort
    def record_command_error(self, name: Any, error: Any = None, meta: Any = None) -> None:
        # Everything is computed before the first mutation so readers never
        # see the counters without the matching ring entry.
        now = self._now()
        message = _error_message(error)
        entry = ErrorEntry(
            command=str(name) if name else UNKNOWN,
            message=message,
            timestamp=now,
            stack=_error_stack(error),
            meta=coerce_meta(meta),
        )
        stat = self._ensure_command(name)
        stat.run_count += 1
        stat.error_count += 1
        stat.last_run_at = now
        stat.last_error_at = now
        stat.last_error_message = message
        self._errors.appendleft(entry)

    @_best_effort
    def record_user_command(self, user_id: Any, username: Any, command_name: Any) -> None:
        key = str(user_id) if user_id not in (None, "") else UNKNOWN
        command = str(command_name) if command_name else UNKNOWN
        activity = self._users.get(key)
        if activity is None:
            activity = UserActivity(user_id=key, username=UNKNOWN)
            self._users[key] = activity
        if username:
            activity.username = str(username)
        activity.command_count += 1
        activity.commands[command] = activity.commands.get(command, 0) + 1
        activity.last_activity = self._now()

    @_best_effort
    def reset_command(self, name: Any) -> None:
        stat = self._ensure_command(name)
        stat.run_count = 0
        stat.success_count = 0
        stat.error_count = 0
        stat.reset_count += 1
        stat.last_error_at = None
        stat.last_error_message = None
        LOGGER.info("Reset command stats for %s (resets=%s)", stat.name, stat.reset_count)

    def _read_rss_mb(self) -> float:
        if self._process is None:
            self._process = psutil.Process()
        return round(self._process.memory_info().rss / (1024 * 1024), 1)

    @_best_effort
    def sample_runtime(self) -> Optional[RuntimeSample]:
        now = self._now()
        if self._samples and now < self._samples[-1].timestamp:
            now = self._samples[-1].timestamp
        try:
            rss_mb = self._read_rss_mb()
        except (psutil.Error, OSError) as exc:
            LOGGER.warning("Failed reading process memory: %s", exc)
            rss_mb = 0.0
        try:
            load1 = round(float(self._load_average()[0]), 2)
        except (OSError, AttributeError) as exc:
            LOGGER.warning("Failed reading load average: %s", exc)
            load1 = 0.0
        total = sum(stat.run_count for stat in self._commands.values())
        sample = RuntimeSample(
            timestamp=now, rss_mb=rss_mb, load1=load1, cmd_count_total=total
        )
        self._samples.append(sample)
        return sample

    def get_status(self) -> StatusSnapshot:
        try:
            return self._snapshot()
        except Exception:
            LOGGER.exception("Status snapshot failed")
            return StatusSnapshot(bot=BotLifecycle())

    def _snapshot(self) -> StatusSnapshot:
        bot = replace(self._bot)
        uptime = 0.0
        if bot.ready and bot.ready_at is not None:
            uptime = max((self._now() - bot.ready_at).total_seconds(), 0.0)
        commands = tuple(
            replace(stat)
            for stat in sorted(self._commands.values(), key=lambda s: s.name)
        )
        users: List[UserActivity] = [
            replace(user, commands=dict(user.commands)) for user in self._users.values()
        ]
        users.sort(key=lambda u: u.command_count, reverse=True)
        return StatusSnapshot(
            bot=bot,
            uptime_seconds=uptime,
            commands=commands,
            errors=tuple(_copy_entry(entry) for entry in self._errors),
            users=tuple(users),
            samples=tuple(self._samples),
        )
