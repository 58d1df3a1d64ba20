#!/usr/bin/env python3
"""
Coolify Patrol - automated image tag updates for Coolify applications

This script watches Docker-image based Coolify applications, looks up the
newest tag published in the image's registry and applies it when the
application's update policy (auto-patch, auto-minor, auto-all, notify-only)
and optional major-version pin allow it.
"""

__version__ = "1.0.0"

import argparse
import json
import logging
import os
import platform
import re
import signal
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import jsonschema
import requests
from croniter import croniter

from coolify_api import (
    ApplicationNotFound,
    CoolifyAPIError,
    CoolifyClient,
    build_image_reference,
    extract_image_and_tag,
)
from registry_api import RegistryClient, RegistryError
from update_policy import ConfigurationError, Policy, ReasonCode, decide, parse_pin
from versioning import TagSelectionError, parse_version, select_latest_tag

IS_WINDOWS = platform.system() == 'Windows'

# Constants
DEFAULT_CONFIG_PATHS = ("/config/patrol.json", "patrol.json")
DEFAULT_POLICY = Policy.AUTO_PATCH
DEFAULT_INTERVAL = "15m"
DEFAULT_COOLDOWN = "1h"
DEFAULT_UPDATE_DELAY = "30s"
DEFAULT_EXCLUDE_PATTERNS = ["-alpha", "-beta", "-rc", "-dev", "-nightly"]
DEFAULT_PORT = 8080
DEFAULT_SHUTDOWN_TIMEOUT = 30
MAX_IDLE_WAIT = 60
UNVERSIONED_ALIAS = "latest"

POLICY_VALUES = [p.value for p in Policy]

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "coolify": {
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "token": {"type": "string"}
            }
        },
        "defaults": {
            "type": "object",
            "properties": {
                "policy": {"type": "string", "enum": POLICY_VALUES},
                "interval": {"type": "string"},
                "schedule": {"type": "string"},
                "cooldown": {"type": "string"},
                "update_delay": {"type": "string"},
                "exclude_patterns": {
                    "type": "array",
                    "items": {"type": "string", "minLength": 1}
                }
            },
            "additionalProperties": False
        },
        "apps": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "uuid": {"type": "string", "minLength": 1},
                    "image": {"type": "string", "minLength": 1},
                    "policy": {"type": "string", "enum": POLICY_VALUES},
                    "pin": {"type": ["integer", "string"]}
                },
                "required": ["name", "uuid", "image"]
            }
        }
    }
}

ENV_VAR_REGEX = re.compile(r"\$\{([^}]+)\}")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}

logger = logging.getLogger('patrol')


# ── Durations ─────────────────────────────────────────────────────

def parse_duration(value: Any) -> float:
    """Parse '1h30m', '15m', '30s', '500ms' (or a number of seconds) into seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value < 0:
            raise ConfigurationError(f"invalid duration '{value}': must not be negative")
        return float(value)

    text = str(value or "").strip()
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if not text or pos != len(text):
        raise ConfigurationError(
            f"invalid duration '{value}' (expected e.g. 30s, 15m, 1h30m)"
        )
    return total


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)


# ── Scheduling ────────────────────────────────────────────────────

@dataclass(frozen=True)
class IntervalSchedule:
    """Fixed interval; the first cycle runs immediately."""
    seconds: float

    def __post_init__(self):
        if self.seconds <= 0:
            raise ConfigurationError("check interval must be greater than zero")

    def describe(self) -> str:
        return f"every {format_duration(self.seconds)}"

    def next_run(self, last_start: Optional[datetime], now: datetime) -> datetime:
        if last_start is None:
            return now
        return last_start + timedelta(seconds=self.seconds)


@dataclass(frozen=True)
class CronSchedule:
    """Five-field cron expression (minute hour day-of-month month day-of-week)."""
    expression: str

    def __post_init__(self):
        fields = self.expression.split()
        if len(fields) != 5 or not croniter.is_valid(self.expression):
            raise ConfigurationError(
                f"invalid cron schedule '{self.expression}' "
                f"(expected 5 fields: minute hour day-of-month month day-of-week)"
            )

    def describe(self) -> str:
        return f"cron: {self.expression}"

    def next_run(self, last_start: Optional[datetime], now: datetime) -> datetime:
        return croniter(self.expression, now).get_next(datetime)


Schedule = Union[IntervalSchedule, CronSchedule]


def resolve_schedule(interval: Optional[str], schedule: Optional[str]) -> Schedule:
    """Pick the single active scheduling source; a cron schedule always wins."""
    if schedule and schedule.strip():
        return CronSchedule(schedule.strip())
    return IntervalSchedule(parse_duration(interval or DEFAULT_INTERVAL))


# ── Configuration ─────────────────────────────────────────────────

@dataclass
class AppConfig:
    """A single application to watch."""
    name: str
    uuid: str
    image: str
    policy: Optional[Policy] = None
    pin: Optional[int] = None


@dataclass
class PatrolConfig:
    coolify_url: str
    coolify_token: str
    schedule: Schedule
    policy: Policy = DEFAULT_POLICY
    cooldown: float = 3600.0
    update_delay: float = 30.0
    exclude_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    apps: List[AppConfig] = field(default_factory=list)

    def effective_policy(self, app: AppConfig) -> Policy:
        return app.policy or self.policy


def _build_app(raw: Mapping[str, Any]) -> AppConfig:
    name = str(raw.get('name') or '').strip()
    uuid = str(raw.get('uuid') or '').strip()
    image = str(raw.get('image') or '').strip()
    for key, value in (('name', name), ('uuid', uuid), ('image', image)):
        if not value:
            raise ConfigurationError(f"app {key} cannot be empty: {dict(raw)}")

    policy = raw.get('policy')
    return AppConfig(
        name=name,
        uuid=uuid,
        image=image,
        policy=Policy.parse(policy) if policy else None,
        pin=parse_pin(raw.get('pin')),
    )


def parse_compact_apps(text: str) -> List[Dict[str, str]]:
    """
    Parse the compact app format used by PATROL_APPS.

    Format: "name:uuid:image[:policy[:pin]]" separated by semicolons, e.g.
    "n8n:abc-123:n8nio/n8n;postgres:def-456:postgres:auto-patch:17"
    """
    apps = []
    for spec in text.split(';'):
        spec = spec.strip()
        if not spec:
            continue

        parts = [p.strip() for p in spec.split(':')]
        if len(parts) < 3:
            raise ConfigurationError(f"app spec '{spec}' must have at least name:uuid:image")
        if len(parts) > 5:
            raise ConfigurationError(
                f"app spec '{spec}' has too many fields (name:uuid:image[:policy[:pin]])"
            )

        app = {'name': parts[0], 'uuid': parts[1], 'image': parts[2]}
        if len(parts) > 3 and parts[3]:
            app['policy'] = parts[3]
        if len(parts) > 4 and parts[4]:
            app['pin'] = parts[4]
        apps.append(app)
    return apps


def _expand_env(text: str, environ: Mapping[str, str]) -> str:
    """Substitute ${VAR} references; unknown variables are left unchanged."""
    def _sub(match: 're.Match') -> str:
        return environ.get(match.group(1)) or match.group(0)
    return ENV_VAR_REGEX.sub(_sub, text)


def _read_config_file(path: Path, environ: Mapping[str, str]) -> Dict[str, Any]:
    try:
        text = path.read_text()
    except FileNotFoundError:
        raise ConfigurationError(f"Config file {path} not found") from None
    except OSError as e:
        raise ConfigurationError(f"Could not read config file {path}: {e}") from e

    try:
        raw = json.loads(_expand_env(text, environ))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Error parsing config file {path}: {e}") from e

    try:
        jsonschema.validate(raw, CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"Configuration validation failed at {location}: {e.message}") from e
    return raw


def _apply_env_overrides(raw: Dict[str, Any], environ: Mapping[str, str]) -> None:
    coolify = raw.setdefault('coolify', {})
    defaults = raw.setdefault('defaults', {})

    if environ.get('COOLIFY_URL'):
        coolify['url'] = environ['COOLIFY_URL']
    if environ.get('COOLIFY_TOKEN'):
        coolify['token'] = environ['COOLIFY_TOKEN']

    for env_name, key in (('PATROL_SCHEDULE', 'schedule'),
                          ('PATROL_INTERVAL', 'interval'),
                          ('PATROL_POLICY', 'policy'),
                          ('PATROL_COOLDOWN', 'cooldown'),
                          ('PATROL_UPDATE_DELAY', 'update_delay')):
        if environ.get(env_name):
            defaults[key] = environ[env_name].strip()

    if environ.get('PATROL_EXCLUDE_PATTERNS'):
        defaults['exclude_patterns'] = [
            p.strip() for p in environ['PATROL_EXCLUDE_PATTERNS'].split(',') if p.strip()
        ]

    if environ.get('PATROL_APPS'):
        raw['apps'] = parse_compact_apps(environ['PATROL_APPS'])
    elif environ.get('PATROL_AUTO_DISCOVER', '').lower() == 'true':
        raw['apps'] = []


def build_config(raw: Mapping[str, Any]) -> PatrolConfig:
    """Validate a merged raw configuration and build a PatrolConfig."""
    coolify = raw.get('coolify') or {}
    defaults = raw.get('defaults') or {}

    url = (coolify.get('url') or '').strip()
    token = (coolify.get('token') or '').strip()
    if not url:
        raise ConfigurationError("COOLIFY_URL is required")
    if not token:
        raise ConfigurationError("COOLIFY_TOKEN is required")

    patterns = defaults.get('exclude_patterns')
    return PatrolConfig(
        coolify_url=url,
        coolify_token=token,
        schedule=resolve_schedule(defaults.get('interval'), defaults.get('schedule')),
        policy=Policy.parse(defaults.get('policy') or DEFAULT_POLICY),
        cooldown=parse_duration(defaults.get('cooldown') or DEFAULT_COOLDOWN),
        update_delay=parse_duration(defaults.get('update_delay') or DEFAULT_UPDATE_DELAY),
        exclude_patterns=list(patterns) if patterns else list(DEFAULT_EXCLUDE_PATTERNS),
        apps=[_build_app(app) for app in raw.get('apps') or []],
    )


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None,
                interval: Optional[str] = None, schedule: Optional[str] = None) -> PatrolConfig:
    """
    Load configuration from an optional JSON file plus environment variables.

    Environment variables take precedence over the file; *interval* and
    *schedule* (command line overrides) take precedence over both, and
    setting either one clears the other.

    Raises:
        ConfigurationError: Anything invalid; the process must not start
    """
    environ = os.environ if environ is None else environ

    raw: Dict[str, Any] = _read_config_file(Path(path), environ) if path else {}
    _apply_env_overrides(raw, environ)

    defaults = raw.setdefault('defaults', {})
    if schedule:
        defaults['schedule'] = schedule
        defaults.pop('interval', None)
    elif interval:
        defaults['interval'] = interval
        defaults.pop('schedule', None)

    return build_config(raw)


# ── Watch state ───────────────────────────────────────────────────

class WatcherState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    CRASHED = "crashed"


class CheckOutcome(str, Enum):
    UPDATED = "updated"
    WOULD_UPDATE = "would-update"
    DENIED = "denied"
    COOLDOWN = "cooldown"
    NOT_FOUND = "not-found"
    FAILED = "failed"


class DeploymentUpdateFailed(Exception):
    """Applying the new image or restarting the application failed."""


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class AppWatchState:
    """Last known state of a watched application."""
    name: str
    uuid: str
    image: str
    current_tag: Optional[str]
    latest_tag: Optional[str]
    policy: Policy
    pin: Optional[int]
    last_checked_at: Optional[datetime]
    last_updated_at: Optional[datetime] = None
    update_pending: bool = False
    outcome: Optional[CheckOutcome] = None
    reason: Optional[ReasonCode] = None
    error: Optional[str] = None

    def to_dict(self, next_check: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            'name': self.name,
            'uuid': self.uuid,
            'image': self.image,
            'current_tag': self.current_tag,
            'latest_tag': self.latest_tag,
            'policy': self.policy.value,
            'pin': self.pin,
            'update_pending': self.update_pending,
            'outcome': self.outcome.value if self.outcome else None,
            'reason': self.reason.value if self.reason else None,
            'error': self.error,
            'last_check': _iso(self.last_checked_at),
            'last_update': _iso(self.last_updated_at),
            'next_check': _iso(next_check),
        }


@dataclass(frozen=True)
class StatusSnapshot:
    """Immutable view of the watcher published after every cycle."""
    state: WatcherState
    dry_run: bool
    schedule: str
    checking: bool
    last_check: Optional[datetime]
    next_check: Optional[datetime]
    apps: Tuple[AppWatchState, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.state.value,
            'dry_run': self.dry_run,
            'schedule': self.schedule,
            'checking': self.checking,
            'last_check': _iso(self.last_check),
            'next_check': _iso(self.next_check),
            'apps': [app.to_dict(self.next_check) for app in self.apps],
        }


# ── Watcher ───────────────────────────────────────────────────────

class Watcher:
    def __init__(self, config: PatrolConfig, coolify: CoolifyClient, registry: RegistryClient,
                 dry_run: bool = False,
                 progress_callback: Optional[Callable[[str, Dict[str, Any]], None]] = None):
        """
        Initialize the watcher.

        Args:
            config: Validated configuration
            coolify: Deployment controller client
            registry: Registry tag source
            dry_run: If True, only log what would be updated
            progress_callback: Optional function(event_type, data) called for progress updates
        """
        self.config = config
        self.coolify = coolify
        self.registry = registry
        self.dry_run = dry_run
        self.progress_callback = progress_callback
        self.logger = logger

        self.state = WatcherState.STOPPED
        self._states: Dict[str, AppWatchState] = {}
        self._last_updates: Dict[str, datetime] = {}
        self._last_cycle_started: Optional[datetime] = None
        self._last_update_monotonic: Optional[float] = None
        self._checking = False
        self._check_requested = False
        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._snapshot = self._build_snapshot()

    # ── Lifecycle ─────────────────────────────────────────────────

    def run(self, once: bool = False) -> None:
        """Run check cycles until stop() is called (or a single cycle with once=True)."""
        self.logger.info(
            f"Starting watcher (dry_run={self.dry_run}, "
            f"schedule={self.config.schedule.describe()}, run_once={once})"
        )
        self.state = WatcherState.RUNNING
        self._publish()

        try:
            if once:
                self.check_applications()
            else:
                self._run_schedule()
        except Exception:
            self.state = WatcherState.CRASHED
            self.logger.exception("Watcher crashed")
            self._publish()
            raise

        self.state = WatcherState.STOPPED
        self.logger.info("Watcher stopped")
        self._publish()

    def _run_schedule(self) -> None:
        """Idle until the schedule (or a manual request) fires, then check."""
        schedule = self.config.schedule
        next_run = schedule.next_run(None, self._now())
        while not self._stop_event.is_set():
            timeout = (next_run - self._now()).total_seconds()
            if timeout > 0 and not self._check_requested:
                self._wakeup.wait(min(timeout, MAX_IDLE_WAIT))
            self._wakeup.clear()
            if self._stop_event.is_set():
                break

            manual = self._check_requested
            self._check_requested = False
            if manual or self._now() >= next_run:
                if manual:
                    self.logger.info("Manual check requested")
                self.check_applications()
                next_run = schedule.next_run(self._last_cycle_started, self._now())
                self.logger.info(f"Next check at {next_run.isoformat()}")

    def stop(self) -> None:
        """Stop scheduling new cycles; an in-flight application check finishes first."""
        self._stop_event.set()
        self._wakeup.set()

    def request_check(self) -> bool:
        """Ask the running loop for an immediate cycle. Returns False if one is running."""
        if self._checking:
            return False
        self._check_requested = True
        self._wakeup.set()
        return True

    @property
    def is_checking(self) -> bool:
        return self._checking

    def get_status(self) -> StatusSnapshot:
        """Latest published snapshot; safe to call from any thread."""
        return self._snapshot

    # ── Check cycle ───────────────────────────────────────────────

    def check_applications(self) -> None:
        """Run one check cycle over every watched application, sequentially."""
        started = self._now()
        self._last_cycle_started = started
        self._last_update_monotonic = None
        self._checking = True
        self._publish()
        self.logger.info("Starting check cycle")
        self._emit('cycle_started', {'timestamp': started.isoformat()})

        try:
            try:
                apps = self._resolve_applications()
            except CoolifyAPIError as e:
                self.logger.error(f"Could not list applications for auto-discovery: {e}")
                self._emit('check_error', {'error': str(e)})
                return

            self.logger.info(f"Found {len(apps)} application(s) to check")
            for idx, app in enumerate(apps, 1):
                if self._stop_event.is_set():
                    self.logger.info(
                        f"Shutdown requested, skipping {len(apps) - idx + 1} remaining application(s)"
                    )
                    break

                self._emit('checking_app', {
                    'app': app.name, 'uuid': app.uuid, 'progress': idx, 'total': len(apps)
                })
                try:
                    self.check_and_update_app(app)
                except ApplicationNotFound as e:
                    self.logger.warning(f"Application not found app={app.name} uuid={app.uuid}: {e}")
                    self._record_failure(app, CheckOutcome.NOT_FOUND, e)
                except (CoolifyAPIError, RegistryError, TagSelectionError,
                        DeploymentUpdateFailed, ConfigurationError) as e:
                    self.logger.error(f"Failed to check application app={app.name} uuid={app.uuid}: {e}")
                    self._record_failure(app, CheckOutcome.FAILED, e)
                except Exception as e:
                    self.logger.exception(
                        f"Unexpected error checking application app={app.name} uuid={app.uuid}"
                    )
                    self._record_failure(app, CheckOutcome.FAILED, e)
        finally:
            self._checking = False
            self._publish()
            duration = (self._now() - started).total_seconds()
            self.logger.info(f"Check cycle completed (duration={duration:.1f}s)")
            self._emit('cycle_complete', {
                'timestamp': self._now().isoformat(),
                'apps': [state.to_dict() for state in self._snapshot.apps],
            })

    def _resolve_applications(self) -> List[AppConfig]:
        """Configured apps, or every Coolify app with a non-'latest' image tag."""
        if self.config.apps:
            return list(self.config.apps)

        self.logger.info("No configured apps, using auto-discovery")
        apps = []
        for application in self.coolify.list_applications():
            image, tag = extract_image_and_tag(application.docker_image)
            if tag == UNVERSIONED_ALIAS:
                self.logger.warning(
                    f"Skipping app with '{UNVERSIONED_ALIAS}' tag "
                    f"app={application.name} image={application.docker_image or '<none>'}"
                )
                continue
            apps.append(AppConfig(name=application.name, uuid=application.uuid, image=image))

        self.logger.info(f"Auto-discovered {len(apps)} application(s)")
        return apps

    def check_and_update_app(self, app: AppConfig) -> AppWatchState:
        """
        Check a single application and apply an allowed update.

        Args:
            app: Application to check

        Returns:
            The recorded AppWatchState

        Raises:
            ApplicationNotFound, CoolifyAPIError, RegistryError,
            TagSelectionError, DeploymentUpdateFailed
        """
        policy = self.config.effective_policy(app)
        ctx = f"app={app.name} uuid={app.uuid}"

        current_tag = self.coolify.get_current_tag(app.uuid)
        now = self._now()
        previous = self._states.get(app.uuid)
        state = self._store(AppWatchState(
            name=app.name,
            uuid=app.uuid,
            image=app.image,
            current_tag=current_tag,
            latest_tag=previous.latest_tag if previous else None,
            policy=policy,
            pin=app.pin,
            last_checked_at=now,
            last_updated_at=previous.last_updated_at if previous else None,
            update_pending=previous.update_pending if previous else False,
        ))

        last_update = self._last_updates.get(app.uuid)
        if last_update is not None and (now - last_update).total_seconds() < self.config.cooldown:
            self.logger.info(
                f"App in cooldown period, skipping {ctx} last_update={last_update.isoformat()}"
            )
            return self._store(replace(state, outcome=CheckOutcome.COOLDOWN))

        tags = self.registry.list_tags(app.image)
        latest_tag = select_latest_tag(tags, self.config.exclude_patterns)
        decision = decide(current_tag, latest_tag, policy, app.pin)

        state = self._store(replace(
            state,
            latest_tag=latest_tag,
            reason=decision.reason,
            update_pending=decision.allowed,
            outcome=None if decision.allowed else CheckOutcome.DENIED,
        ))
        self.logger.info(
            f"Version check completed {ctx} image={app.image} current_tag={current_tag} "
            f"latest_tag={latest_tag} policy={policy.value} "
            f"update_allowed={decision.allowed} reason={decision.reason.value}"
        )

        if not decision.allowed:
            self._emit('no_update', {
                'app': app.name, 'uuid': app.uuid, 'current_tag': current_tag,
                'latest_tag': latest_tag, 'reason': decision.reason.value,
            })
            return state

        update_info = {
            'app': app.name, 'uuid': app.uuid, 'old_tag': current_tag,
            'new_tag': latest_tag, 'reason': decision.reason.value,
        }
        self._emit('update_available', update_info)

        if self.dry_run:
            self.logger.info(
                f"[DRY RUN] Would update application {ctx} from_tag={current_tag} to_tag={latest_tag}"
            )
            return self._store(replace(state, outcome=CheckOutcome.WOULD_UPDATE))

        if not self._pace_update():
            self.logger.info(f"Shutdown requested, not updating {ctx}")
            return state

        try:
            self.perform_update(app, latest_tag)
        finally:
            self._last_update_monotonic = time.monotonic()

        updated_at = self._now()
        self._last_updates[app.uuid] = updated_at
        self._emit('update_applied', update_info)
        return self._store(replace(
            state,
            current_tag=latest_tag,
            last_updated_at=updated_at,
            update_pending=False,
            outcome=CheckOutcome.UPDATED,
        ))

    def perform_update(self, app: AppConfig, new_tag: str) -> None:
        """Point the application at the new tag, then restart it.

        Raises:
            DeploymentUpdateFailed: Either call failed; nothing is recorded as updated
        """
        new_image = build_image_reference(app.image, new_tag)
        self.logger.info(f"Updating application app={app.name} uuid={app.uuid} new_image={new_image}")

        try:
            self.coolify.update_application(app.uuid, new_image)
        except CoolifyAPIError as e:
            raise DeploymentUpdateFailed(f"updating application config: {e}") from e

        try:
            self.coolify.restart_application(app.uuid)
        except CoolifyAPIError as e:
            raise DeploymentUpdateFailed(f"restarting application: {e}") from e

        self.logger.info(
            f"Application updated successfully app={app.name} new_image={new_image} "
            f"restart_triggered=True"
        )

    def _pace_update(self) -> bool:
        """Keep update_delay between updates within a cycle. False if stopped while waiting."""
        if self._last_update_monotonic is None:
            return True

        remaining = self.config.update_delay - (time.monotonic() - self._last_update_monotonic)
        if remaining > 0:
            self.logger.info(f"Waiting {remaining:.0f}s before next update")
            if self._stop_event.wait(remaining):
                return False
        return True

    # ── State helpers ─────────────────────────────────────────────

    def _store(self, state: AppWatchState) -> AppWatchState:
        self._states[state.uuid] = state
        return state

    def _record_failure(self, app: AppConfig, outcome: CheckOutcome, error: Exception) -> None:
        """Mark the failure on the app's entry, keeping everything already known."""
        previous = self._states.get(app.uuid)
        if previous is None:
            previous = AppWatchState(
                name=app.name,
                uuid=app.uuid,
                image=app.image,
                current_tag=None,
                latest_tag=None,
                policy=self.config.effective_policy(app),
                pin=app.pin,
                last_checked_at=self._now(),
            )
        self._store(replace(previous, outcome=outcome, error=str(error)))
        self._emit('check_error', {'app': app.name, 'uuid': app.uuid, 'error': str(error)})

    def _next_check(self) -> Optional[datetime]:
        schedule = self.config.schedule
        if isinstance(schedule, IntervalSchedule) and self._last_cycle_started:
            return schedule.next_run(self._last_cycle_started, self._now())
        return None

    def _build_snapshot(self) -> StatusSnapshot:
        return StatusSnapshot(
            state=self.state,
            dry_run=self.dry_run,
            schedule=self.config.schedule.describe(),
            checking=self._checking,
            last_check=self._last_cycle_started,
            next_check=self._next_check(),
            apps=tuple(self._states.values()),
        )

    def _publish(self) -> None:
        # Readers only ever see a complete snapshot; the reference swap is atomic
        self._snapshot = self._build_snapshot()

    def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if not self.progress_callback:
            return
        try:
            self.progress_callback(event, data)
        except Exception as e:
            self.logger.debug(f"Progress callback failed for {event}: {e}")

    @staticmethod
    def _now() -> datetime:
        return datetime.now().astimezone()

    # ── Discovery ─────────────────────────────────────────────────

    def discover_apps(self):
        """All Coolify applications, unfiltered."""
        return self.coolify.list_applications()

    def generate_sample_config(self) -> Dict[str, Any]:
        """Build a config file body from the discovered applications."""
        apps = []
        for application in self.discover_apps():
            image, tag = extract_image_and_tag(application.docker_image)
            if tag == UNVERSIONED_ALIAS:
                continue

            app: Dict[str, Any] = {'name': application.name, 'uuid': application.uuid, 'image': image}
            # Databases should not jump major versions on their own
            if 'postgres' in image:
                version = parse_version(tag)
                if version is not None:
                    app['pin'] = version.major
            apps.append(app)

        return {
            'coolify': {'url': self.config.coolify_url, 'token': '${COOLIFY_TOKEN}'},
            'defaults': {
                'policy': Policy.AUTO_PATCH.value,
                'interval': DEFAULT_INTERVAL,
                'cooldown': DEFAULT_COOLDOWN,
                'exclude_patterns': list(DEFAULT_EXCLUDE_PATTERNS),
            },
            'apps': apps,
        }


# ── Logging ───────────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'time': self.formatTime(record, '%Y-%m-%dT%H:%M:%S%z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """Setup logging configuration."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    if not root.handlers:
        handler = logging.StreamHandler()
        if log_format == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(
                '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S %Z'
            ))
        root.addHandler(handler)

    # Per-request access logs drown out the check cycle output
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    return logger


# ── CLI ───────────────────────────────────────────────────────────

def _resolve_config_path(path: Optional[str]) -> Optional[str]:
    """Explicit path, else the first default that exists, else None (env-only)."""
    if path:
        return path
    for candidate in DEFAULT_CONFIG_PATHS:
        if Path(candidate).exists():
            return candidate
    return None


def _print_remote_status(port: int) -> int:
    try:
        response = requests.get(f"http://localhost:{port}/status", timeout=10)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Could not fetch status from running instance: {e}")
        return 1
    print(json.dumps(response.json(), indent=2))
    return 0


def main():
    parser = argparse.ArgumentParser(
        description='Automated Docker image updates for Coolify applications'
    )
    parser.add_argument(
        'command',
        nargs='?',
        choices=['run', 'check', 'status', 'discover'],
        default='run',
        help='run: watch continuously (default); check: one cycle and exit; '
             'status: print the status of a running instance; discover: print a sample config'
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('PATROL_CONFIG'),
        help='Path to configuration JSON file (env: PATROL_CONFIG, default: '
             '/config/patrol.json or ./patrol.json, else environment only)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=os.environ.get('PATROL_DRY_RUN', '').lower() == 'true',
        help='Log what would be updated without making changes (env: PATROL_DRY_RUN)'
    )
    parser.add_argument(
        '--once',
        action='store_true',
        help='Run one check cycle and exit'
    )
    parser.add_argument(
        '--interval',
        help='Override check interval, e.g. 5m, 1h'
    )
    parser.add_argument(
        '--schedule',
        help="Override cron schedule, e.g. '*/15 * * * *' (takes priority over --interval)"
    )
    parser.add_argument(
        '--port',
        type=int,
        default=int(os.environ.get('PATROL_PORT', DEFAULT_PORT)),
        help=f'HTTP status server port (env: PATROL_PORT, default: {DEFAULT_PORT})'
    )
    parser.add_argument(
        '--shutdown-timeout',
        type=float,
        default=DEFAULT_SHUTDOWN_TIMEOUT,
        help=f'Seconds to wait for an in-flight check on shutdown (default: {DEFAULT_SHUTDOWN_TIMEOUT})'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument(
        '--log-format',
        choices=['text', 'json'],
        default=os.environ.get('PATROL_LOG_FORMAT', 'text'),
        help='Log format (env: PATROL_LOG_FORMAT, default: text)'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    args = parser.parse_args()

    # Apply TZ from environment (default UTC) before any logging is configured
    os.environ.setdefault('TZ', 'UTC')
    if not IS_WINDOWS:
        time.tzset()

    setup_logging(args.log_level, args.log_format)

    if args.command == 'status':
        sys.exit(_print_remote_status(args.port))

    config_path = _resolve_config_path(args.config)
    try:
        config = load_config(config_path, interval=args.interval, schedule=args.schedule)
    except ConfigurationError as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    logger.info(
        f"Starting coolify-patrol {__version__} (config={config_path or '<environment>'}, "
        f"dry_run={args.dry_run})"
    )

    coolify = CoolifyClient(config.coolify_url, config.coolify_token)
    try:
        coolify.test_connection()
    except CoolifyAPIError as e:
        logger.error(f"Failed to connect to Coolify: {e}")
        sys.exit(1)

    watcher = Watcher(config, coolify, RegistryClient(), dry_run=args.dry_run)

    if args.command == 'discover':
        try:
            apps = watcher.discover_apps()
            sample = watcher.generate_sample_config()
        except CoolifyAPIError as e:
            logger.error(f"Failed to discover applications: {e}")
            sys.exit(1)
        print("# Discovered Coolify applications:")
        for application in apps:
            print(f"#  - {application.name} ({application.uuid}): {application.docker_image}")
        print(json.dumps(sample, indent=2))
        return

    if args.once or args.command == 'check':
        watcher.run(once=True)
        return

    import webui
    webui.init_app(watcher)
    threading.Thread(
        target=webui.serve, args=('0.0.0.0', args.port), name='patrol-webui', daemon=True
    ).start()

    worker = threading.Thread(target=watcher.run, name='patrol-watcher', daemon=True)
    shutdown = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down")
        watcher.stop()
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    worker.start()
    while worker.is_alive() and not shutdown.is_set():
        worker.join(timeout=1.0)

    if shutdown.is_set():
        worker.join(timeout=args.shutdown_timeout)
        if worker.is_alive():
            logger.warning(
                f"Check cycle still running after {args.shutdown_timeout:.0f}s, forcing exit"
            )
            sys.exit(1)

    if watcher.state is WatcherState.CRASHED:
        sys.exit(1)
    logger.info("Coolify patrol stopped")


if __name__ == '__main__':
    main()
