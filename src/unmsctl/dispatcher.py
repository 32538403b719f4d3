"""Maintenance command router.

Each command checks the stack state it needs before touching anything, then
delegates to the component that owns the data. Commands that change the
configuration of running containers never restart the stack themselves; they
report that a restart is required and leave it to the operator.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from .backups import BackupRetentionSweeper, SweepReport
from .certificates import CertificateRefresher
from .conf_store import ConfigStore
from .config import RedisConfig, ServicesConfig
from .errors import PreconditionError, ValidationError
from .providers.compose import ComposeProvider
from .settings import TRANSMISSION_PROFILE_FIELD, SettingsBlobStore
from .stack import RuntimeStateProbe, StackState

LOGGER = logging.getLogger(__name__)

CLI_NAME = "unmsctl"
MIN_WORKERS = 1
MAX_WORKERS = 8
AUTO_WORKERS = "auto"
RESTART_REMINDER = f"Restart UNMS to apply the changes: {CLI_NAME} restart"


@dataclass(frozen=True)
class CommandOutcome:
    """What a maintenance command did."""

    message: str
    changed: int = 0
    restart_required: bool = False
    details: Mapping[str, object] = field(default_factory=dict)


def parse_worker_count(value: str) -> str:
    """Return the normalised worker count or raise :class:`ValidationError`."""
    text = str(value).strip().lower()
    if text == AUTO_WORKERS:
        return AUTO_WORKERS
    try:
        count = int(text, 10)
    except ValueError:
        count = None
    if count is None or not MIN_WORKERS <= count <= MAX_WORKERS:
        raise ValidationError(
            f"Invalid worker count {value!r}: expected an integer between "
            f"{MIN_WORKERS} and {MAX_WORKERS}, or '{AUTO_WORKERS}'."
        )
    return str(count)


class MaintenanceDispatcher:
    """Validate preconditions and run maintenance commands."""

    def __init__(
        self,
        engine: ComposeProvider,
        probe: RuntimeStateProbe,
        config_store: ConfigStore,
        settings: SettingsBlobStore,
        refresher: CertificateRefresher,
        sweeper: BackupRetentionSweeper,
        *,
        services: ServicesConfig | None = None,
        redis: RedisConfig | None = None,
    ) -> None:
        """Wire the dispatcher to the components it routes to."""
        self.engine = engine
        self.probe = probe
        self.config_store = config_store
        self.settings = settings
        self.refresher = refresher
        self.sweeper = sweeper
        self.services = services or ServicesConfig()
        self.redis = redis or RedisConfig()

    # Lifecycle -------------------------------------------------------
    def status(self) -> tuple[StackState, list[str]]:
        """Return the stack state and the running services."""
        return self.probe.snapshot()

    def start(self) -> CommandOutcome:
        """Start the stack unless it is already running."""
        if self.probe.is_running():
            return CommandOutcome("UNMS is already running.")
        self._start_stack()
        return CommandOutcome("UNMS started.", changed=1)

    def stop(self) -> CommandOutcome:
        """Stop the stack if it is running."""
        if not self.probe.is_running():
            return CommandOutcome("UNMS is not running.")
        self.engine.down()
        return CommandOutcome("UNMS stopped.", changed=1)

    def restart(self) -> CommandOutcome:
        """Stop the stack when running, then start it."""
        if self.probe.is_running():
            self.engine.down()
        self._start_stack()
        return CommandOutcome("UNMS restarted.", changed=1)

    # Redis append-only file ----------------------------------------------
    def fix_redis_aof(self) -> CommandOutcome:
        """Repair the redis append-only file; the stack must be stopped."""
        self._require(StackState.STOPPED)
        result = self.engine.run(
            self.services.redis,
            "redis-check-aof",
            ["--fix", self.redis.aof_path],
            ephemeral=True,
            input_text="y\n",
        )
        return CommandOutcome(
            "Redis append-only file repaired.",
            changed=1,
            details={"output": result.stdout.strip()},
        )

    def rewrite_redis_aof(self) -> CommandOutcome:
        """Ask redis to compact its append-only file."""
        self._require(StackState.RUNNING)
        result = self.engine.exec(self.services.redis, "redis-cli", ["BGREWRITEAOF"])
        return CommandOutcome(
            "Redis append-only file rewrite started.",
            changed=1,
            details={"output": result.stdout.strip()},
        )

    # Settings and certificates -----------------------------------------
    def refresh_certificate(self) -> CommandOutcome:
        """Refresh the proxy certificate."""
        self._require(StackState.RUNNING)
        result = self.refresher.refresh()
        return CommandOutcome(
            f"Certificate for {result.hostname} refreshed ({result.strategy.value}).",
            changed=1,
            details={
                "strategy": result.strategy.value,
                "hostname": result.hostname,
                "output": result.output,
            },
        )

    def reduce_device_update_frequency(self) -> CommandOutcome:
        """Switch the device transmission profile to ``auto``."""
        self._require(StackState.RUNNING)
        self.settings.patch_field(TRANSMISSION_PROFILE_FIELD, "auto")
        return CommandOutcome(
            "Device update frequency set to 'auto'.",
            changed=1,
            restart_required=True,
        )

    # Backups and workers -----------------------------------------------
    def clear_device_backups(self, *, dry_run: bool = False) -> SweepReport:
        """Apply the backup retention policy."""
        self._require(StackState.RUNNING)
        return self.sweeper.sweep(dry_run=dry_run)

    def set_workers(self, count: str) -> CommandOutcome:
        """Validate *count* and write it to both configuration homes."""
        workers = parse_worker_count(count)
        result = self.config_store.set("workers", workers)
        return CommandOutcome(
            f"Worker count set to {workers}.",
            changed=len(result.homes),
            restart_required=True,
            details={"workers": workers, "files": [str(path) for path in result.homes]},
        )

    # ------------------------------------------------------------------
    def _start_stack(self) -> None:
        # Clears networks and orphans left behind by an unclean shutdown.
        self.engine.down(remove_orphans=True)
        self.engine.up()

    def _require(self, expected: StackState) -> None:
        state = self.probe.state()
        if state is expected:
            return
        if expected is StackState.RUNNING:
            raise PreconditionError(
                f"UNMS is not running. Start it first: {CLI_NAME} start",
                remediation=f"{CLI_NAME} start",
            )
        raise PreconditionError(
            f"UNMS is running. Stop it first: {CLI_NAME} stop",
            remediation=f"{CLI_NAME} stop",
        )


__all__ = [
    "AUTO_WORKERS",
    "CommandOutcome",
    "MaintenanceDispatcher",
    "RESTART_REMINDER",
    "parse_worker_count",
]
