"""Compose provider: the orchestration engine capability interface."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import CommandError, ProbeError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Output of a command executed through the engine."""

    stdout: str
    returncode: int
    stderr: str = ""


@dataclass(slots=True)
class ComposeProvider:
    """Drive the stack through ``docker compose`` (or ``docker-compose``)."""

    compose_file: Path
    project: str = "unms"
    command: Sequence[str] = field(default=("docker", "compose"))

    def up(self) -> CommandResult:
        """Create and start every service in the background."""
        return self._compose(["up", "-d"], error_prefix="compose up")

    def down(self, *, remove_orphans: bool = False) -> CommandResult:
        """Stop and remove the stack's containers and networks."""
        args = ["down"]
        if remove_orphans:
            args.append("--remove-orphans")
        return self._compose(args, error_prefix="compose down")

    def ps(self) -> list[str]:
        """Return the names of services that are currently running."""
        try:
            result = self._compose(
                ["ps", "--services", "--filter", "status=running"],
                error_prefix="compose ps",
            )
        except CommandError as exc:
            raise ProbeError(
                f"Unable to query the orchestration engine: {exc}",
                remediation="Check that the docker daemon is running: systemctl status docker",
            ) from exc
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def exec(
        self,
        service: str,
        command: str,
        args: Sequence[str] = (),
        *,
        input_text: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run *command* inside the running *service* container."""
        return self._compose(
            ["exec", "-T", service, command, *args],
            error_prefix=f"exec {service} {command}",
            input_text=input_text,
            check=check,
        )

    def run(
        self,
        service: str,
        command: str,
        args: Sequence[str] = (),
        *,
        ephemeral: bool = True,
        input_text: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run *command* in a one-off container built from *service*."""
        compose_args = ["run", "-T"]
        if ephemeral:
            compose_args.append("--rm")
        compose_args.extend([service, command, *args])
        return self._compose(
            compose_args,
            error_prefix=f"run {service} {command}",
            input_text=input_text,
            check=check,
        )

    # ------------------------------------------------------------------
    def base_command(self) -> list[str]:
        """Return the engine invocation prefix shared by every call."""
        return [*self.command, "-p", self.project, "-f", str(self.compose_file)]

    def _compose(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        input_text: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        argv = [*self.base_command(), *args]
        LOGGER.debug("Running %s", " ".join(argv))
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
                cwd=str(self.compose_file.parent),
            )
        except FileNotFoundError as exc:
            raise ProbeError(
                f"{argv[0]} not found: {exc}",
                remediation="Install docker and the compose plugin first.",
            ) from exc
        result = CommandResult(
            stdout=completed.stdout or "",
            returncode=completed.returncode,
            stderr=completed.stderr or "",
        )
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "no output"
            raise CommandError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
            )
        return result


__all__ = ["CommandResult", "ComposeProvider"]
