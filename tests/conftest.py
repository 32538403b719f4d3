"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import re
from collections.abc import Sequence

import pytest

from unmsctl.errors import CommandError
from unmsctl.providers.compose import CommandResult

ALL_SERVICES = ["unms", "redis", "postgres", "nginx"]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeEngine:
    """In-memory stand-in for :class:`unmsctl.providers.ComposeProvider`.

    Serves ``redis-cli`` GET/SET from a dict, records ``psql`` statements and
    keeps the list of running services in sync with ``up``/``down``.
    """

    def __init__(self, running: Sequence[str] = ()) -> None:
        """Start with *running* services."""
        self.running = list(running)
        self.redis: dict[str, str] = {}
        self.statements: list[str] = []
        self.calls: list[tuple[object, ...]] = []
        self.failures: dict[str, CommandError] = {}
        self.outputs: dict[str, str] = {}

    # Capability interface -------------------------------------------
    def ps(self) -> list[str]:
        self.calls.append(("ps",))
        return list(self.running)

    def up(self) -> CommandResult:
        self.calls.append(("up",))
        self._maybe_fail("up")
        self.running = list(ALL_SERVICES)
        return CommandResult("", 0)

    def down(self, *, remove_orphans: bool = False) -> CommandResult:
        self.calls.append(("down", remove_orphans))
        self._maybe_fail("down")
        self.running = []
        return CommandResult("", 0)

    def exec(
        self,
        service: str,
        command: str,
        args: Sequence[str] = (),
        *,
        input_text: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        args = list(args)
        self.calls.append(("exec", service, command, tuple(args), input_text))
        self._maybe_fail(command)
        if command == "redis-cli":
            return self._redis(args, input_text)
        if command == "psql":
            statement = args[args.index("-c") + 1]
            self.statements.append(statement)
            count = len(re.findall(r"'[^']*'", statement))
            return CommandResult(f"DELETE {count}\n", 0)
        return CommandResult(self.outputs.get(command, ""), 0)

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
        self.calls.append(("run", service, command, tuple(args), ephemeral, input_text))
        self._maybe_fail(command)
        return CommandResult(self.outputs.get(command, ""), 0)

    # Helpers ---------------------------------------------------------
    def commands(self, kind: str) -> list[tuple[object, ...]]:
        """Return recorded calls of *kind* (``exec``, ``run``, ``up`` ...)."""
        return [call for call in self.calls if call[0] == kind]

    def _maybe_fail(self, key: str) -> None:
        error = self.failures.get(key)
        if error is not None:
            raise error

    def _redis(self, args: list[str], input_text: str | None) -> CommandResult:
        if args[:2] == ["--raw", "GET"]:
            return CommandResult(self.redis.get(args[2], "") + "\r\n", 0)
        if args[:2] == ["-x", "SET"]:
            self.redis[args[2]] = input_text or ""
            return CommandResult("OK\n", 0)
        if args == ["BGREWRITEAOF"]:
            return CommandResult("Background append only file rewriting started\n", 0)
        return CommandResult("", 0)


@pytest.fixture
def engine() -> FakeEngine:
    """Return an engine whose stack is running."""
    return FakeEngine(running=ALL_SERVICES)


@pytest.fixture
def stopped_engine() -> FakeEngine:
    """Return an engine whose stack is stopped."""
    return FakeEngine()
