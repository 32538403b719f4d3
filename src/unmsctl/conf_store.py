"""Dual-home configuration entries.

A handful of settings (worker count, custom certificate, published ports) are
duplicated between the shell-sourceable ``unms.conf`` and the environment of
the compose descriptor. Reads only consult ``unms.conf``; writes go through
:meth:`ConfigStore.persist`, which stages a rewritten copy of both files and
only then renames them into place.
"""
from __future__ import annotations

import logging
import os
import re
import shlex
import stat
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from .errors import NotFoundError, WriteError

LOGGER = logging.getLogger(__name__)

_SHELL_ASSIGNMENT = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")


@dataclass(frozen=True)
class ConfigEntrySpec:
    """Where a named configuration entry lives in each home."""

    name: str
    conf_key: str
    compose_key: str


CONFIG_ENTRIES: dict[str, ConfigEntrySpec] = {
    spec.name: spec
    for spec in (
        ConfigEntrySpec("workers", "CLUSTER_SIZE", "CLUSTER_SIZE"),
        ConfigEntrySpec("ssl-cert", "SSL_CERT", "SSL_CERT"),
        ConfigEntrySpec("netflow-port", "NETFLOW_PORT", "NETFLOW_PORT"),
        ConfigEntrySpec("http-port", "HTTP_PORT", "HTTP_PORT"),
        ConfigEntrySpec("https-port", "HTTPS_PORT", "HTTPS_PORT"),
    )
}


def resolve_entry(name: str) -> ConfigEntrySpec:
    """Return the entry for *name*, accepting either entry names or conf keys."""
    spec = CONFIG_ENTRIES.get(name)
    if spec is not None:
        return spec
    for candidate in CONFIG_ENTRIES.values():
        if candidate.conf_key == name:
            return candidate
    known = ", ".join(sorted(CONFIG_ENTRIES))
    raise NotFoundError(f"Unknown configuration entry '{name}'. Known entries: {known}.")


@dataclass(frozen=True)
class UnmsConf:
    """Parsed snapshot of ``unms.conf``."""

    values: Mapping[str, str]

    @classmethod
    def parse(cls, text: str) -> UnmsConf:
        """Parse shell assignments from *text*; later assignments win."""
        values: dict[str, str] = {}
        for line in text.splitlines():
            match = _SHELL_ASSIGNMENT.match(line)
            if match is None:
                continue
            key, raw = match.groups()
            try:
                parts = shlex.split(raw, comments=True)
            except ValueError:
                parts = [raw.strip()]
            values[key] = " ".join(parts)
        return cls(values)

    def value(self, spec: ConfigEntrySpec) -> str | None:
        """Return the value stored for *spec*, if any."""
        return self.values.get(spec.conf_key)

    @property
    def workers(self) -> str | None:
        """Return the configured worker count (``auto`` or a number)."""
        return self.value(CONFIG_ENTRIES["workers"])

    @property
    def ssl_cert(self) -> str:
        """Return the custom certificate path, empty when unset."""
        return self.value(CONFIG_ENTRIES["ssl-cert"]) or ""


@dataclass(frozen=True)
class PersistResult:
    """Homes written by a successful :meth:`ConfigStore.persist`."""

    values: Mapping[str, str]
    homes: tuple[Path, ...]


class _SubstitutionError(ValueError):
    """Raised when a key is absent from a home."""


def _substitute_shell(text: str, key: str, value: str) -> str:
    pattern = re.compile(rf"^(\s*(?:export\s+)?){re.escape(key)}=.*$")
    lines = text.splitlines(keepends=True)
    replaced = 0
    for index, line in enumerate(lines):
        body = line.rstrip("\r\n")
        ending = line[len(body):]
        match = pattern.match(body)
        if match is None:
            continue
        lines[index] = f"{match.group(1)}{key}={shlex.quote(value)}{ending}"
        replaced += 1
    if not replaced:
        raise _SubstitutionError(f"{key} is not assigned")
    return "".join(lines)


def _substitute_descriptor(text: str, key: str, value: str) -> str:
    list_item = re.compile(rf"^(\s*-\s*)([\"']?){re.escape(key)}=.*?\2\s*$")
    mapping_item = re.compile(rf"^(\s*){re.escape(key)}:\s.*$|^(\s*){re.escape(key)}:$")
    lines = text.splitlines(keepends=True)
    replaced = 0
    for index, line in enumerate(lines):
        body = line.rstrip("\r\n")
        ending = line[len(body):]
        match = list_item.match(body)
        if match is not None:
            item = f"{key}={value}"
            quoted = match.group(2) or _needs_quotes(value)
            rendered = _double_quote(item) if quoted else item
            lines[index] = f"{match.group(1)}{rendered}{ending}"
            replaced += 1
            continue
        match = mapping_item.match(body)
        if match is not None:
            indent = match.group(1) if match.group(1) is not None else match.group(2)
            lines[index] = f"{indent}{key}: {_double_quote(value)}{ending}"
            replaced += 1
    if not replaced:
        raise _SubstitutionError(f"{key} is not set in any service environment")
    return "".join(lines)


def _needs_quotes(value: str) -> bool:
    return value == "" or any(char in value for char in ":#'\"{}[],&*!|>%@`") or value != value.strip()


def _double_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def descriptor_values(document: object, key: str) -> list[str]:
    """Return every value *key* takes in the services' environments."""
    found: list[str] = []
    if not isinstance(document, Mapping):
        return found
    services = document.get("services")
    if not isinstance(services, Mapping):
        return found
    for service in services.values():
        if not isinstance(service, Mapping):
            continue
        environment = service.get("environment")
        if isinstance(environment, Mapping):
            if key in environment:
                raw = environment[key]
                found.append("" if raw is None else str(raw))
        elif isinstance(environment, list):
            for item in environment:
                text = str(item)
                name, sep, item_value = text.partition("=")
                if sep and name == key:
                    found.append(item_value)
    return found


class ConfigStore:
    """Read and write configuration entries across both homes."""

    def __init__(self, conf_file: Path, compose_file: Path) -> None:
        """Bind the store to the shell config file and compose descriptor."""
        self.conf_file = conf_file
        self.compose_file = compose_file

    def load(self) -> UnmsConf:
        """Return the parsed shell config file."""
        try:
            text = self.conf_file.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotFoundError(f"Configuration file {self.conf_file} does not exist.") from exc
        return UnmsConf.parse(text)

    def get(self, name: str) -> str:
        """Return the value of entry *name* as stored in ``unms.conf``."""
        spec = resolve_entry(name)
        value = self.load().value(spec)
        if value is None:
            raise NotFoundError(f"{spec.conf_key} is not set in {self.conf_file}.")
        return value

    def set(self, name: str, value: str) -> PersistResult:
        """Write *value* for entry *name* into both homes."""
        return self.persist({name: value})

    def persist(self, updates: Mapping[str, str]) -> PersistResult:
        """Rewrite both homes with *updates*.

        Both files are staged next to their targets before either is replaced.
        A failure while staging leaves both homes untouched; a failure while
        renaming reports which home failed and which was already written.
        """
        resolved = {resolve_entry(name): str(value) for name, value in updates.items()}
        homes = (
            (self.conf_file, self._render_conf),
            (self.compose_file, self._render_descriptor),
        )
        staged: list[tuple[Path, Path]] = []
        try:
            for path, render in homes:
                try:
                    original = path.read_text(encoding="utf-8")
                    rendered = render(original, resolved)
                    staged.append((path, self._stage(path, rendered)))
                except (OSError, ValueError, yaml.YAMLError) as exc:
                    raise WriteError(
                        f"Failed to update {path.name} ({path}): {exc}. No files were changed.",
                        failed=path.name,
                    ) from exc

            committed: list[str] = []
            for path, tmp_path in staged:
                try:
                    os.replace(tmp_path, path)
                except OSError as exc:
                    written = ", ".join(committed) or "none"
                    raise WriteError(
                        f"Failed to replace {path} ({exc}). Already written: {written}.",
                        failed=path.name,
                        committed=tuple(committed),
                    ) from exc
                committed.append(path.name)
                LOGGER.debug("Committed %s", path)
        finally:
            for _path, tmp_path in staged:
                tmp_path.unlink(missing_ok=True)

        return PersistResult(
            values={spec.name: value for spec, value in resolved.items()},
            homes=tuple(path for path, _render in homes),
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _render_conf(text: str, updates: Mapping[ConfigEntrySpec, str]) -> str:
        for spec, value in updates.items():
            text = _substitute_shell(text, spec.conf_key, value)
        return text

    @staticmethod
    def _render_descriptor(text: str, updates: Mapping[ConfigEntrySpec, str]) -> str:
        for spec, value in updates.items():
            text = _substitute_descriptor(text, spec.compose_key, value)
        document = yaml.safe_load(text)
        for spec, value in updates.items():
            values = descriptor_values(document, spec.compose_key)
            if not values or any(found != value for found in values):
                raise ValueError(
                    f"{spec.compose_key} did not resolve to {value!r} after rewriting"
                )
        return text

    @staticmethod
    def _stage(path: Path, content: str) -> Path:
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, stat.S_IMODE(path.stat().st_mode))
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path


__all__ = [
    "CONFIG_ENTRIES",
    "ConfigEntrySpec",
    "ConfigStore",
    "PersistResult",
    "UnmsConf",
    "descriptor_values",
    "resolve_entry",
]
