"""Accessor for the application settings document held in redis.

The document lives as one serialised JSON string under a fixed key (``nms:nms``
by default). Mutations are read-modify-write on the whole document: it is
parsed, one field is replaced, and the result is serialised back with every
other field (including ones this tool does not know about) passed through
in order.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import CommandError, NotFoundError, ParseError
from .providers.compose import CommandResult

LOGGER = logging.getLogger(__name__)

HOSTNAME_FIELD = "hostname"
LETS_ENCRYPT_FIELD = "useLetsEncrypt"
TRANSMISSION_PROFILE_FIELD = "deviceTransmissionProfile"


class ContainerExecutor(Protocol):
    """Subset of the compose provider needed to reach containers."""

    def exec(
        self,
        service: str,
        command: str,
        args: Sequence[str] = (),
        *,
        input_text: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run *command* inside *service*."""
        ...


@dataclass
class SettingsDocument:
    """Parsed settings document with typed accessors for known fields."""

    fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: str) -> SettingsDocument:
        """Parse *raw* JSON into a document."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Settings document is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ParseError("Settings document must be a JSON object.")
        return cls(data)

    def serialize(self) -> str:
        """Return the compact JSON form written back to the store."""
        return json.dumps(self.fields, separators=(",", ":"), ensure_ascii=False)

    def require(self, name: str) -> Any:
        """Return field *name* or raise :class:`ParseError` when absent."""
        if name not in self.fields:
            raise ParseError(f"Settings document has no '{name}' field.")
        return self.fields[name]

    @property
    def hostname(self) -> str:
        """Return the configured public hostname."""
        value = self.require(HOSTNAME_FIELD)
        if not isinstance(value, str) or not value.strip():
            raise ParseError(f"Settings field '{HOSTNAME_FIELD}' must be a non-empty string.")
        return value.strip()

    @property
    def use_lets_encrypt(self) -> bool:
        """Return True when certificates are issued by Let's Encrypt."""
        return self.fields.get(LETS_ENCRYPT_FIELD) is True

    def with_field(self, name: str, value: Any) -> SettingsDocument:
        """Return a copy with *name* set to *value*, keeping field order."""
        updated = dict(self.fields)
        updated[name] = value
        return SettingsDocument(updated)


class SettingsBlobStore:
    """Get and set the settings document through ``redis-cli``."""

    def __init__(
        self,
        executor: ContainerExecutor,
        *,
        service: str = "redis",
        key: str = "nms:nms",
    ) -> None:
        """Bind the store to the redis *service* and document *key*."""
        self.executor = executor
        self.service = service
        self.key = key

    def get_raw(self) -> str:
        """Return the serialised document, without transport line endings."""
        result = self.executor.exec(self.service, "redis-cli", ["--raw", "GET", self.key])
        raw = result.stdout.replace("\r", "").rstrip("\n")
        if not raw.strip():
            raise NotFoundError(
                f"Settings key '{self.key}' is empty or missing in redis.",
                remediation="Finish the initial setup wizard in the web UI first.",
            )
        return raw

    def set_raw(self, raw: str) -> None:
        """Overwrite the stored document with *raw*."""
        result = self.executor.exec(
            self.service,
            "redis-cli",
            ["-x", "SET", self.key],
            input_text=raw,
        )
        reply = result.stdout.replace("\r", "").strip()
        if reply != "OK":
            raise CommandError(
                f"redis SET {self.key} was not acknowledged: {reply or 'no output'}",
                returncode=result.returncode,
            )

    def load(self) -> SettingsDocument:
        """Fetch and parse the document."""
        return SettingsDocument.parse(self.get_raw())

    def patch_field(self, name: str, value: Any) -> SettingsDocument:
        """Replace field *name* with *value* and write the document back."""
        document = self.load()
        previous = document.fields.get(name)
        updated = document.with_field(name, value)
        self.set_raw(updated.serialize())
        LOGGER.debug("Patched %s: %r -> %r", name, previous, value)
        return updated


__all__ = [
    "HOSTNAME_FIELD",
    "LETS_ENCRYPT_FIELD",
    "TRANSMISSION_PROFILE_FIELD",
    "ContainerExecutor",
    "SettingsBlobStore",
    "SettingsDocument",
]
