"""Provider interfaces for unmsctl."""
from __future__ import annotations

from .compose import CommandResult, ComposeProvider

__all__ = ["CommandResult", "ComposeProvider"]
