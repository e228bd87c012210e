"""Caller identity as the engine sees it."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    uid: int
    display_name: str
    email: str | None = None
    phone: str | None = None
    language: str | None = None
