"""Offline-first progress tracker for a shared catalog of practice problems."""

from __future__ import annotations

from .errors import (
    LocalStorageError,
    RemoteError,
    RemoteReadError,
    RemoteWriteError,
    ResourceExhaustedError,
    SessionError,
    TrackerError,
)
from .models import Category, Difficulty, Platform, Problem, Role, RoleKind, Session

__all__ = [
    "Category",
    "Difficulty",
    "LocalStorageError",
    "Platform",
    "Problem",
    "RemoteError",
    "RemoteReadError",
    "RemoteWriteError",
    "ResourceExhaustedError",
    "Role",
    "RoleKind",
    "Session",
    "SessionError",
    "TrackerError",
]
