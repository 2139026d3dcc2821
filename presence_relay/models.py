"""
Shared data models for the presence relay service.

This module defines the core domain models used across multiple layers
of the application (business logic, CLI, API).
"""

from enum import Enum

from pydantic import BaseModel, Field


class Mood(str, Enum):
    """The closed set of moods a participant may attach to their presence."""

    GRATITUDE = "gratitude"
    PRESENCE = "presence"
    RELEASE = "release"
    CONNECTION = "connection"


class PresenceRecord(BaseModel):
    """Liveness entry for one session, stored under ``user:{sessionId}``."""

    mood: Mood | None = Field(None, description="Mood reported by the session")
    timestamp: float = Field(..., description="Unix timestamp of the last heartbeat")


class PresenceState(BaseModel):
    """Aggregate of all currently-live presence records."""

    count: int = Field(0, description="Number of live sessions observed")
    moods: dict[str, int] = Field(
        default_factory=dict, description="Live sessions per reported mood"
    )
