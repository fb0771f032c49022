"""Input models for sync invocations."""

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class SyncMode(str, Enum):
    """Which catalog a run writes to."""

    LIVE = "live"
    SHADOW = "shadow"


class SyncRequest(BaseModel):
    """Body of a sync invocation."""

    provider: str = Field(default="justtcg", description="Catalog provider to pull from")
    games: list[str] = Field(min_length=1, description="Game slugs to sync, in order")
    mode: SyncMode = Field(default=SyncMode.LIVE, description="live or shadow catalog")
    force: bool = Field(
        default=False,
        description="Clear checkpoints of the requested games before syncing",
    )

    @field_validator("games")
    @classmethod
    def _strip_games(cls, games: list[str]) -> list[str]:
        cleaned: list[str] = []
        for game in games:
            slug = game.strip().lower()
            if slug and slug not in cleaned:
                cleaned.append(slug)
        if not cleaned:
            raise ValueError("at least one game slug is required")
        return cleaned
