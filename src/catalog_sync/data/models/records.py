"""Typed views over provider catalog records.

Every view keeps the untouched provider payload in ``raw`` so fields the
engine does not read yet survive provider schema changes.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ...exceptions import RecordValidationError


class EntityKind(str, Enum):
    """The four levels of the catalog hierarchy, in sync order."""

    GAMES = "games"
    SETS = "sets"
    CARDS = "cards"
    VARIANTS = "variants"


_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_name(name: str | None) -> str:
    """Normalize a display name for drift comparison."""
    if not name:
        return ""
    return _NON_ALNUM.sub(" ", name.lower()).strip()


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _id_text(value: Any) -> Any:
    """Provider ids arrive as strings or integers; store them as text."""
    value = _blank_to_none(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


def parse_release_date(value: Any) -> str | None:
    """Parse YYYY-MM-DD or YYYY/MM/DD; anything else is dropped."""
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%Y/%m/%d"):
        try:
            return datetime.strptime(text[:10], fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    return None


class ProviderRecord(BaseModel):
    """Base for provider views: lenient on extras, strict on what we use."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @classmethod
    def from_payload(cls, kind: EntityKind, payload: Any) -> ProviderRecord:
        """Build a typed view from a provider payload.

        Raises:
            RecordValidationError: If the payload is not an object or misses
                a field the engine depends on.
        """
        if not isinstance(payload, dict):
            raise RecordValidationError(kind.value, None, "record is not an object")
        try:
            record = cls.model_validate(payload)
        except PydanticValidationError as e:
            record_id = payload.get("id")
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise RecordValidationError(
                kind.value,
                str(record_id) if record_id is not None else None,
                f"{location}: {first['msg']}",
            ) from e
        record.raw = payload
        return record


class ProviderGame(ProviderRecord):
    """A game as listed by the provider."""

    id: str = Field(min_length=1)
    name: str
    active: bool = True

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> Any:
        return _id_text(value)


class ProviderSet(ProviderRecord):
    """A set as listed by the provider."""

    id: str = Field(min_length=1)
    name: str
    code: str | None = None
    series: str | None = None
    release_date: str | None = Field(
        default=None, validation_alias=AliasChoices("releaseDate", "release_date")
    )
    total_count: int | None = Field(
        default=None,
        validation_alias=AliasChoices("total", "totalCount", "printedTotal", "cards_count"),
    )
    images: dict[str, Any] | None = None

    @field_validator("id", "code", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Any:
        return _id_text(value)

    @field_validator("series", "total_count", "images", mode="before")
    @classmethod
    def _blank(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("release_date", mode="before")
    @classmethod
    def _release_date(cls, value: Any) -> str | None:
        return parse_release_date(_blank_to_none(value))


class ProviderCard(ProviderRecord):
    """A card as listed by the provider."""

    id: str = Field(min_length=1)
    name: str
    set_id: str | None = Field(
        default=None, validation_alias=AliasChoices("setId", "set_id")
    )
    number: str | None = None
    rarity: str | None = None
    images: dict[str, Any] | None = None
    external_product_ref: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "tcgplayerProductId", "tcgplayerId", "tcgplayer_product_id", "externalProductRef"
        ),
    )

    @field_validator("id", "set_id", "number", "external_product_ref", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Any:
        return _id_text(value)

    @field_validator("rarity", "images", mode="before")
    @classmethod
    def _blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class ProviderVariant(ProviderRecord):
    """A priced SKU of a card as listed by the provider."""

    id: str | None = None
    card_id: str | None = Field(
        default=None, validation_alias=AliasChoices("cardId", "card_id")
    )
    language: str | None = None
    printing: str | None = None
    condition: str | None = None
    sku: str | None = None
    price: float | None = None
    market_price: float | None = Field(
        default=None, validation_alias=AliasChoices("marketPrice", "market_price")
    )
    low_price: float | None = Field(
        default=None, validation_alias=AliasChoices("lowPrice", "low_price")
    )
    high_price: float | None = Field(
        default=None, validation_alias=AliasChoices("highPrice", "high_price")
    )
    currency: str = "USD"

    @field_validator("id", "card_id", "sku", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Any:
        return _id_text(value)

    @field_validator(
        "language",
        "printing",
        "condition",
        "price",
        "market_price",
        "low_price",
        "high_price",
        mode="before",
    )
    @classmethod
    def _blank(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> str:
        value = _blank_to_none(value)
        return str(value).upper() if value else "USD"

    def natural_id(self, card_id: str) -> str:
        """Provider id, or a deterministic key when the provider sends none."""
        if self.id:
            return self.id
        parts = [card_id, self.language or "", self.printing or "", self.condition or ""]
        return ":".join(parts)


PROVIDER_VIEWS: dict[EntityKind, type[ProviderRecord]] = {
    EntityKind.GAMES: ProviderGame,
    EntityKind.SETS: ProviderSet,
    EntityKind.CARDS: ProviderCard,
    EntityKind.VARIANTS: ProviderVariant,
}


def parse_record(kind: EntityKind, payload: Any) -> ProviderRecord:
    """Parse one provider payload into the typed view for ``kind``."""
    return PROVIDER_VIEWS[kind].from_payload(kind, payload)
