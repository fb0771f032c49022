"""Conversion of validated provider views into local catalog rows."""

from __future__ import annotations

from ..data.database.catalog import CardRow, CatalogRow, GameRow, SetRow, VariantRow
from ..data.models.records import (
    EntityKind,
    ProviderCard,
    ProviderGame,
    ProviderRecord,
    ProviderSet,
    ProviderVariant,
)
from ..provider.justtcg import normalize_game_slug


def qualified_set_id(provider: str, provider_set_id: str) -> str:
    """Local set id: provider ids are only unique within one provider."""
    return f"{provider}-{provider_set_id}"


def game_row(provider: str, view: ProviderGame) -> GameRow:
    return GameRow(
        provider=provider,
        id=normalize_game_slug(view.id),
        provider_id=view.id,
        name=view.name,
        active=view.active,
        raw=view.raw,
    )


def set_row(provider: str, game: str, view: ProviderSet) -> SetRow:
    return SetRow(
        provider=provider,
        game=game,
        id=qualified_set_id(provider, view.id),
        provider_id=view.id,
        name=view.name,
        code=view.code,
        series=view.series,
        release_date=view.release_date,
        total_count=view.total_count,
        images=view.images,
        raw=view.raw,
    )


def card_row(provider: str, game: str, set_id: str, view: ProviderCard) -> CardRow:
    return CardRow(
        provider=provider,
        id=view.id,
        game=game,
        set_id=set_id,
        name=view.name,
        number=view.number,
        rarity=view.rarity,
        images=view.images,
        external_product_ref=view.external_product_ref,
        raw=view.raw,
    )


def variant_row(provider: str, game: str, card_id: str, view: ProviderVariant) -> VariantRow:
    return VariantRow(
        provider=provider,
        id=view.natural_id(card_id),
        card_id=card_id,
        game=game,
        language=view.language,
        printing=view.printing,
        condition=view.condition,
        sku=view.sku,
        price=view.price,
        market_price=view.market_price,
        low_price=view.low_price,
        high_price=view.high_price,
        currency=view.currency,
        raw=view.raw,
    )


def to_row(
    kind: EntityKind,
    provider: str,
    game: str,
    parent_key: str | None,
    view: ProviderRecord,
) -> CatalogRow:
    """Build the row for ``view``. ``parent_key`` is the local id of the parent set or card."""
    if kind is EntityKind.GAMES:
        assert isinstance(view, ProviderGame)
        return game_row(provider, view)
    if kind is EntityKind.SETS:
        assert isinstance(view, ProviderSet)
        return set_row(provider, game, view)
    if parent_key is None:
        raise ValueError(f"{kind.value} rows need a parent")
    if kind is EntityKind.CARDS:
        assert isinstance(view, ProviderCard)
        return card_row(provider, game, parent_key, view)
    assert isinstance(view, ProviderVariant)
    return variant_row(provider, game, parent_key, view)
