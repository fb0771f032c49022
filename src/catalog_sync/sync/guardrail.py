"""Post-phase reconciliation of the local catalog against a provider snapshot."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

import aiosqlite

from ..data.database.catalog import CatalogDatabase
from ..data.models.records import EntityKind, normalize_name
from ..exceptions import GuardrailError, UpsertGatewayError

logger = logging.getLogger(__name__)


@dataclass
class GuardrailResult:
    """Counts reported by one guardrail pass."""

    rolled_back: int = 0
    not_found: int = 0


class GuardrailPass:
    """Neutralizes stored records that no longer match the provider.

    Only two edits are ever made, and neither deletes anything:

    - records missing from the snapshot are flagged ``not_found_in_latest_sync``;
    - records whose stored name differs from the snapshot (after
      normalization) and that predate this run get their name nulled, to be
      refilled from the provider on the next run.
    """

    def __init__(self, catalog: CatalogDatabase):
        self._catalog = catalog

    async def run(
        self,
        kind: EntityKind,
        provider: str,
        game: str,
        observed: Mapping[str, str | None],
        *,
        run_id: str,
        set_id: str | None = None,
    ) -> GuardrailResult:
        """Reconcile stored ``kind`` records of a game (or of one set) with ``observed``.

        Args:
            observed: Every (id, name) the provider returned for the stream,
                across all of its pages.
            run_id: Records created by this run are never treated as drifted.
            set_id: Restrict a card pass to the cards of one set.

        Raises:
            GuardrailError: If the local catalog cannot be read or updated.
        """
        try:
            stored = await self._catalog.guardrail_rows(kind, provider, game, set_id=set_id)
            missing = [row.id for row in stored if row.id not in observed]
            drifted = [
                row.id
                for row in stored
                if row.id in observed
                and row.created_run != run_id
                and row.name is not None
                and normalize_name(row.name) != normalize_name(observed[row.id])
            ]
            not_found = await self._catalog.flag_not_found(kind, provider, game, missing)
            rolled_back = await self._catalog.null_display_fields(kind, provider, game, drifted)
        except (aiosqlite.Error, OSError, UpsertGatewayError) as e:
            raise GuardrailError(f"Guardrail on {kind.value} of {game} failed: {e}") from e

        if drifted:
            logger.info(
                "Guardrail nulled drifted names of %d %s in %s: %s",
                rolled_back,
                kind.value,
                game,
                drifted[:5],
            )
        if not_found:
            logger.info("Guardrail flagged %d %s missing upstream in %s", not_found, kind.value, game)
        return GuardrailResult(rolled_back=rolled_back, not_found=not_found)
