"""FastAPI HTTP server for the catalog sync engine."""

from __future__ import annotations

import argparse
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI

from catalog_sync.config import Settings, get_settings
from catalog_sync.data.database import DatabaseManager
from catalog_sync.provider import JustTCGClient, ProviderClient

from .routes import api_router

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Settings], ProviderClient]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan - open and close the catalog databases."""
    settings: Settings = app.state.settings

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(levelname)s:%(name)s:%(message)s",
    )

    logger.info("Starting catalog sync API server...")
    db_manager = DatabaseManager(settings)
    await db_manager.start()
    logger.info("Catalog database ready at %s", settings.catalog_db_path)

    app.state.db_manager = db_manager
    app.state.active_runs = set()

    yield

    logger.info("Shutting down catalog sync API server...")
    await db_manager.stop()
    logger.info("Database connections closed")


def create_app(
    settings: Settings | None = None,
    provider_factory: ProviderFactory | None = None,
) -> FastAPI:
    """Build the API application.

    Args:
        settings: Defaults to the process settings.
        provider_factory: Builds the provider client of each run; defaults to
            the JustTCG client.
    """
    app = FastAPI(
        title="Catalog Sync API",
        description="Incremental provider catalog synchronization",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or get_settings()
    app.state.provider_factory = provider_factory or JustTCGClient

    app.include_router(api_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()


def main(argv: list[str] | None = None) -> None:
    """Run the API server."""
    import uvicorn

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Catalog Sync API Server")
    parser.add_argument(
        "--host",
        type=str,
        default=settings.api_host,
        help=f"Host to bind to (default: {settings.api_host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.api_port,
        help=f"Port to listen on (default: {settings.api_port})",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging level (default: info)",
    )

    args = parser.parse_args(argv)

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
