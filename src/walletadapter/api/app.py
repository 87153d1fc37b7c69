"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from walletadapter.api.responses import register_exception_handlers
from walletadapter.config import get_settings
from walletadapter.context import TreasuryContext, build_context
from walletadapter.ledger.database import init_db
from walletadapter.scheduler import JobRunner


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    await init_db()
    yield
    # Shutdown
    await app.state.runner.drain()


def create_app(
    context: Optional[TreasuryContext] = None,
    runner: Optional[JobRunner] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = context.settings if context is not None else get_settings()

    app = FastAPI(
        title="Wallet Adapter",
        description="Treasury control plane for hot wallets",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.context = context or build_context(settings)
    app.state.runner = runner or JobRunner()

    register_exception_handlers(app)

    # Register routes
    from walletadapter.api.routes import health, jobs, transactions

    app.include_router(health.router, tags=["Health"])
    app.include_router(jobs.router, tags=["Jobs"])
    app.include_router(transactions.router, tags=["Transactions"])

    return app
