import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import health, transactions
from .config import Settings, settings
from .core.queue import DurableStore, QueueConfig, ReconciliationWorker, TransactionQueue, create_store
from .logging_config import setup_logging
from .middleware import RequestLoggingMiddleware
from .providers import ChainAdapter, JsonRpcChainAdapter

logger = logging.getLogger(__name__)


def create_app(
    app_settings: Optional[Settings] = None,
    *,
    adapter: Optional[ChainAdapter] = None,
    store: Optional[DurableStore] = None,
) -> FastAPI:
    """
    Build the API application.

    The queue, adapter and worker are created in the lifespan and live on
    app.state; an injected adapter or store replaces the configured one.
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = QueueConfig.from_settings(app_settings)
        queue = TransactionQueue(store if store is not None else create_store(config), config=config)
        chain_adapter = adapter
        if chain_adapter is None and app_settings.has_rpc_urls:
            chain_adapter = JsonRpcChainAdapter(
                app_settings.rpc_urls,
                timeout=app_settings.rpc_timeout_seconds,
            )

        # Without an adapter there is nothing to reconcile against; /check answers 503
        worker = ReconciliationWorker(queue, chain_adapter, config=config) if chain_adapter is not None else None

        app.state.queue = queue
        app.state.adapter = chain_adapter
        app.state.worker = worker
        app.state.worker_expected = False

        if worker is None:
            logger.warning("No RPC URLs configured; reconciliation worker not started")
        elif not app_settings.worker_enabled:
            logger.info("Reconciliation worker disabled by configuration; on-demand checks only")
        else:
            app.state.worker_expected = True
            await worker.start()

        logger.info(
            "Transaction queue ready: %d tracked, %d pending, durable=%s",
            len(queue),
            len(queue.get_pending()),
            queue.is_durable,
        )
        try:
            yield
        finally:
            if worker is not None:
                await worker.close()
            if chain_adapter is not None:
                await chain_adapter.close()
            queue.close()

    app = FastAPI(
        title="Transaction Queue API",
        description="Tracks submitted blockchain transactions until they resolve",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(transactions.router)

    @app.get("/")
    async def root():
        """Root endpoint with basic info"""
        return {
            "name": "Transaction Queue API",
            "version": __version__,
            "docs": "/docs",
            "health": "/healthz",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    uvicorn.run(
        "txqueue.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
