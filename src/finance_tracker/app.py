import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from finance_tracker.api.routes import config, convert, insights, pending, transactions, uploads
from finance_tracker.core import settings
from finance_tracker.errors import UpstreamServiceError
from finance_tracker.ingestion.converter import DocumentConverter
from finance_tracker.ingestion.extraction import TextExtractor
from finance_tracker.ingestion.parsing import ReceiptParser
from finance_tracker.ingestion.pipeline import IngestionPipeline
from finance_tracker.integration.transaction_api import HttpTransactionService
from finance_tracker.logger import get_logger, setup_logging
from finance_tracker.services.reconciliation import ReconciliationCoordinator
from finance_tracker.services.state import ReconciliationState

logger = get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        if not os.getenv("TRANSACTION_API_URL"):
            logger.warning("TRANSACTION_API_URL not set. Creates will fail until it is configured.")

        service = HttpTransactionService()
        coordinator = ReconciliationCoordinator(ReconciliationState(), service)
        extractor = TextExtractor()
        parser = ReceiptParser()
        converter = DocumentConverter()

        app.state.service = service
        app.state.coordinator = coordinator
        app.state.extractor = extractor
        app.state.parser = parser
        app.state.converter = converter
        app.state.ingestion = IngestionPipeline(extractor, parser, coordinator)

        if service.configured:
            try:
                await coordinator.refresh()
            except UpstreamServiceError as exc:
                logger.warning("Initial transaction load failed: %s", exc.message)

        logger.info("Services initialized.")
        yield
        logger.info("Service shutting down.")
        await coordinator.shutdown()
        await service.aclose()

    app = FastAPI(title="Finance Tracker", lifespan=lifespan)

    app.include_router(transactions.router)
    app.include_router(pending.router)
    app.include_router(insights.router)
    app.include_router(uploads.router)
    app.include_router(convert.router)
    app.include_router(config.router)

    return app
