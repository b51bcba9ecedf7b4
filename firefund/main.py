"""
Main entry point for the FireFund server
Initializes database and services, then serves the API
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError

from firefund import __version__
from firefund.config.config_loader import load_config
from firefund.core.database import db_service
from firefund.core.email_service import EmailService, SMTPConfig
from firefund.core.logging_manager import setup_logging
from firefund.core.models import utcnow
from firefund.core.receipts import ReceiptService
from firefund.core.security import security_service
from firefund.integrations.n8n_adapter import N8nAdapter, N8nConfig

from firefund.api import auth, transactions, tours, receipts, qr, webhooks, admin
from firefund.api.dependencies import init_api_dependencies
from firefund.api.error_handling import (
    api_error_handler, http_exception_handler, validation_exception_handler,
    integrity_error_handler, general_exception_handler, APIError
)


logger = logging.getLogger(__name__)

# Global app instance for lifespan access
app_instance: Optional['FireFundApp'] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan context manager for startup and shutdown"""
    logger.info(f"Starting FireFund {__version__}...")
    await app_instance.startup()
    logger.info("FireFund started successfully")

    yield

    logger.info("Shutting down FireFund...")
    await app_instance.shutdown()
    logger.info("FireFund shutdown complete")


class FireFundApp:
    """FireFund server application"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

        security_service.password_iterations = int(
            config.get('auth', {}).get('password_iterations', security_service.password_iterations)
        )

        self.n8n_adapter = N8nAdapter(N8nConfig.from_config(config))
        self.email_service = EmailService(SMTPConfig.from_config(config))
        self.receipt_service = ReceiptService(config, self.n8n_adapter, self.email_service)

        self.app = FastAPI(
            title="FireFund",
            description="Donation tracking for fire-brigade calendar campaigns",
            version=__version__,
            lifespan=lifespan
        )

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=config.get('api', {}).get('cors_origins', ["*"]),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"]
        )

        init_api_dependencies(config, self.receipt_service)

        self.app.exception_handler(APIError)(api_error_handler)
        self.app.exception_handler(HTTPException)(http_exception_handler)
        self.app.exception_handler(RequestValidationError)(validation_exception_handler)
        self.app.exception_handler(IntegrityError)(integrity_error_handler)
        self.app.exception_handler(Exception)(general_exception_handler)

        self.app.include_router(auth.router, prefix="/api/v1/auth", tags=["Authentication"])
        self.app.include_router(transactions.router, prefix="/api/v1/transactions", tags=["Transactions"])
        self.app.include_router(tours.router, prefix="/api/v1/tours", tags=["Tours"])
        self.app.include_router(receipts.router, prefix="/api/v1/receipts", tags=["Receipts"])
        self.app.include_router(qr.router, prefix="/api/v1/qr", tags=["QR Payments"])
        self.app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
        self.app.include_router(admin.router, prefix="/api/v1/admin", tags=["Administration"])

        @self.app.get("/health")
        async def health_check():
            """Liveness check used by field clients to detect connectivity"""
            if not await db_service.health_check():
                raise HTTPException(status_code=503, detail="Database unavailable")

            return {
                "status": "healthy",
                "version": __version__,
                "timestamp": utcnow().isoformat(),
                "database": {"status": "connected"}
            }

    async def startup(self):
        """Application startup"""
        if db_service.engine is None:
            db_config = self.config.get('database', {})
            db_service.initialize(db_config.get('url'), echo=db_config.get('echo', False))

        await db_service.create_tables()
        logger.info("Database initialized")

        validation = self.n8n_adapter.validate_configuration()
        if self.receipt_service.delivery == 'n8n' and not validation['valid']:
            logger.warning(f"n8n receipt delivery misconfigured: {validation['errors']}")

    async def shutdown(self):
        """Application shutdown"""
        await self.n8n_adapter.close()
        await db_service.close()
        logger.info("Database closed")


def create_app(config: Dict[str, Any] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    global app_instance

    if config is None:
        config = load_config()

    app_instance = FireFundApp(config)

    return app_instance.app


def main():
    """Main entry point"""
    try:
        config = load_config()
        setup_logging(config)

        app = create_app(config)

        api_config = config.get('api', {})
        host = api_config.get('host', '0.0.0.0')
        port = api_config.get('port', 8080)

        logger.info(f"Starting FireFund {__version__} on {host}:{port}")

        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level="info",
            access_log=True
        )

    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    except Exception as e:
        logger.error(f"Failed to start FireFund: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
