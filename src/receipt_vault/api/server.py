import asyncio
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from receipt_vault import __version__
from receipt_vault.api.jobs import router as jobs_router
from receipt_vault.api.webhooks import router as webhooks_router
from receipt_vault.common.config import APIConfig
from receipt_vault.common.errors import NotFoundError, ValidationError
from receipt_vault.common.logging import configure_logging
from receipt_vault.common.metrics import metrics, start_metrics_server
from receipt_vault.services import Services, build_services


def create_app(config: APIConfig, services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Receipt Vault",
        description="Background jobs and outbound webhooks for Receipt Vault",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services or build_services(config)
    app.state.worker_task = None
    app.state.shutdown_event = None

    app.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
    app.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(
        request: Request, exc: RequestValidationError
    ):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request", "details": exc.errors()},
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "version": __version__}

    @app.on_event("startup")
    async def startup_event():
        configure_logging(config.log_level)

        if config.metrics.enabled:
            start_metrics_server(config.metrics.port, config.metrics.host)
            logger.info(
                f"Metrics server started on {config.metrics.host}:{config.metrics.port}"
            )

        await app.state.services.start()

        if config.run_workers:
            app.state.shutdown_event = asyncio.Event()
            app.state.worker_task = asyncio.create_task(
                app.state.services.worker_pool.run(app.state.shutdown_event)
            )
            logger.info("Running job workers inside the API process")

        metrics.up.labels(component="api").set(1)
        logger.info(f"Receipt Vault API started on {config.host}:{config.port}")

    @app.on_event("shutdown")
    async def shutdown_event():
        metrics.up.labels(component="api").set(0)
        if app.state.worker_task is not None:
            app.state.shutdown_event.set()
            await app.state.worker_task
        await app.state.services.close()
        logger.info("Receipt Vault API shutting down")

    return app


def run_server(config: APIConfig):
    app = create_app(config)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
