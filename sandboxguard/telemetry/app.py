"""HTTP front end and command of the telemetry collector."""

from __future__ import annotations

import argparse
import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import AwareDatetime

from sandboxguard.telemetry.config import Config
from sandboxguard.telemetry.db import Database
from sandboxguard.telemetry.errors import AppError, error_response
from sandboxguard.telemetry.metrics import Metrics
from sandboxguard.telemetry.models import (
    ModelPerformance,
    PredictionRequest,
    ProviderStats,
    SandboxRun,
    SandboxRunRequest,
    TimeRange,
    TrainingData,
    TrainingDataRequest,
)
from sandboxguard.telemetry.service import TelemetryService

logger = logging.getLogger(__name__)

_HOST = "0.0.0.0"


def create_app(config: Config, database: Database, metrics: Metrics) -> FastAPI:
    """Build the telemetry collector application."""
    service = TelemetryService(database, metrics)
    app = FastAPI(title="Telemetry collector")
    app.state.config = config
    app.state.telemetry = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error(_: Request, exc: AppError) -> JSONResponse:
        return error_response(exc)

    @app.get("/health")
    def health_check() -> Response:
        if database.ping():
            return JSONResponse({"status": "healthy", "database": "connected"})
        return Response(status_code=503)

    @app.post("/api/telemetry/sandbox-run")
    def track_sandbox_run(request: SandboxRunRequest) -> SandboxRun:
        return service.track_sandbox_run(request)

    @app.get("/api/telemetry/training-data")
    def get_training_data(start: AwareDatetime, limit: int | None = None) -> list[TrainingData]:
        return service.get_training_data(start, limit)

    @app.post("/api/telemetry/training-data")
    def submit_training_data(request: TrainingDataRequest) -> Response:
        service.submit_training_data(request)
        return Response(status_code=201)

    @app.get("/api/telemetry/provider-stats/{provider}")
    def get_provider_stats(
        provider: str, start: AwareDatetime, end: AwareDatetime | None = None
    ) -> ProviderStats:
        return service.get_provider_stats(provider, TimeRange(start=start, end=end))

    @app.post("/api/telemetry/predictions")
    def track_prediction(request: PredictionRequest) -> Response:
        service.track_prediction(request)
        return Response(status_code=201)

    @app.get("/api/telemetry/model-performance/{version}")
    def get_model_performance(
        version: str, start: AwareDatetime, end: AwareDatetime | None = None
    ) -> ModelPerformance:
        return service.get_model_performance(version, TimeRange(start=start, end=end))

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics_handler() -> str:
        return metrics.export()

    return app


def main(argv: list[str] | None = None) -> int:
    """Load settings, prepare the database and serve the collector."""
    parser = argparse.ArgumentParser(
        prog="telemetry-collector", description="Collect sandbox run telemetry."
    )
    parser.add_argument(
        "--config-dir",
        default="config",
        help="directory holding telemetry.toml or telemetry.json (default: config)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        config = Config.load(config_dir=args.config_dir)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1
    logger.info("Loaded configuration")

    database = Database(config.database_url)
    try:
        database.run_migrations()
        logger.info("Connected to database and ran migrations")
        app = create_app(config, database, Metrics())
        logger.info("Starting telemetry collector on %s:%d", _HOST, config.port)
        uvicorn.run(app, host=_HOST, port=config.port)
    finally:
        database.close()
    return 0