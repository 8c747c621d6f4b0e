"""FastAPI surface for the keeper runtime (read-only status)."""

from __future__ import annotations

import logging
from typing import Any, Callable

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config.logging import apply_logging_config
from config.settings import RuntimeConfig, default_config_paths, load_runtime_config
from errors import (
    ChainReadError,
    ConfigurationError,
    ConflictError,
    ContractViolationError,
    KeeperRuntimeError,
    SchemaValidationError,
)
from executor.state_machine import SchedulerState
from scheduler.service import KeeperService, build_keeper_service

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[], KeeperService]


def _error_payload(err: Exception) -> dict[str, Any]:
    if isinstance(err, SchemaValidationError):
        return {
            "error": "SCHEMA_VALIDATION_ERROR",
            "kind": err.kind,
            "violations": [{"path": v.path, "message": v.message} for v in err.violations],
        }
    if isinstance(err, ContractViolationError):
        return {"error": "CONTRACT_VIOLATION", "code": err.code, "message": str(err), "details": err.details}
    if isinstance(err, ConfigurationError):
        return {"error": "CONFIGURATION_ERROR", "message": str(err), "details": err.details}
    if isinstance(err, ConflictError):
        return {"error": "CONFLICT", "message": str(err), "details": err.details}
    if isinstance(err, ChainReadError):
        return {"error": "CHAIN_READ_ERROR", "operation": err.operation, "message": str(err)}
    return {"error": "INTERNAL", "message": str(err)}


def build_service_from_env(runtime: RuntimeConfig | None = None) -> KeeperService:
    """Load .env, config and logging, then wire the keeper. Fails closed on bad config.

    A caller that already loaded the runtime config passes it in; it is not read again.
    """
    load_dotenv(override=False)
    runtime_path, logging_path = default_config_paths()
    if runtime is None:
        runtime = load_runtime_config(runtime_path)
    apply_logging_config(logging_path)
    return build_keeper_service(runtime)


def create_app(service_factory: ServiceFactory = build_service_from_env) -> FastAPI:
    app = FastAPI(title="Upkeep Keeper Runtime", version="0.1.0")

    @app.on_event("startup")
    async def _startup() -> None:
        service = service_factory()
        app.state.service = service
        service.start()
        logger.info("keeper_started", extra={"event": "keeper_started", "network": service.protocol.network_name})

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        service: KeeperService | None = getattr(app.state, "service", None)
        if service is not None:
            await service.stop()

    @app.exception_handler(ChainReadError)
    def _chain_read_handler(_req, exc: ChainReadError):
        return JSONResponse(status_code=503, content=_error_payload(exc))

    @app.exception_handler(KeeperRuntimeError)
    def _runtime_error_handler(_req, exc: KeeperRuntimeError):
        return JSONResponse(status_code=500, content=_error_payload(exc))

    @app.exception_handler(Exception)
    def _unhandled_handler(_req, exc: Exception):
        logger.exception("unhandled_error", extra={"event": "unhandled_error"})
        return JSONResponse(status_code=500, content=_error_payload(exc))

    def _service() -> KeeperService:
        return app.state.service

    @app.get("/health")
    def health() -> Any:
        """200 while the keeper is scheduling; 503 once it halted (not whitelisted)."""
        scheduler = _service().scheduler
        if scheduler.state is SchedulerState.HALTED:
            return JSONResponse(
                status_code=503,
                content={"status": "halted", "reason": scheduler.status()["halt_reason"]},
            )
        return {"status": "ok", "scheduler": scheduler.state.value}

    @app.get("/state")
    def state() -> dict[str, Any]:
        return _service().state_view()

    @app.get("/schedule")
    def schedule() -> dict[str, Any]:
        return _service().scheduler.status()

    return app


# Config and chain wiring happen at startup, not at import.
app = create_app()
