# =======================================================================================
# chipvault/main.py - FastAPI Application Entry Point
# =======================================================================================
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from . import __version__
from .config import config
from .api.routes.chips import router as chips_router
from .api.routes.encoding import router as encoding_router
from .api.routes.readers import router as readers_router
from .api.routes.stock import router as stock_router
from .api.dependencies import reader_pool
from .database import db_manager
from .logging_config import configure_logging
from .models.schemas import HealthResponse
from .readers.serial_reader import SerialReader
from .utils.exceptions import ChipVaultError
from .utils.validators import validate_chip_id_prefix

logger = logging.getLogger(__name__)


def register_serial_readers() -> None:
    """Register one SerialReader per READER_PORTS entry."""
    for name, port in config.READER_PORTS.items():
        if name in reader_pool.names():
            continue
        reader_pool.register(
            SerialReader(name, port, baud=config.SERIAL_BAUD, timeout=config.SERIAL_TIMEOUT)
        )
    if not config.READER_PORTS:
        logger.info("READER_PORTS not configured; no serial readers attached")


def create_app() -> FastAPI:
    app = FastAPI(
        title="ChipVault API",
        version=__version__,
        description="RFID chip identity, lifecycle and stock service",
        debug=config.API_DEBUG,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChipVaultError)
    async def chipvault_error_handler(request: Request, exc: ChipVaultError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        body = {"detail": str(exc), "error": type(exc).__name__}
        body.update(exc.payload())
        return JSONResponse(status_code=exc.status_code, content=body)

    # Routers (encoding before chips so /chips/<literal> paths win over /chips/{id})
    app.include_router(encoding_router, prefix="/api", tags=["encoding"])
    app.include_router(chips_router, prefix="/api", tags=["chips"])
    app.include_router(stock_router, prefix="/api", tags=["stock"])
    app.include_router(readers_router, prefix="/api", tags=["readers"])

    @app.get("/api/health", response_model=HealthResponse, tags=["health"])
    def api_health():
        try:
            db_manager.fetch_one("SELECT 1")
            return HealthResponse(status="ok", dataAvailable=True, message=None)
        except SQLAlchemyError as e:
            return HealthResponse(status="error", dataAvailable=False, message=str(e))

    @app.on_event("startup")
    async def startup_event():
        configure_logging(config.LOG_LEVEL)
        validate_chip_id_prefix(config.CHIP_ID_PREFIX)
        if config.DB_AUTO_CREATE:
            db_manager.create_schema()
        register_serial_readers()
        logger.info("ChipVault API started")

    @app.on_event("shutdown")
    async def shutdown_event():
        reader_pool.close_all()

    return app


app = create_app()
