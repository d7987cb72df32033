"""
EMI Engine API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import (
    EmiEngineError, InvalidInput, NotFoundError, ScheduleExistsError,
    OverpaymentExceedsOutstanding, OverpaymentExceedsPending, ConcurrentModificationError
)
from ..config import get_config
from ..logging_config import get_logger, setup_logging
from .calculator import router as calculator_router
from .loans import router as loans_router
from .lendings import router as lendings_router
from .overview import router as overview_router
from .templates import router as templates_router


logger = get_logger("emi_engine.api")

ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (ScheduleExistsError, 409),
    (ConcurrentModificationError, 409),
    (OverpaymentExceedsOutstanding, 422),
    (OverpaymentExceedsPending, 422),
    (InvalidInput, 422),
)


def status_code_for(exc: EmiEngineError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 400


async def emi_error_handler(request: Request, exc: EmiEngineError) -> JSONResponse:
    code = status_code_for(exc)
    logger.warning(f"{request.method} {request.url.path} -> {code} {type(exc).__name__}: {exc}")
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "error": type(exc).__name__},
        headers=headers
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="EMI Engine API",
        description="Loan amortization, repayment tracking and lending overview",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(EmiEngineError, emi_error_handler)

    app.include_router(calculator_router, prefix="/calculator", tags=["Calculator"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(lendings_router, prefix="/lendings", tags=["Lendings"])
    app.include_router(overview_router, prefix="/overview", tags=["Overview"])
    app.include_router(templates_router, prefix="/templates", tags=["Templates"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "emi_engine_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "EMI Engine API",
            "version": __version__,
            "description": "Loan amortization and repayment tracking",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "calculator": "/calculator/emi",
                "loans": "/loans",
                "lendings": "/lendings",
                "overview": "/overview/{user_id}",
                "templates": "/templates",
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server with logging configured from the environment"""
    config = get_config()
    setup_logging(config.log_level, fmt=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "emi_engine.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
