"""FastAPI application entry point"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

# Setup logging
from src.logging_config import setup_logging
setup_logging()

load_dotenv()

from src.config import settings
from src.exceptions import (
    CalculationMismatchError,
    ConcurrencyConflict,
    EstimateEngineError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Ensure database tables exist before serving requests"""
    from src.models.database import Base, engine
    # Import all models to ensure they're registered with Base
    from src.models.db_models import Estimate, EstimateVersion, ChangeRequest  # noqa: F401
    from src.models.line_item_db_models import LineItem  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield


app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description="Estimate versioning, pricing consistency and change request approval",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Most specific first; anything else from the engine is a 500
ERROR_STATUS = (
    (NotFoundError, 404),
    (ConcurrencyConflict, 409),
    (CalculationMismatchError, 409),
    (ValidationError, 422),
    (PersistenceError, 503),
)


@app.exception_handler(EstimateEngineError)
async def estimate_engine_error_handler(request: Request, exc: EstimateEngineError):
    """Map engine errors onto HTTP status codes"""
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    content = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, ConcurrencyConflict):
        content["retryable"] = True
    if isinstance(exc, CalculationMismatchError):
        content["fields"] = sorted(exc.discrepancies)
    return JSONResponse(status_code=status_code, content=content)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"{settings.APP_NAME} API",
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "healthy"}


# Import routes
from api.routes import estimates, versions, change_requests
app.include_router(estimates.router, prefix="/api", tags=["estimates"])
app.include_router(versions.router, prefix="/api", tags=["versions"])
app.include_router(change_requests.router, prefix="/api", tags=["change-requests"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
