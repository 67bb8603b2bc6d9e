"""
FastAPI application entry point.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from index_engine.core.config import settings
from index_engine.core.logging_config import setup_logging, get_main_logger
from index_engine.core.exceptions import register_exception_handlers

# Initialize logging before anything else
setup_logging()
logger = get_main_logger()
from index_engine.api.v1.indices import router as indices_router
from index_engine.api.v1.sync import router as sync_router
from index_engine.db.database import engine, Base
import index_engine.db.models  # Ensure models are registered
from index_engine.services.index_service import index_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables on startup
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Index engine API started ({len(index_service.list_indices())} indices registered)")

    yield

    await index_service.market_data.aclose()

# Create FastAPI app
app = FastAPI(
    title="Index Engine API",
    description="Index composition and daily NAV reconstruction",
    version="1.0.0",
    lifespan=lifespan
)

# Register global exception handlers
register_exception_handlers(app)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(indices_router, prefix=settings.api_v1_prefix)
app.include_router(sync_router, prefix=settings.api_v1_prefix)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Index Engine API", "version": "1.0.0"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
