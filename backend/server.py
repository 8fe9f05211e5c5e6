from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime
import logging

from config import LOG_LEVEL, CORS_ORIGINS
from record_routes import records_router, counters_router, audit_router
from services import get_services

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = get_services()
    try:
        await services.code_generator.create_indexes()
        await services.audit_service.create_indexes()
    except Exception as e:
        # Indexes may already exist with other options
        logger.warning(f"Index creation result: {str(e)}")
    yield
    await services.notification_service.drain()
    services.client.close()


# Create the main app
app = FastAPI(
    title="Financial Records Back Office",
    version="1.0.0",
    description="Bonds, deposits, savings, insurances and stocks with audited, code-numbered writes",
    lifespan=lifespan
)

# Create router with /api prefix
api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "version": "1.0.0"
    }


# Include routers in main app
app.include_router(api_router)
app.include_router(records_router)
app.include_router(counters_router)
app.include_router(audit_router)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
