import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.src.config import get_settings
from api.src.db.database import init_db
from api.src.routes import health_router, builds_router, webhooks_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

settings = get_settings()

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Conduit API")
    await init_db()
    yield
    logger.info("Shutting down Conduit API")

app = FastAPI(
    title="Conduit",
    description="Multi-pipeline CI orchestration",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(builds_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")

@app.get("/")
async def root():
    return {
        "name": "Conduit",
        "version": "0.1.0",
        "docs": "/docs"
    }

def run():
    """Serve the API with uvicorn."""
    import uvicorn

    uvicorn.run("api.src.main:app", host=settings.api_host, port=settings.api_port)
