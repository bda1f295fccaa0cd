from fastapi import FastAPI, APIRouter, HTTPException
from starlette.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from datetime import datetime, timezone
from pathlib import Path
import os
import logging

from quiz_access import __version__
from quiz_access.routes import access_router

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

app = FastAPI(title="Quiz Access Engine", version=__version__)

api_router = APIRouter(prefix="/api")


@api_router.get("/")
async def root():
    return {"message": "Quiz Access Engine API", "version": __version__}


@api_router.get("/health")
async def health():
    from database import check_db_connection

    db_ok, db_error = await check_db_connection()
    if not db_ok:
        raise HTTPException(status_code=503, detail={"status": "unhealthy", "error": db_error})
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(access_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    # Fail fast if database is unavailable
    from database import check_db_connection
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    logger.info(f"Quiz Access Engine {__version__} started")


@app.on_event("shutdown")
async def shutdown_db_client():
    from database import client
    client.close()
