from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from typing import List

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from .routes import (  # noqa: E402
    auth_router,
    backup_router,
    bot_router,
    clients_router,
    heartbeat_router,
    webhooks_router,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Gestor IPTV API")


def resolve_cors_allow_origins() -> List[str]:
    raw = (os.getenv("CORS_ALLOW_ORIGINS") or "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ]


CORS_ALLOW_ORIGINS = resolve_cors_allow_origins()
CORS_ALLOW_ORIGIN_REGEX = os.getenv("CORS_ALLOW_ORIGIN_REGEX") or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_origin_regex=CORS_ALLOW_ORIGIN_REGEX,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "apikey", "x-client-info"],
)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "gestor"}


@app.get("/")
async def root():
    return {"message": "Gestor IPTV API", "status": "running"}


api_router = APIRouter(prefix="/api")
api_router.include_router(clients_router)
api_router.include_router(bot_router)
api_router.include_router(heartbeat_router)
api_router.include_router(webhooks_router)
api_router.include_router(auth_router)
api_router.include_router(backup_router)

app.include_router(api_router)
