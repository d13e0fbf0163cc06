# src/app/main.py
from __future__ import annotations
import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.app.config import settings
from src.app.routers.events import router as events_router
from src.app.routers.webhooks import router as webhooks_router
from src.app.routers.v2.lectures import router as lectures_v2_router

# Plain stdout logging (works for dev and containers)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

app = FastAPI(title="Khutbah Notes API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Triggers and provider callbacks
app.include_router(events_router)
app.include_router(webhooks_router)

# Client API
app.include_router(lectures_v2_router)


@app.get("/health")
def health():
    return {"ok": True}


def run() -> None:
    uvicorn.run("src.app.main:app", host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    run()
