import logging

from fastapi import FastAPI

from reconciler.config import get_settings
from reconciler.routers import api_router

settings = get_settings()
log_level_name = (settings.log_level or "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
logging.getLogger("reconciler").setLevel(log_level)

app = FastAPI(title=settings.app_name)

app.include_router(api_router, prefix="/api")


@app.get("/health", tags=["Health"])
def health_check() -> dict[str, str]:
    return {"status": "ok"}
