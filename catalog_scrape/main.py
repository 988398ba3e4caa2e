import logging

from fastapi import FastAPI

from .config import get_settings
from .routers import extract

settings = get_settings()
logging.basicConfig(level=settings.log_level.upper())

app = FastAPI(title="Catalog Scrape", version="0.1.0")


@app.get("/health")
def healthcheck():
    return {"status": "ok", "env": settings.env}


app.include_router(extract.router, tags=["extract"])
