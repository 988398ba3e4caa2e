from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..errors import (
    HostNotAllowed,
    MetaRobotsBlocked,
    RobotsDisallowed,
    ScrapeError,
    ScrapeFailed,
    UnsupportedScheme,
)
from ..scrape import ProductScraper, get_scraper

router = APIRouter()

STATUS_BY_ERROR = {
    UnsupportedScheme: 400,
    HostNotAllowed: 403,
    RobotsDisallowed: 403,
    MetaRobotsBlocked: 403,
    ScrapeFailed: 502,
}


class ExtractRequest(BaseModel):
    url: str


def _status_for(exc: ScrapeError) -> int:
    for cls, status in STATUS_BY_ERROR.items():
        if isinstance(exc, cls):
            return status
    return 500


@router.post("/extract")
def extract(body: ExtractRequest, scraper: ProductScraper = Depends(get_scraper)):
    # Sync endpoint: FastAPI runs it in the threadpool, the fetch loop blocks.
    try:
        result = scraper.scrape(body.url)
    except ScrapeError as exc:
        raise HTTPException(
            status_code=_status_for(exc),
            detail={"error": exc.kind, "message": str(exc)},
        ) from exc
    return result.to_payload()
