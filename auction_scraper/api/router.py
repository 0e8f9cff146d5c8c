from fastapi import APIRouter

from auction_scraper.api.routes import health, scrapes

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(scrapes.router, prefix="/scrapes", tags=["scrapes"])
