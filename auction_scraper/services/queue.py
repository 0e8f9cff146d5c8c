from functools import lru_cache

from auction_scraper.services.pgmq import PgmqQueue
from auction_scraper.services.repository import get_repository


@lru_cache
def get_queue() -> PgmqQueue:
    return PgmqQueue(get_repository().get_pool)
