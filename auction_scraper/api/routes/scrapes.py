import logging

from fastapi import APIRouter, Depends, HTTPException, status

from auction_scraper.core.auth import Principal
from auction_scraper.core.config import Settings, get_settings
from auction_scraper.core.crypto import DecryptionError, read_stored_credentials
from auction_scraper.core.security import get_human_principal
from auction_scraper.schemas.jobs import ScrapeJobAccepted, ScrapeJobPayload, ScrapeJobRecord
from auction_scraper.services.queue import get_queue
from auction_scraper.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "",
    response_model=ScrapeJobAccepted,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_scrape(
    principal: Principal = Depends(get_human_principal),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    queue=Depends(get_queue),
) -> ScrapeJobAccepted:
    try:
        record = await repository.get_user_credentials(principal.subject)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if record is None or not record.creds:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Please configure your credentials in Settings first.",
        )

    try:
        credentials = read_stored_credentials(
            record.creds,
            encrypted=record.creds_encrypted,
            raw_key=settings.credentials_encryption_key,
        )
    except DecryptionError as exc:
        logger.warning("stored credentials unreadable for user=%s: %s", principal.subject, exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Saved credentials could not be read. Please save them again in Settings.",
        ) from exc

    if not credentials.target_url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Please configure your Target URL in Settings first.",
        )

    try:
        job_id = await repository.create_job(user_id=principal.subject, url=credentials.target_url)
        payload = ScrapeJobPayload(job_id=job_id, user_id=principal.subject, url=credentials.target_url)
        msg_id = await queue.send(settings.scrape_queue_name, payload.model_dump(by_alias=True))
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    logger.info("queued scrape job=%s msg_id=%s user=%s", job_id, msg_id, principal.subject)
    return ScrapeJobAccepted(job_id=job_id)


@router.get("/{job_id}", response_model=ScrapeJobRecord)
async def get_scrape(
    job_id: str,
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ScrapeJobRecord:
    try:
        job = await repository.get_job(job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found") from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    # Other users' jobs are indistinguishable from missing ones.
    if job.user_id != principal.subject:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    return job
