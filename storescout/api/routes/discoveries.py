from fastapi import APIRouter, Depends, HTTPException, status

from storescout.core.config import get_settings
from storescout.core.urls import InvalidURL
from storescout.schemas.discoveries import DiscoveryAccepted, DiscoverySubmission
from storescout.services.discovery import DiscoveryService
from storescout.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.post("", response_model=DiscoveryAccepted, status_code=status.HTTP_202_ACCEPTED)
async def submit_discovery(
    payload: DiscoverySubmission,
    repository=Depends(get_repository),
) -> DiscoveryAccepted:
    service = DiscoveryService.from_settings(repository, get_settings())
    try:
        result = await service.submit(payload.url, payload.source, payload.metadata)
    except InvalidURL as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return DiscoveryAccepted(
        created=result.created,
        record_id=result.record_id,
        url=result.url,
        dedup_key=result.dedup_key,
        enqueued=result.enqueued,
    )
