from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status

from storescout.schemas.candidates import (
    CandidateOut,
    CandidateSummaryOut,
    Category,
    HealthStatus,
    Phase,
    PhaseBookkeepingOut,
    PlatformStatus,
    TagLockRequest,
    TagUnlockRequest,
)
from storescout.services.records import PHASES, CandidateRecord
from storescout.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=list[CandidateSummaryOut])
async def list_candidates(
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    platform_status: PlatformStatus | None = Query(default=None),
    health_status: HealthStatus | None = Query(default=None),
    primary_category: Category | None = Query(default=None),
    is_active: bool | None = Query(default=None),
) -> list[CandidateSummaryOut]:
    try:
        records = await repository.list_candidates(
            limit=limit,
            offset=offset,
            platform_status=platform_status,
            health_status=health_status,
            primary_category=primary_category,
            is_active=is_active,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [CandidateSummaryOut(**record.to_dict()) for record in records]


@router.get("/{candidate_id}", response_model=CandidateOut)
async def get_candidate(candidate_id: str, repository=Depends(get_repository)) -> CandidateOut:
    try:
        record = await repository.get_candidate(candidate_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return _candidate_out(record)


@router.post("/{candidate_id}/lock", response_model=CandidateOut)
async def lock_candidate_tags(
    candidate_id: str,
    payload: TagLockRequest,
    repository=Depends(get_repository),
) -> CandidateOut:
    try:
        record = await repository.lock_tags(
            candidate_id,
            category=payload.category,
            operator_id=payload.operator_id,
            now=datetime.now(timezone.utc),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    return _candidate_out(record)


@router.post("/{candidate_id}/unlock", response_model=CandidateOut)
async def unlock_candidate_tags(
    candidate_id: str,
    payload: TagUnlockRequest,
    repository=Depends(get_repository),
) -> CandidateOut:
    try:
        record = await repository.unlock_tags(
            candidate_id,
            operator_id=payload.operator_id,
            now=datetime.now(timezone.utc),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    return _candidate_out(record)


@router.post("/{candidate_id}/retries/{phase}/reset", response_model=CandidateOut)
async def reset_candidate_retries(
    candidate_id: str,
    phase: Phase,
    repository=Depends(get_repository),
) -> CandidateOut:
    try:
        record = await repository.reset_retries(candidate_id, phase, now=datetime.now(timezone.utc))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return _candidate_out(record)


def _candidate_out(record: CandidateRecord) -> CandidateOut:
    phases = {
        phase: PhaseBookkeepingOut(
            last_attempt=record.last_attempt(phase),
            next_retry_at=record.next_retry_at(phase),
            retry_count=record.retry_count(phase),
        )
        for phase in PHASES
    }
    return CandidateOut(**record.to_dict(), phases=phases)
