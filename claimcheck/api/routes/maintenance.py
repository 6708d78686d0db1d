from fastapi import APIRouter, Depends, HTTPException, Query, status

from claimcheck.schemas.investigations import StaleRecoveryResult
from claimcheck.services.dispatch import InvestigationDispatcher
from claimcheck.services.repository import RepositoryUnavailableError, get_repository
from claimcheck.services.selector import run_stale_recovery_selector

router = APIRouter()


@router.post("/recover-stale", response_model=StaleRecoveryResult)
async def recover_stale(
    limit: int = Query(default=100, ge=1, le=1000),
    repository=Depends(get_repository),
) -> StaleRecoveryResult:
    try:
        enqueued = await run_stale_recovery_selector(repository, InvestigationDispatcher(repository), limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return StaleRecoveryResult(enqueued=enqueued)
