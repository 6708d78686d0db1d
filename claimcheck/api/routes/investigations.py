import logging

from fastapi import APIRouter, Depends, HTTPException, status

from claimcheck.core.config import get_settings
from claimcheck.core.hashing import content_hash, normalize_content, word_count
from claimcheck.schemas.investigations import (
    ClaimOut,
    ClaimSourceOut,
    InvestigateRequest,
    InvestigationAccepted,
    InvestigationOut,
)
from claimcheck.services.dispatch import InvestigationDispatcher
from claimcheck.services.key_source import KeySourceConfigurationError, attach_key_source, encrypt_credential
from claimcheck.services.lifecycle import ensure_investigation_queued
from claimcheck.services.lineage import ensure_investigation_with_update_lineage
from claimcheck.services.models import InvestigationStatus
from claimcheck.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=InvestigationAccepted, status_code=status.HTTP_202_ACCEPTED)
async def investigate(payload: InvestigateRequest, repository=Depends(get_repository)) -> InvestigationAccepted:
    settings = get_settings()
    normalized = normalize_content(payload.content_text)
    if not normalized:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="content_text is empty")

    credential = None
    if payload.api_key:
        try:
            credential = encrypt_credential(
                payload.api_key,
                key_material=settings.database_encryption_key,
                key_id=settings.database_encryption_key_id,
            )
        except KeySourceConfigurationError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    try:
        content_version = await repository.upsert_content_version(
            post_key=payload.post_key,
            content_hash=content_hash(normalized),
            content_text=normalized,
            provenance=payload.provenance,
            word_count=word_count(normalized),
        )
        result = await ensure_investigation_with_update_lineage(
            repository,
            content_version,
            settings.investigation_prompt_id,
            allow_requeue_failed=True,
            enqueue=True,
            word_count_limit=settings.word_count_limit,
        )

        key_source = None
        if credential is not None and result.enqueued and result.run is not None:
            attached = await attach_key_source(
                repository,
                result.run.id,
                credential,
                ttl_seconds=settings.key_source_ttl_seconds,
            )
            key_source = attached.value

        await InvestigationDispatcher(repository).dispatch_all(result.events)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return InvestigationAccepted(
        investigation_id=result.investigation.id,
        run_id=result.run.id if result.run is not None else None,
        content_version_id=content_version.id,
        status=result.status,
        created=result.created,
        run_created=result.run_created,
        enqueued=result.enqueued,
        key_source=key_source,
    )


@router.get("/{investigation_id}", response_model=InvestigationOut)
async def get_investigation(investigation_id: str, repository=Depends(get_repository)) -> InvestigationOut:
    try:
        investigation = await repository.get_investigation(investigation_id)
        if investigation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="investigation not found")

        # Polling a stuck investigation recovers it through the same rule the selector uses.
        if investigation.status is InvestigationStatus.PROCESSING:
            result = await ensure_investigation_queued(
                repository,
                investigation.content_version_id,
                investigation.prompt_id,
                enqueue=True,
                parent_investigation_id=investigation.parent_investigation_id,
                content_diff=investigation.content_diff,
                reject_over_word_limit=False,
            )
            await InvestigationDispatcher(repository).dispatch_all(result.events)
            investigation = result.investigation

        claims = []
        if investigation.status is InvestigationStatus.COMPLETE:
            claims = await repository.list_claims(investigation.id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return InvestigationOut(
        id=investigation.id,
        content_version_id=investigation.content_version_id,
        prompt_id=investigation.prompt_id,
        status=investigation.status,
        checked_at=investigation.checked_at,
        parent_investigation_id=investigation.parent_investigation_id,
        content_diff=investigation.content_diff,
        claims=[
            ClaimOut(
                text=claim.text,
                context=claim.context,
                summary=claim.summary,
                reasoning=claim.reasoning,
                sources=[
                    ClaimSourceOut(url=source.url, title=source.title, snippet=source.snippet)
                    for source in claim.sources
                ],
            )
            for claim in claims
        ],
    )
