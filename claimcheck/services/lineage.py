from __future__ import annotations

from claimcheck.services.diff import build_line_diff
from claimcheck.services.lifecycle import EnsureInvestigationResult, ensure_investigation_queued
from claimcheck.services.models import ContentVersionRecord, LineageSource
from claimcheck.services.repository import PostgresRepository


def select_source_investigation_for_update(
    latest: LineageSource | None,
    current_content_version_id: str,
) -> LineageSource | None:
    """Pick the parent for an update investigation, or None when there is nothing to update from."""
    if latest is None:
        return None
    if latest.content_version_id == current_content_version_id:
        return None
    return latest


async def ensure_investigation_with_update_lineage(
    repository: PostgresRepository,
    content_version: ContentVersionRecord,
    prompt_id: str,
    *,
    allow_requeue_failed: bool = False,
    enqueue: bool = True,
    reject_over_word_limit: bool = True,
    word_count_limit: int | None = None,
) -> EnsureInvestigationResult:
    latest = await repository.find_latest_server_verified_complete_investigation(content_version.post_key)
    source = select_source_investigation_for_update(latest, content_version.id)

    parent_investigation_id: str | None = None
    content_diff: str | None = None
    if source is not None:
        parent_investigation_id = source.investigation.id
        content_diff = build_line_diff(source.content_text, content_version.content_text)

    return await ensure_investigation_queued(
        repository,
        content_version.id,
        prompt_id,
        allow_requeue_failed=allow_requeue_failed,
        enqueue=enqueue,
        parent_investigation_id=parent_investigation_id,
        content_diff=content_diff,
        reject_over_word_limit=reject_over_word_limit,
        word_count_limit=word_count_limit,
    )
