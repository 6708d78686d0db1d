from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from claimcheck.core.config import get_settings
from claimcheck.services.leases import run_timing_for_status
from claimcheck.services.models import (
    AttemptOutcome,
    ClaimRecord,
    ClaimSourceRecord,
    ContentProvenance,
    ContentVersionRecord,
    InvestigationRecord,
    InvestigationRunRecord,
    InvestigationStatus,
    KeySourceAttachResult,
    LineageSource,
    RunClaimOutcome,
    RunContext,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class InvestigationWordLimitError(RepositoryValidationError):
    """Raised when content is too long to be investigated."""

    def __init__(self, word_count: int, limit: int) -> None:
        super().__init__(f"content has {word_count} words; limit is {limit}")
        self.word_count = word_count
        self.limit = limit


@dataclass(slots=True)
class InvestigationJobRecord:
    id: str
    run_id: str
    status: str
    attempt: int
    max_attempts: int


@dataclass(slots=True)
class KeySourceRecord:
    run_id: str
    ciphertext: str
    iv: str
    auth_tag: str
    key_id: str
    expires_at: datetime


JOB_STATUSES = {"queued", "claimed", "done", "failed"}

_INVESTIGATION_COLUMNS = """
  i.id::text as id,
  i.content_version_id::text as content_version_id,
  i.prompt_id,
  i.status::text as status,
  i.checked_at,
  i.parent_investigation_id::text as parent_investigation_id,
  i.content_diff
"""

_RUN_COLUMNS = """
  r.id::text as id,
  r.investigation_id::text as investigation_id,
  r.lease_owner,
  r.lease_expires_at,
  r.recover_after_at,
  r.queued_at,
  r.started_at,
  r.heartbeat_at
"""

# Matches leases.is_recoverable_processing_run for an existing run row.
_RECOVERABLE_RUN_SQL = """
  (
    (r.lease_owner is not null and (r.lease_expires_at is null or r.lease_expires_at <= now()))
    or (r.lease_owner is null and (r.recover_after_at is null or r.recover_after_at <= now()))
  )
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        job_retry_base_seconds: int,
        job_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Content versions

    async def upsert_content_version(
        self,
        *,
        post_key: str,
        content_hash: str,
        content_text: str,
        provenance: ContentProvenance,
        word_count: int,
    ) -> ContentVersionRecord:
        normalized_post_key = self._coerce_text(post_key)
        if not normalized_post_key:
            raise RepositoryValidationError("post_key must be a non-empty string")

        pool = await self._get_pool()
        # A server-verified observation upgrades an earlier client fallback, never the reverse.
        row = await pool.fetchrow(
            """
            insert into content_versions (post_key, content_hash, content_text, content_provenance, word_count)
            values ($1, $2, $3, $4::content_provenance, $5)
            on conflict (post_key, content_hash) do update
            set content_provenance = case
              when excluded.content_provenance = 'server_verified' then excluded.content_provenance
              else content_versions.content_provenance
            end
            returning
              id::text as id,
              post_key,
              content_hash,
              content_text,
              content_provenance::text as content_provenance,
              word_count
            """,
            normalized_post_key,
            content_hash,
            content_text,
            ContentProvenance(provenance).value,
            word_count,
        )
        return self._content_version_from_row(row)

    async def get_content_version(self, content_version_id: str) -> ContentVersionRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  id::text as id,
                  post_key,
                  content_hash,
                  content_text,
                  content_provenance::text as content_provenance,
                  word_count
                from content_versions
                where id = $1::uuid
                """,
                content_version_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("content version not found") from exc
        if row is None:
            return None
        return self._content_version_from_row(row)

    # Investigations and runs

    async def get_investigation(self, investigation_id: str) -> InvestigationRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_INVESTIGATION_COLUMNS} from investigations i where i.id = $1::uuid",
                investigation_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("investigation not found") from exc
        if row is None:
            return None
        return self._investigation_from_row(row)

    async def find_investigation_by_content_version(self, content_version_id: str) -> InvestigationRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_INVESTIGATION_COLUMNS} from investigations i where i.content_version_id = $1::uuid",
            content_version_id,
        )
        if row is None:
            return None
        return self._investigation_from_row(row)

    async def find_or_create_investigation(
        self,
        *,
        content_version_id: str,
        prompt_id: str,
        parent_investigation_id: str | None = None,
        content_diff: str | None = None,
    ) -> tuple[InvestigationRecord, bool]:
        """Insert a PENDING investigation, or return the one a racing caller stored first."""
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    insert into investigations as i (
                      content_version_id,
                      prompt_id,
                      status,
                      parent_investigation_id,
                      content_diff
                    )
                    values ($1::uuid, $2, 'pending', $3::uuid, $4)
                    on conflict (content_version_id) do nothing
                    returning
                    """
                    + _INVESTIGATION_COLUMNS,
                    content_version_id,
                    prompt_id,
                    parent_investigation_id,
                    content_diff,
                )
                if row is not None:
                    return self._investigation_from_row(row), True

                row = await conn.fetchrow(
                    f"select {_INVESTIGATION_COLUMNS} from investigations i where i.content_version_id = $1::uuid",
                    content_version_id,
                )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("content version not found") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid content version id") from exc

        if row is None:
            raise RepositoryConflictError("investigation vanished during find-or-create")
        return self._investigation_from_row(row), False

    async def requeue_failed_investigation(
        self,
        investigation_id: str,
        *,
        parent_investigation_id: str | None,
        content_diff: str | None,
    ) -> InvestigationRecord | None:
        """FAILED -> PENDING compare-and-swap. Returns None when the row was not FAILED."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    update investigations as i
                    set
                      status = 'pending',
                      checked_at = null,
                      parent_investigation_id = $2::uuid,
                      content_diff = $3,
                      updated_at = now()
                    where i.id = $1::uuid and i.status = 'failed'
                    returning
                    """
                    + _INVESTIGATION_COLUMNS,
                    investigation_id,
                    parent_investigation_id,
                    content_diff,
                )
                if row is None:
                    return None

                await conn.execute(
                    """
                    update investigation_runs
                    set
                      lease_owner = null,
                      lease_expires_at = null,
                      recover_after_at = null,
                      heartbeat_at = null,
                      queued_at = now(),
                      updated_at = now()
                    where investigation_id = $1::uuid
                    """,
                    investigation_id,
                )
                return self._investigation_from_row(row)

    async def get_run(self, run_id: str) -> InvestigationRunRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_RUN_COLUMNS} from investigation_runs r where r.id = $1::uuid",
                run_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("run not found") from exc
        if row is None:
            return None
        return self._run_from_row(row)

    async def get_run_for_investigation(self, investigation_id: str) -> InvestigationRunRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_RUN_COLUMNS} from investigation_runs r where r.investigation_id = $1::uuid",
            investigation_id,
        )
        if row is None:
            return None
        return self._run_from_row(row)

    async def find_or_create_run(
        self,
        investigation_id: str,
        *,
        status: InvestigationStatus,
    ) -> tuple[InvestigationRunRecord, bool]:
        timing = run_timing_for_status(InvestigationStatus(status))
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                insert into investigation_runs as r (investigation_id, queued_at, started_at, heartbeat_at)
                values ($1::uuid, $2::timestamptz, $3::timestamptz, $4::timestamptz)
                on conflict (investigation_id) do nothing
                returning
                """
                + _RUN_COLUMNS,
                investigation_id,
                timing.queued_at,
                timing.started_at,
                timing.heartbeat_at,
            )
            if row is not None:
                return self._run_from_row(row), True

            row = await conn.fetchrow(
                f"select {_RUN_COLUMNS} from investigation_runs r where r.investigation_id = $1::uuid",
                investigation_id,
            )
        if row is None:
            raise RepositoryConflictError("run vanished during find-or-create")
        return self._run_from_row(row), False

    async def recover_stale_run(self, investigation_id: str) -> bool:
        """Move a PROCESSING investigation with a stale or missing run back to PENDING.

        Both the lifecycle coordinator and the stale-run selector call this; the
        row lock on the investigation makes a second concurrent recovery observe
        PENDING and return False.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                status = await conn.fetchval(
                    "select status::text from investigations where id = $1::uuid for update",
                    investigation_id,
                )
                if status != InvestigationStatus.PROCESSING.value:
                    return False

                run_exists = await conn.fetchval(
                    "select 1 from investigation_runs where investigation_id = $1::uuid for update",
                    investigation_id,
                )
                if run_exists:
                    recovered = await conn.fetchval(
                        f"""
                        update investigation_runs r
                        set
                          lease_owner = null,
                          lease_expires_at = null,
                          recover_after_at = null,
                          heartbeat_at = null,
                          queued_at = now(),
                          updated_at = now()
                        where r.investigation_id = $1::uuid
                          and {_RECOVERABLE_RUN_SQL}
                        returning r.id::text
                        """,
                        investigation_id,
                    )
                    if recovered is None:
                        return False

                await conn.execute(
                    """
                    update investigations
                    set status = 'pending', updated_at = now()
                    where id = $1::uuid and status = 'processing'
                    """,
                    investigation_id,
                )
                return True

    async def list_recoverable_investigation_ids(self, limit: int) -> list[str]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            f"""
            select i.id::text as id
            from investigations i
            left join investigation_runs r on r.investigation_id = i.id
            where i.status = 'processing'
              and (r.id is null or {_RECOVERABLE_RUN_SQL})
            order by coalesce(r.lease_expires_at, r.recover_after_at, i.updated_at) asc
            limit $1
            """,
            bounded_limit,
        )
        return [row["id"] for row in rows]

    async def list_undispatched_pending_run_ids(self, limit: int) -> list[str]:
        """PENDING runs with no live job, e.g. after a crash between commit and dispatch."""
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            """
            select r.id::text as id
            from investigation_runs r
            join investigations i on i.id = r.investigation_id
            where i.status = 'pending'
              and not exists (
                select 1
                from investigation_jobs j
                where j.run_id = r.id
                  and (
                    j.status = 'queued'
                    or (
                      j.status = 'claimed'
                      and j.lease_expires_at > now()
                      and (j.locked_at is null or r.queued_at is null or r.queued_at <= j.locked_at)
                    )
                  )
              )
            order by r.queued_at asc nulls first
            limit $1
            """,
            bounded_limit,
        )
        return [row["id"] for row in rows]

    # Worker leases

    async def try_claim_run_lease(
        self,
        run_id: str,
        *,
        worker_identity: str,
        lease_seconds: int,
    ) -> RunClaimOutcome:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    # Investigation row first: recovery and completion lock in the same order.
                    current = await conn.fetchrow(
                        """
                        select i.id::text as id, i.status::text as status
                        from investigation_runs r
                        join investigations i on i.id = r.investigation_id
                        where r.id = $1::uuid
                        for update of i
                        """,
                        run_id,
                    )
                    if current is None:
                        return RunClaimOutcome.MISSING
                    if current["status"] in {InvestigationStatus.COMPLETE.value, InvestigationStatus.FAILED.value}:
                        return RunClaimOutcome.TERMINAL

                    claimed = await conn.fetchval(
                        """
                        update investigation_runs r
                        set
                          lease_owner = $2,
                          lease_expires_at = now() + ($3::int * interval '1 second'),
                          recover_after_at = null,
                          started_at = now(),
                          heartbeat_at = now(),
                          updated_at = now()
                        where r.id = $1::uuid
                          and (
                            $4::text = 'pending'
                            or r.lease_owner is null
                            or r.lease_expires_at is null
                            or r.lease_expires_at <= now()
                            or r.lease_owner = $2
                          )
                        returning r.id::text
                        """,
                        run_id,
                        worker_identity,
                        max(1, lease_seconds),
                        current["status"],
                    )
                    if claimed is None:
                        return RunClaimOutcome.LEASE_HELD

                    await conn.execute(
                        """
                        update investigations
                        set status = 'processing', updated_at = now()
                        where id = $1::uuid
                        """,
                        current["id"],
                    )
                    return RunClaimOutcome.CLAIMED
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return RunClaimOutcome.MISSING

    async def heartbeat_run_lease(self, run_id: str, *, worker_identity: str, lease_seconds: int) -> bool:
        pool = await self._get_pool()
        renewed = await pool.fetchval(
            """
            update investigation_runs r
            set
              lease_expires_at = now() + ($3::int * interval '1 second'),
              heartbeat_at = now(),
              updated_at = now()
            from investigations i
            where r.id = $1::uuid
              and i.id = r.investigation_id
              and i.status = 'processing'
              and r.lease_owner = $2
            returning r.id::text
            """,
            run_id,
            worker_identity,
            max(1, lease_seconds),
        )
        return renewed is not None

    async def load_run_context(self, run_id: str) -> RunContext | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            run_row = await conn.fetchrow(
                f"select {_RUN_COLUMNS} from investigation_runs r where r.id = $1::uuid",
                run_id,
            )
            if run_row is None:
                return None

            row = await conn.fetchrow(
                f"""
                select
                  {_INVESTIGATION_COLUMNS},
                  cv.content_text
                from investigations i
                join content_versions cv on cv.id = i.content_version_id
                where i.id = $1::uuid
                """,
                run_row["investigation_id"],
            )
            if row is None:
                return None

            investigation = self._investigation_from_row(row)
            parent_claims: list[ClaimRecord] = []
            if investigation.parent_investigation_id is not None:
                parent_claims = await self._fetch_claims(conn, investigation.parent_investigation_id)

        return RunContext(
            run=self._run_from_row(run_row),
            investigation=investigation,
            content_text=row["content_text"],
            parent_claims=parent_claims,
        )

    async def list_claims(self, investigation_id: str) -> list[ClaimRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._fetch_claims(conn, investigation_id)

    async def complete_investigation(
        self,
        run_id: str,
        *,
        worker_identity: str,
        attempt_number: int,
        started_at: datetime,
        claims: list[ClaimRecord],
        metadata: dict[str, Any],
    ) -> bool:
        """PROCESSING -> COMPLETE with claims and a SUCCEEDED attempt, in one transaction.

        Returns False when the investigation was no longer PROCESSING or the run
        lease has passed to another worker; nothing is written then.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                investigation_id = await conn.fetchval(
                    """
                    update investigations i
                    set status = 'complete', checked_at = now(), updated_at = now()
                    from investigation_runs r
                    where r.id = $1::uuid
                      and i.id = r.investigation_id
                      and i.status = 'processing'
                      and r.lease_owner = $2
                    returning i.id::text
                    """,
                    run_id,
                    worker_identity,
                )
                if investigation_id is None:
                    return False

                await self._upsert_attempt(
                    conn,
                    investigation_id=investigation_id,
                    attempt_number=attempt_number,
                    outcome=AttemptOutcome.SUCCEEDED,
                    worker_identity=worker_identity,
                    started_at=started_at,
                    metadata=metadata,
                )

                for claim_order, claim in enumerate(claims):
                    claim_id = await conn.fetchval(
                        """
                        insert into claims (investigation_id, claim_order, text, context, summary, reasoning)
                        values ($1::uuid, $2, $3, $4, $5, $6)
                        returning id::text
                        """,
                        investigation_id,
                        claim_order,
                        claim.text,
                        claim.context,
                        claim.summary,
                        claim.reasoning,
                    )
                    for source_order, source in enumerate(claim.sources):
                        await conn.execute(
                            """
                            insert into claim_sources (claim_id, source_order, url, title, snippet, snapshot_hash)
                            values ($1::uuid, $2, $3, $4, $5, $6)
                            """,
                            claim_id,
                            source_order,
                            source.url,
                            source.title,
                            source.snippet,
                            self._source_snapshot_hash(source),
                        )

                await self._release_run_lease(
                    conn,
                    run_id=run_id,
                    worker_identity=worker_identity,
                    recover_after_seconds=None,
                )
                await conn.execute("delete from investigation_key_sources where run_id = $1::uuid", run_id)
                return True

    async def record_failed_attempt(
        self,
        run_id: str,
        *,
        worker_identity: str,
        attempt_number: int,
        started_at: datetime,
        error_name: str,
        error_message: str,
        status_code: int | None,
        mark_failed: bool,
        recover_after_seconds: int,
    ) -> bool:
        """Record a FAILED attempt unless a competing worker already finished the investigation.

        Returns False, writing nothing, when the investigation is no longer
        PROCESSING, the run lease belongs to another worker, or a SUCCEEDED
        attempt already exists.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    select i.id::text as id, i.status::text as status, r.lease_owner
                    from investigation_runs r
                    join investigations i on i.id = r.investigation_id
                    where r.id = $1::uuid
                    for update of i
                    """,
                    run_id,
                )
                if row is None or row["status"] != InvestigationStatus.PROCESSING.value:
                    return False
                if row["lease_owner"] != worker_identity:
                    return False

                succeeded = await conn.fetchval(
                    """
                    select 1 from investigation_attempts
                    where investigation_id = $1::uuid and outcome = 'succeeded'
                    """,
                    row["id"],
                )
                if succeeded:
                    return False

                await self._upsert_attempt(
                    conn,
                    investigation_id=row["id"],
                    attempt_number=attempt_number,
                    outcome=AttemptOutcome.FAILED,
                    worker_identity=worker_identity,
                    started_at=started_at,
                    error_name=error_name,
                    error_message=error_message,
                    status_code=status_code,
                )

                if mark_failed:
                    await conn.execute(
                        """
                        update investigations
                        set status = 'failed', checked_at = null, updated_at = now()
                        where id = $1::uuid
                        """,
                        row["id"],
                    )
                    await self._release_run_lease(
                        conn,
                        run_id=run_id,
                        worker_identity=worker_identity,
                        recover_after_seconds=None,
                    )
                    await conn.execute("delete from investigation_key_sources where run_id = $1::uuid", run_id)
                else:
                    await self._release_run_lease(
                        conn,
                        run_id=run_id,
                        worker_identity=worker_identity,
                        recover_after_seconds=recover_after_seconds,
                    )
                return True

    async def list_attempts(self, investigation_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              attempt_number,
              outcome::text as outcome,
              worker_identity,
              error_name,
              error_message,
              status_code,
              started_at,
              completed_at
            from investigation_attempts
            where investigation_id = $1::uuid
            order by attempt_number asc
            """,
            investigation_id,
        )
        return [dict(row) for row in rows]

    # Lineage

    async def find_latest_server_verified_complete_investigation(self, post_key: str) -> LineageSource | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select
              {_INVESTIGATION_COLUMNS},
              cv.content_text
            from investigations i
            join content_versions cv on cv.id = i.content_version_id
            where cv.post_key = $1
              and cv.content_provenance = 'server_verified'
              and i.status = 'complete'
            order by i.checked_at desc
            limit 1
            """,
            post_key,
        )
        if row is None:
            return None
        investigation = self._investigation_from_row(row)
        return LineageSource(
            investigation=investigation,
            content_version_id=investigation.content_version_id,
            content_text=row["content_text"],
        )

    # Key sources

    async def insert_key_source(
        self,
        run_id: str,
        *,
        ciphertext: str,
        iv: str,
        auth_tag: str,
        key_id: str,
        expires_at: datetime,
    ) -> KeySourceAttachResult:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    status = await conn.fetchval(
                        """
                        select i.status::text
                        from investigation_runs r
                        join investigations i on i.id = r.investigation_id
                        where r.id = $1::uuid
                        for share of i
                        """,
                        run_id,
                    )
                    if status is None:
                        return KeySourceAttachResult.MISSING_RUN
                    if status != InvestigationStatus.PENDING.value:
                        return KeySourceAttachResult.NOT_PENDING

                    await conn.execute(
                        """
                        insert into investigation_key_sources (run_id, ciphertext, iv, auth_tag, key_id, expires_at)
                        values ($1::uuid, $2, $3, $4, $5, $6)
                        """,
                        run_id,
                        ciphertext,
                        iv,
                        auth_tag,
                        key_id,
                        expires_at,
                    )
                    return KeySourceAttachResult.ATTACHED
        except pg_exc.UniqueViolationError:
            return KeySourceAttachResult.ALREADY_ATTACHED
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return KeySourceAttachResult.MISSING_RUN

    async def get_key_source(self, run_id: str) -> KeySourceRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select run_id::text as run_id, ciphertext, iv, auth_tag, key_id, expires_at
            from investigation_key_sources
            where run_id = $1::uuid
            """,
            run_id,
        )
        if row is None:
            return None
        return KeySourceRecord(
            run_id=row["run_id"],
            ciphertext=row["ciphertext"],
            iv=row["iv"],
            auth_tag=row["auth_tag"],
            key_id=row["key_id"],
            expires_at=row["expires_at"],
        )

    async def delete_expired_key_sources(self, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            """
            delete from investigation_key_sources
            where run_id in (
              select run_id
              from investigation_key_sources
              where expires_at <= now()
              order by expires_at asc
              limit $1
            )
            returning run_id
            """,
            bounded_limit,
        )
        return len(rows)

    # Dispatch queue

    async def enqueue_investigation_job(self, run_id: str) -> bool:
        """Arm the single job row for a run. Returns False when a live job already exists.

        A claimed job stops being live once its run has been requeued after the
        claim was taken: the claiming worker lost the run lease and recovery has
        already moved the investigation back to PENDING.
        """
        pool = await self._get_pool()
        try:
            job_id = await pool.fetchval(
                """
                insert into investigation_jobs as j (run_id, max_attempts)
                values ($1::uuid, $2)
                on conflict (run_id) do update
                set
                  status = 'queued',
                  attempt = 0,
                  max_attempts = excluded.max_attempts,
                  next_run_at = now(),
                  locked_by = null,
                  locked_at = null,
                  lease_expires_at = null,
                  last_error = null,
                  updated_at = now()
                where j.status in ('done', 'failed')
                   or (
                     j.status = 'claimed'
                     and (
                       j.lease_expires_at <= now()
                       or exists (
                         select 1
                         from investigation_runs r
                         join investigations i on i.id = r.investigation_id
                         where r.id = j.run_id
                           and i.status = 'pending'
                           and r.queued_at > j.locked_at
                       )
                     )
                   )
                returning j.id::text
                """,
                run_id,
                self.job_max_attempts,
            )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("run not found") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid run id") from exc
        return job_id is not None

    async def claim_due_investigation_jobs(
        self,
        *,
        worker_id: str,
        limit: int,
        lease_seconds: int,
    ) -> list[InvestigationJobRecord]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 100))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with due as (
                      select id
                      from investigation_jobs
                      where status = 'queued' and next_run_at <= now()
                      order by next_run_at asc, created_at asc
                      limit $1
                      for update skip locked
                    )
                    update investigation_jobs j
                    set
                      status = 'claimed',
                      locked_by = $2,
                      locked_at = now(),
                      lease_expires_at = now() + ($3::int * interval '1 second'),
                      attempt = attempt + 1,
                      updated_at = now()
                    from due
                    where j.id = due.id
                    returning
                      j.id::text as id,
                      j.run_id::text as run_id,
                      j.status::text as status,
                      j.attempt,
                      j.max_attempts
                    """,
                    bounded_limit,
                    worker_id,
                    max(1, lease_seconds),
                )
        return [self._job_from_row(row) for row in rows]

    async def complete_investigation_job(self, job_id: str, *, worker_id: str) -> None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update investigation_jobs
            set
              status = 'done',
              locked_by = null,
              locked_at = null,
              lease_expires_at = null,
              last_error = null,
              updated_at = now()
            where id = $1::uuid and status = 'claimed' and locked_by = $2
            returning id::text as id
            """,
            job_id,
            worker_id,
        )
        if row is None:
            raise RepositoryConflictError("job is not claimed by this worker")

    async def fail_investigation_job(self, job_id: str, *, worker_id: str, error: dict[str, Any]) -> str:
        """Reschedule a claimed job with backoff, or fail it once attempts are exhausted."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                claimed = await conn.fetchrow(
                    """
                    select status::text as status, locked_by, attempt, max_attempts
                    from investigation_jobs
                    where id = $1::uuid
                    for update
                    """,
                    job_id,
                )
                if claimed is None:
                    raise RepositoryNotFoundError("job not found")
                if claimed["status"] != "claimed" or claimed["locked_by"] != worker_id:
                    raise RepositoryConflictError("job is not claimed by this worker")

                attempt = int(claimed["attempt"])
                next_run_at: datetime | None = None
                resolved_status = "failed"
                if attempt < int(claimed["max_attempts"]):
                    retry_delay_seconds = self._compute_retry_delay_seconds(attempt=attempt)
                    next_run_at = datetime.now(timezone.utc) + timedelta(seconds=retry_delay_seconds)
                    resolved_status = "queued"

                await conn.execute(
                    """
                    update investigation_jobs
                    set
                      status = $2::investigation_job_status,
                      last_error = $3::jsonb,
                      locked_by = null,
                      locked_at = null,
                      lease_expires_at = null,
                      next_run_at = coalesce($4::timestamptz, next_run_at),
                      updated_at = now()
                    where id = $1::uuid
                    """,
                    job_id,
                    resolved_status,
                    json.dumps(error),
                    next_run_at,
                )
                return resolved_status

    async def requeue_expired_investigation_jobs(self, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from investigation_jobs
                      where status = 'claimed'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update investigation_jobs j
                    set
                      status = case when j.attempt >= j.max_attempts then 'failed' else 'queued' end::investigation_job_status,
                      locked_by = null,
                      locked_at = null,
                      lease_expires_at = null,
                      next_run_at = now(),
                      updated_at = now()
                    from expired e
                    where j.id = e.id
                    returning j.id::text as id
                    """,
                    bounded_limit,
                )
                return len(rows)

    async def get_investigation_job_for_run(self, run_id: str) -> InvestigationJobRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id::text as id, run_id::text as run_id, status::text as status, attempt, max_attempts
            from investigation_jobs
            where run_id = $1::uuid
            """,
            run_id,
        )
        if row is None:
            return None
        return self._job_from_row(row)

    # Internals

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _upsert_attempt(
        self,
        conn: asyncpg.Connection,
        *,
        investigation_id: str,
        attempt_number: int,
        outcome: AttemptOutcome,
        worker_identity: str,
        started_at: datetime,
        error_name: str | None = None,
        error_message: str | None = None,
        status_code: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await conn.execute(
            """
            insert into investigation_attempts (
              investigation_id,
              attempt_number,
              outcome,
              worker_identity,
              error_name,
              error_message,
              status_code,
              metadata,
              started_at
            )
            values ($1::uuid, $2, $3::attempt_outcome, $4, $5, $6, $7, $8::jsonb, $9)
            on conflict (investigation_id, attempt_number) do update
            set
              outcome = excluded.outcome,
              worker_identity = excluded.worker_identity,
              error_name = excluded.error_name,
              error_message = excluded.error_message,
              status_code = excluded.status_code,
              metadata = excluded.metadata,
              started_at = excluded.started_at,
              completed_at = now()
            """,
            investigation_id,
            max(1, attempt_number),
            outcome.value,
            worker_identity,
            error_name,
            error_message,
            status_code,
            json.dumps(metadata or {}),
            started_at,
        )

    async def _release_run_lease(
        self,
        conn: asyncpg.Connection,
        *,
        run_id: str,
        worker_identity: str,
        recover_after_seconds: int | None,
    ) -> None:
        await conn.execute(
            """
            update investigation_runs
            set
              lease_owner = null,
              lease_expires_at = null,
              recover_after_at = case
                when $2::int is null then null
                else now() + ($2::int * interval '1 second')
              end,
              updated_at = now()
            where id = $1::uuid and lease_owner = $3
            """,
            run_id,
            recover_after_seconds,
            worker_identity,
        )

    async def _fetch_claims(self, conn: asyncpg.Connection, investigation_id: str) -> list[ClaimRecord]:
        rows = await conn.fetch(
            """
            select
              c.id::text as claim_id,
              c.text,
              c.context,
              c.summary,
              c.reasoning,
              s.url,
              s.title,
              s.snippet
            from claims c
            left join claim_sources s on s.claim_id = c.id
            where c.investigation_id = $1::uuid
            order by c.claim_order asc, s.source_order asc
            """,
            investigation_id,
        )
        claims: dict[str, ClaimRecord] = {}
        for row in rows:
            claim = claims.get(row["claim_id"])
            if claim is None:
                claim = ClaimRecord(
                    text=row["text"],
                    context=row["context"],
                    summary=row["summary"],
                    reasoning=row["reasoning"],
                )
                claims[row["claim_id"]] = claim
            if row["url"] is not None:
                claim.sources.append(ClaimSourceRecord(url=row["url"], title=row["title"], snippet=row["snippet"]))
        return list(claims.values())

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.job_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.job_retry_base_seconds * (2**multiplier)
        return min(delay, self.job_retry_max_seconds)

    @staticmethod
    def _source_snapshot_hash(source: ClaimSourceRecord) -> str:
        payload = "\n".join((source.url, source.title, source.snippet))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @staticmethod
    def _investigation_from_row(row: asyncpg.Record) -> InvestigationRecord:
        return InvestigationRecord(
            id=row["id"],
            content_version_id=row["content_version_id"],
            prompt_id=row["prompt_id"],
            status=row["status"],
            checked_at=row["checked_at"],
            parent_investigation_id=row["parent_investigation_id"],
            content_diff=row["content_diff"],
        )

    @staticmethod
    def _run_from_row(row: asyncpg.Record) -> InvestigationRunRecord:
        return InvestigationRunRecord(
            id=row["id"],
            investigation_id=row["investigation_id"],
            lease_owner=row["lease_owner"],
            lease_expires_at=row["lease_expires_at"],
            recover_after_at=row["recover_after_at"],
            queued_at=row["queued_at"],
            started_at=row["started_at"],
            heartbeat_at=row["heartbeat_at"],
        )

    @staticmethod
    def _content_version_from_row(row: asyncpg.Record) -> ContentVersionRecord:
        return ContentVersionRecord(
            id=row["id"],
            post_key=row["post_key"],
            content_hash=row["content_hash"],
            content_text=row["content_text"],
            provenance=ContentProvenance(row["content_provenance"]),
            word_count=int(row["word_count"]),
        )

    @staticmethod
    def _job_from_row(row: asyncpg.Record) -> InvestigationJobRecord:
        return InvestigationJobRecord(
            id=row["id"],
            run_id=row["run_id"],
            status=row["status"],
            attempt=int(row["attempt"]),
            max_attempts=int(row["max_attempts"]),
        )

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
    )
