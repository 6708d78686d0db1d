from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from claimcheck.services.leases import is_recoverable_processing_run, run_timing_for_status
from claimcheck.services.models import (
    ClaimRecord,
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
from claimcheck.services.repository import (
    InvestigationJobRecord,
    KeySourceRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
)


class FakeInvestigationRepository:
    """In-memory store. Each method runs without awaiting, so each one is atomic under asyncio."""

    def __init__(self, *, job_max_attempts: int = 4) -> None:
        self.now = datetime.now(timezone.utc)
        self.job_max_attempts = job_max_attempts
        self.content_versions: dict[str, ContentVersionRecord] = {}
        self.investigations: dict[str, InvestigationRecord] = {}
        self.runs: dict[str, InvestigationRunRecord] = {}
        self.attempts: list[dict[str, Any]] = []
        self.claims: dict[str, list[ClaimRecord]] = {}
        self.key_sources: dict[str, KeySourceRecord] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []
        self.closed = False

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)

    async def close(self) -> None:
        self.closed = True

    # Seeding helpers for tests.

    def seed_content_version(
        self,
        *,
        post_key: str = "post-1",
        text: str = "Line one\nLine two",
        provenance: ContentProvenance = ContentProvenance.SERVER_VERIFIED,
        word_count: int | None = None,
    ) -> ContentVersionRecord:
        record = ContentVersionRecord(
            id=str(uuid.uuid4()),
            post_key=post_key,
            content_hash=f"hash-{len(self.content_versions)}",
            content_text=text,
            provenance=provenance,
            word_count=len(text.split()) if word_count is None else word_count,
        )
        self.content_versions[record.id] = record
        return record

    def run_for(self, investigation_id: str) -> InvestigationRunRecord | None:
        for run in self.runs.values():
            if run.investigation_id == investigation_id:
                return run
        return None

    def set_status(self, investigation_id: str, status: InvestigationStatus) -> None:
        investigation = self.investigations[investigation_id]
        self.investigations[investigation_id] = replace(
            investigation,
            status=status,
            checked_at=self.now if status is InvestigationStatus.COMPLETE else None,
        )

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
        for record in self.content_versions.values():
            if record.post_key == post_key and record.content_hash == content_hash:
                if provenance is ContentProvenance.SERVER_VERIFIED:
                    record.provenance = ContentProvenance.SERVER_VERIFIED
                return record
        record = ContentVersionRecord(
            id=str(uuid.uuid4()),
            post_key=post_key,
            content_hash=content_hash,
            content_text=content_text,
            provenance=ContentProvenance(provenance),
            word_count=word_count,
        )
        self.content_versions[record.id] = record
        return record

    async def get_content_version(self, content_version_id: str) -> ContentVersionRecord | None:
        return self.content_versions.get(content_version_id)

    # Investigations and runs

    async def get_investigation(self, investigation_id: str) -> InvestigationRecord | None:
        return self.investigations.get(investigation_id)

    async def find_investigation_by_content_version(self, content_version_id: str) -> InvestigationRecord | None:
        for investigation in self.investigations.values():
            if investigation.content_version_id == content_version_id:
                return investigation
        return None

    async def find_or_create_investigation(
        self,
        *,
        content_version_id: str,
        prompt_id: str,
        parent_investigation_id: str | None = None,
        content_diff: str | None = None,
    ) -> tuple[InvestigationRecord, bool]:
        self.calls.append("find_or_create_investigation")
        existing = await self.find_investigation_by_content_version(content_version_id)
        if existing is not None:
            return existing, False
        if content_version_id not in self.content_versions:
            raise RepositoryNotFoundError("content version not found")
        investigation = InvestigationRecord(
            id=str(uuid.uuid4()),
            content_version_id=content_version_id,
            prompt_id=prompt_id,
            status=InvestigationStatus.PENDING,
            parent_investigation_id=parent_investigation_id,
            content_diff=content_diff,
        )
        self.investigations[investigation.id] = investigation
        return investigation, True

    async def requeue_failed_investigation(
        self,
        investigation_id: str,
        *,
        parent_investigation_id: str | None,
        content_diff: str | None,
    ) -> InvestigationRecord | None:
        investigation = self.investigations.get(investigation_id)
        if investigation is None or investigation.status is not InvestigationStatus.FAILED:
            return None
        investigation = replace(
            investigation,
            status=InvestigationStatus.PENDING,
            checked_at=None,
            parent_investigation_id=parent_investigation_id,
            content_diff=content_diff,
        )
        self.investigations[investigation_id] = investigation
        run = self.run_for(investigation_id)
        if run is not None:
            run.lease_owner = None
            run.lease_expires_at = None
            run.recover_after_at = None
            run.heartbeat_at = None
            run.queued_at = self.now
        return investigation

    async def get_run(self, run_id: str) -> InvestigationRunRecord | None:
        return self.runs.get(run_id)

    async def get_run_for_investigation(self, investigation_id: str) -> InvestigationRunRecord | None:
        return self.run_for(investigation_id)

    async def find_or_create_run(
        self,
        investigation_id: str,
        *,
        status: InvestigationStatus,
    ) -> tuple[InvestigationRunRecord, bool]:
        existing = self.run_for(investigation_id)
        if existing is not None:
            return existing, False
        timing = run_timing_for_status(InvestigationStatus(status), self.now)
        run = InvestigationRunRecord(
            id=str(uuid.uuid4()),
            investigation_id=investigation_id,
            queued_at=timing.queued_at,
            started_at=timing.started_at,
            heartbeat_at=timing.heartbeat_at,
        )
        self.runs[run.id] = run
        return run, True

    async def recover_stale_run(self, investigation_id: str) -> bool:
        investigation = self.investigations.get(investigation_id)
        if investigation is None or investigation.status is not InvestigationStatus.PROCESSING:
            return False
        run = self.run_for(investigation_id)
        if run is not None:
            if not is_recoverable_processing_run(run, self.now):
                return False
            run.lease_owner = None
            run.lease_expires_at = None
            run.recover_after_at = None
            run.heartbeat_at = None
            run.queued_at = self.now
        self.investigations[investigation_id] = replace(investigation, status=InvestigationStatus.PENDING)
        return True

    async def list_recoverable_investigation_ids(self, limit: int) -> list[str]:
        return [
            investigation.id
            for investigation in self.investigations.values()
            if investigation.status is InvestigationStatus.PROCESSING
            and is_recoverable_processing_run(self.run_for(investigation.id), self.now)
        ][:limit]

    async def list_undispatched_pending_run_ids(self, limit: int) -> list[str]:
        live_runs = {
            job["run_id"]
            for job in self.jobs.values()
            if job["status"] == "queued"
            or (
                job["status"] == "claimed"
                and job["lease_expires_at"] > self.now
                and not self._claim_superseded(job)
            )
        }
        return [
            run.id
            for run in self.runs.values()
            if self.investigations[run.investigation_id].status is InvestigationStatus.PENDING
            and run.id not in live_runs
        ][:limit]

    # Worker leases

    async def try_claim_run_lease(self, run_id: str, *, worker_identity: str, lease_seconds: int) -> RunClaimOutcome:
        run = self.runs.get(run_id)
        if run is None:
            return RunClaimOutcome.MISSING
        investigation = self.investigations[run.investigation_id]
        if investigation.status in {InvestigationStatus.COMPLETE, InvestigationStatus.FAILED}:
            return RunClaimOutcome.TERMINAL
        if investigation.status is InvestigationStatus.PROCESSING:
            lease_active = run.lease_owner is not None and run.lease_expires_at is not None and run.lease_expires_at > self.now
            if lease_active and run.lease_owner != worker_identity:
                return RunClaimOutcome.LEASE_HELD
        run.lease_owner = worker_identity
        run.lease_expires_at = self.now + timedelta(seconds=lease_seconds)
        run.recover_after_at = None
        run.started_at = self.now
        run.heartbeat_at = self.now
        self.investigations[investigation.id] = replace(investigation, status=InvestigationStatus.PROCESSING)
        return RunClaimOutcome.CLAIMED

    async def heartbeat_run_lease(self, run_id: str, *, worker_identity: str, lease_seconds: int) -> bool:
        run = self.runs.get(run_id)
        if run is None or run.lease_owner != worker_identity:
            return False
        if self.investigations[run.investigation_id].status is not InvestigationStatus.PROCESSING:
            return False
        run.lease_expires_at = self.now + timedelta(seconds=lease_seconds)
        run.heartbeat_at = self.now
        return True

    async def load_run_context(self, run_id: str) -> RunContext | None:
        run = self.runs.get(run_id)
        if run is None:
            return None
        investigation = self.investigations[run.investigation_id]
        parent_claims: list[ClaimRecord] = []
        if investigation.parent_investigation_id is not None:
            parent_claims = list(self.claims.get(investigation.parent_investigation_id, []))
        return RunContext(
            run=run,
            investigation=investigation,
            content_text=self.content_versions[investigation.content_version_id].content_text,
            parent_claims=parent_claims,
        )

    async def list_claims(self, investigation_id: str) -> list[ClaimRecord]:
        return list(self.claims.get(investigation_id, []))

    def _upsert_attempt(self, investigation_id: str, attempt_number: int, **fields: Any) -> None:
        for attempt in self.attempts:
            if attempt["investigation_id"] == investigation_id and attempt["attempt_number"] == attempt_number:
                attempt.update(fields)
                return
        self.attempts.append({"investigation_id": investigation_id, "attempt_number": attempt_number, **fields})

    def _release(self, run: InvestigationRunRecord, recover_after_seconds: int | None) -> None:
        run.lease_owner = None
        run.lease_expires_at = None
        run.recover_after_at = (
            None if recover_after_seconds is None else self.now + timedelta(seconds=recover_after_seconds)
        )

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
        run = self.runs.get(run_id)
        if run is None:
            return False
        investigation = self.investigations[run.investigation_id]
        if investigation.status is not InvestigationStatus.PROCESSING:
            return False
        if run.lease_owner != worker_identity:
            return False
        self.investigations[investigation.id] = replace(
            investigation,
            status=InvestigationStatus.COMPLETE,
            checked_at=self.now,
        )
        self._upsert_attempt(
            investigation.id,
            attempt_number,
            outcome="succeeded",
            worker_identity=worker_identity,
            error_name=None,
            metadata=metadata,
        )
        self.claims[investigation.id] = list(claims)
        self._release(run, None)
        self.key_sources.pop(run_id, None)
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
        run = self.runs.get(run_id)
        if run is None:
            return False
        investigation = self.investigations[run.investigation_id]
        if investigation.status is not InvestigationStatus.PROCESSING:
            return False
        if run.lease_owner != worker_identity:
            return False
        if any(
            attempt["investigation_id"] == investigation.id and attempt["outcome"] == "succeeded"
            for attempt in self.attempts
        ):
            return False
        self._upsert_attempt(
            investigation.id,
            attempt_number,
            outcome="failed",
            worker_identity=worker_identity,
            error_name=error_name,
            error_message=error_message,
            status_code=status_code,
        )
        if mark_failed:
            self.investigations[investigation.id] = replace(investigation, status=InvestigationStatus.FAILED)
            self._release(run, None)
            self.key_sources.pop(run_id, None)
        else:
            self._release(run, recover_after_seconds)
        return True

    # Lineage

    async def find_latest_server_verified_complete_investigation(self, post_key: str) -> LineageSource | None:
        candidates = [
            investigation
            for investigation in self.investigations.values()
            if investigation.status is InvestigationStatus.COMPLETE
            and self.content_versions[investigation.content_version_id].post_key == post_key
            and self.content_versions[investigation.content_version_id].provenance is ContentProvenance.SERVER_VERIFIED
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda investigation: investigation.checked_at)
        return LineageSource(
            investigation=latest,
            content_version_id=latest.content_version_id,
            content_text=self.content_versions[latest.content_version_id].content_text,
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
        run = self.runs.get(run_id)
        if run is None:
            return KeySourceAttachResult.MISSING_RUN
        if self.investigations[run.investigation_id].status is not InvestigationStatus.PENDING:
            return KeySourceAttachResult.NOT_PENDING
        if run_id in self.key_sources:
            return KeySourceAttachResult.ALREADY_ATTACHED
        self.key_sources[run_id] = KeySourceRecord(
            run_id=run_id,
            ciphertext=ciphertext,
            iv=iv,
            auth_tag=auth_tag,
            key_id=key_id,
            expires_at=expires_at,
        )
        return KeySourceAttachResult.ATTACHED

    async def get_key_source(self, run_id: str) -> KeySourceRecord | None:
        return self.key_sources.get(run_id)

    async def delete_expired_key_sources(self, limit: int) -> int:
        expired = [run_id for run_id, source in self.key_sources.items() if source.expires_at <= self.now][:limit]
        for run_id in expired:
            del self.key_sources[run_id]
        return len(expired)

    # Dispatch queue

    async def enqueue_investigation_job(self, run_id: str) -> bool:
        if run_id not in self.runs:
            raise RepositoryNotFoundError("run not found")
        for job in self.jobs.values():
            if job["run_id"] != run_id:
                continue
            rearmable = job["status"] in {"done", "failed"} or (
                job["status"] == "claimed"
                and (job["lease_expires_at"] <= self.now or self._claim_superseded(job))
            )
            if not rearmable:
                return False
            job.update(
                status="queued",
                attempt=0,
                locked_by=None,
                locked_at=None,
                lease_expires_at=None,
                next_run_at=self.now,
            )
            return True
        job_id = str(uuid.uuid4())
        self.jobs[job_id] = {
            "id": job_id,
            "run_id": run_id,
            "status": "queued",
            "attempt": 0,
            "max_attempts": self.job_max_attempts,
            "next_run_at": self.now,
            "locked_by": None,
            "locked_at": None,
            "lease_expires_at": None,
            "last_error": None,
        }
        return True

    def _claim_superseded(self, job: dict[str, Any]) -> bool:
        run = self.runs[job["run_id"]]
        if self.investigations[run.investigation_id].status is not InvestigationStatus.PENDING:
            return False
        locked_at = job.get("locked_at")
        return locked_at is not None and run.queued_at is not None and run.queued_at > locked_at

    async def claim_due_investigation_jobs(
        self,
        *,
        worker_id: str,
        limit: int,
        lease_seconds: int,
    ) -> list[InvestigationJobRecord]:
        claimed: list[InvestigationJobRecord] = []
        for job in self.jobs.values():
            if len(claimed) >= limit:
                break
            if job["status"] != "queued" or job["next_run_at"] > self.now:
                continue
            job.update(
                status="claimed",
                locked_by=worker_id,
                locked_at=self.now,
                lease_expires_at=self.now + timedelta(seconds=lease_seconds),
                attempt=job["attempt"] + 1,
            )
            claimed.append(
                InvestigationJobRecord(
                    id=job["id"],
                    run_id=job["run_id"],
                    status=job["status"],
                    attempt=job["attempt"],
                    max_attempts=job["max_attempts"],
                )
            )
        return claimed

    async def complete_investigation_job(self, job_id: str, *, worker_id: str) -> None:
        job = self.jobs[job_id]
        if job["status"] != "claimed" or job["locked_by"] != worker_id:
            raise RepositoryConflictError("job is not claimed by this worker")
        job.update(status="done", locked_by=None, locked_at=None, lease_expires_at=None)

    async def fail_investigation_job(self, job_id: str, *, worker_id: str, error: dict[str, Any]) -> str:
        job = self.jobs[job_id]
        if job["status"] != "claimed" or job["locked_by"] != worker_id:
            raise RepositoryConflictError("job is not claimed by this worker")
        status = "failed" if job["attempt"] >= job["max_attempts"] else "queued"
        job.update(status=status, locked_by=None, locked_at=None, lease_expires_at=None, last_error=error)
        return status

    async def requeue_expired_investigation_jobs(self, limit: int) -> int:
        requeued = 0
        for job in self.jobs.values():
            if requeued >= limit:
                break
            if job["status"] == "claimed" and job["lease_expires_at"] <= self.now:
                job.update(status="queued", locked_by=None, locked_at=None, lease_expires_at=None, next_run_at=self.now)
                requeued += 1
        return requeued


@pytest.fixture
def repository() -> FakeInvestigationRepository:
    return FakeInvestigationRepository()
