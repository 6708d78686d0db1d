from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class InvestigationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class ContentProvenance(str, Enum):
    SERVER_VERIFIED = "server_verified"
    CLIENT_FALLBACK = "client_fallback"


class AttemptOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class InvestigationInvariantError(RuntimeError):
    """Raised when a stored investigation violates its state invariants."""


def parse_investigation_status(value: Any) -> InvestigationStatus:
    if isinstance(value, InvestigationStatus):
        return value
    try:
        return InvestigationStatus(value)
    except ValueError as exc:
        raise InvestigationInvariantError(f"unexpected investigation status: {value!r}") from exc


@dataclass(slots=True)
class ContentVersionRecord:
    id: str
    post_key: str
    content_hash: str
    content_text: str
    provenance: ContentProvenance
    word_count: int


@dataclass(slots=True)
class InvestigationRecord:
    id: str
    content_version_id: str
    prompt_id: str
    status: InvestigationStatus
    checked_at: datetime | None = None
    parent_investigation_id: str | None = None
    content_diff: str | None = None

    def __post_init__(self) -> None:
        self.status = parse_investigation_status(self.status)
        check_investigation_invariants(self)


@dataclass(slots=True)
class InvestigationRunRecord:
    id: str
    investigation_id: str
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    recover_after_at: datetime | None = None
    queued_at: datetime | None = None
    started_at: datetime | None = None
    heartbeat_at: datetime | None = None


@dataclass(slots=True)
class ClaimSourceRecord:
    url: str
    title: str
    snippet: str


@dataclass(slots=True)
class ClaimRecord:
    text: str
    context: str
    summary: str
    reasoning: str
    sources: list[ClaimSourceRecord] = field(default_factory=list)


@dataclass(slots=True)
class RunContext:
    """Everything a worker needs to investigate one leased run."""

    run: InvestigationRunRecord
    investigation: InvestigationRecord
    content_text: str
    parent_claims: list[ClaimRecord] = field(default_factory=list)


@dataclass(slots=True)
class LineageSource:
    investigation: InvestigationRecord
    content_version_id: str
    content_text: str


def check_investigation_invariants(investigation: InvestigationRecord) -> None:
    if investigation.status is InvestigationStatus.COMPLETE and investigation.checked_at is None:
        raise InvestigationInvariantError(
            f"investigation {investigation.id} is complete with null checked_at",
        )
    if investigation.status is not InvestigationStatus.COMPLETE and investigation.checked_at is not None:
        raise InvestigationInvariantError(
            f"investigation {investigation.id} is {investigation.status.value} with checked_at set",
        )
    if (investigation.parent_investigation_id is None) != (investigation.content_diff is None):
        raise InvestigationInvariantError(
            f"investigation {investigation.id} has inconsistent parent/content_diff lineage",
        )


class RunClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    MISSING = "missing"
    TERMINAL = "terminal"
    LEASE_HELD = "lease_held"


class KeySourceAttachResult(str, Enum):
    ATTACHED = "attached"
    ALREADY_ATTACHED = "already_attached"
    NOT_PENDING = "not_pending"
    MISSING_RUN = "missing_run"
