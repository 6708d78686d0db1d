from datetime import datetime

from pydantic import BaseModel, Field

from claimcheck.services.models import ContentProvenance, InvestigationStatus


class InvestigateRequest(BaseModel):
    post_key: str = Field(min_length=1, max_length=512)
    content_text: str = Field(min_length=1)
    provenance: ContentProvenance = ContentProvenance.CLIENT_FALLBACK
    api_key: str | None = Field(default=None, min_length=1)


class InvestigationAccepted(BaseModel):
    investigation_id: str
    run_id: str | None
    content_version_id: str
    status: InvestigationStatus
    created: bool
    run_created: bool
    enqueued: bool
    key_source: str | None = None


class ClaimSourceOut(BaseModel):
    url: str
    title: str
    snippet: str


class ClaimOut(BaseModel):
    text: str
    context: str
    summary: str
    reasoning: str
    sources: list[ClaimSourceOut] = Field(default_factory=list)


class InvestigationOut(BaseModel):
    id: str
    content_version_id: str
    prompt_id: str
    status: InvestigationStatus
    checked_at: datetime | None
    parent_investigation_id: str | None
    content_diff: str | None
    claims: list[ClaimOut] = Field(default_factory=list)


class StaleRecoveryResult(BaseModel):
    enqueued: int
