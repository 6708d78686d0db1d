from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from claimcheck.services.models import ClaimRecord, ClaimSourceRecord

TERMINAL_STATUS_CODES = {400, 401, 403, 404, 422}


class AnalysisError(Exception):
    """Raised by investigators. ``retryable`` tells the orchestrator whether another attempt can help."""

    def __init__(self, message: str, *, retryable: bool = True, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


@dataclass(slots=True)
class UpdateContext:
    old_claims: list[ClaimRecord]
    content_diff: str


@dataclass(slots=True)
class InvestigationRequest:
    content_text: str
    update: UpdateContext | None = None
    credential: str | None = None

    @property
    def is_update(self) -> bool:
        return self.update is not None


@dataclass(slots=True)
class InvestigationOutput:
    claims: list[ClaimRecord]
    metadata: dict[str, Any] = field(default_factory=dict)


class Investigator(Protocol):
    async def investigate(self, request: InvestigationRequest) -> InvestigationOutput: ...


class _SourcePayload(BaseModel):
    url: str = Field(min_length=1)
    title: str
    snippet: str


class _ClaimPayload(BaseModel):
    text: str = Field(min_length=1)
    context: str
    summary: str
    reasoning: str
    sources: list[_SourcePayload] = Field(default_factory=list)


class _InvestigationPayload(BaseModel):
    claims: list[_ClaimPayload]
    metadata: dict[str, Any] = Field(default_factory=dict)


class HttpInvestigator:
    """Calls an analysis service that exposes ``POST /investigate``."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def investigate(self, request: InvestigationRequest) -> InvestigationOutput:
        payload: dict[str, Any] = {"content_text": request.content_text, "is_update": request.is_update}
        if request.update is not None:
            payload["content_diff"] = request.update.content_diff
            payload["old_claims"] = [
                {
                    "text": claim.text,
                    "context": claim.context,
                    "summary": claim.summary,
                    "reasoning": claim.reasoning,
                    "sources": [
                        {"url": source.url, "title": source.title, "snippet": source.snippet}
                        for source in claim.sources
                    ],
                }
                for claim in request.update.old_claims
            ]
        headers = {}
        if request.credential:
            headers["Authorization"] = f"Bearer {request.credential}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/investigate", json=payload, headers=headers)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            raise AnalysisError(
                f"investigator responded {status_code}",
                retryable=status_code not in TERMINAL_STATUS_CODES,
                status_code=status_code,
            ) from exc
        except httpx.TimeoutException as exc:
            raise AnalysisError("investigator timed out", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise AnalysisError(f"investigator request failed: {exc}", retryable=True) from exc
        except ValueError as exc:
            raise AnalysisError("investigator returned a non-JSON body", retryable=True) from exc

        try:
            parsed = _InvestigationPayload.model_validate(body)
        except ValidationError as exc:
            raise AnalysisError(f"investigator output failed validation: {exc.error_count()} errors", retryable=False) from exc

        return InvestigationOutput(
            claims=[
                ClaimRecord(
                    text=claim.text,
                    context=claim.context,
                    summary=claim.summary,
                    reasoning=claim.reasoning,
                    sources=[
                        ClaimSourceRecord(url=source.url, title=source.title, snippet=source.snippet)
                        for source in claim.sources
                    ],
                )
                for claim in parsed.claims
            ],
            metadata=parsed.metadata,
        )
