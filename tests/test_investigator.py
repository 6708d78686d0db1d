from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from claimcheck.services.investigator import AnalysisError, HttpInvestigator, InvestigationRequest, UpdateContext
from claimcheck.services.models import ClaimRecord


def _investigator(handler) -> HttpInvestigator:
    return HttpInvestigator("https://investigator.test/", timeout_seconds=5.0, transport=httpx.MockTransport(handler))


def test_successful_response_is_parsed_into_claims() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "claims": [
                    {
                        "text": "Water boils at 100C at sea level.",
                        "context": "Intro",
                        "summary": "Accurate.",
                        "reasoning": "Standard pressure.",
                        "sources": [{"url": "https://example.org", "title": "Ref", "snippet": "100C"}],
                    }
                ],
                "metadata": {"model": "test-model"},
            },
        )

    request = InvestigationRequest(
        content_text="Water boils at 100C.",
        update=UpdateContext(
            old_claims=[ClaimRecord(text="Old", context="c", summary="s", reasoning="r")],
            content_diff="diff",
        ),
        credential="sk-caller",
    )
    output = asyncio.run(_investigator(handler).investigate(request))

    assert seen["url"] == "https://investigator.test/investigate"
    assert seen["auth"] == "Bearer sk-caller"
    assert seen["body"]["is_update"] is True
    assert seen["body"]["old_claims"][0]["text"] == "Old"
    assert seen["body"]["content_diff"] == "diff"
    assert output.claims[0].sources[0].url == "https://example.org"
    assert output.metadata == {"model": "test-model"}


@pytest.mark.parametrize(
    ("status_code", "retryable"),
    [(400, False), (401, False), (403, False), (404, False), (422, False), (429, True), (500, True), (503, True)],
)
def test_http_errors_are_classified(status_code: int, retryable: bool) -> None:
    investigator = _investigator(lambda request: httpx.Response(status_code, json={"error": "nope"}))

    with pytest.raises(AnalysisError) as exc_info:
        asyncio.run(investigator.investigate(InvestigationRequest(content_text="text")))

    assert exc_info.value.retryable is retryable
    assert exc_info.value.status_code == status_code


def test_malformed_output_is_terminal() -> None:
    investigator = _investigator(lambda request: httpx.Response(200, json={"claims": [{"text": ""}]}))

    with pytest.raises(AnalysisError) as exc_info:
        asyncio.run(investigator.investigate(InvestigationRequest(content_text="text")))

    assert exc_info.value.retryable is False


def test_timeouts_are_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(AnalysisError) as exc_info:
        asyncio.run(_investigator(handler).investigate(InvestigationRequest(content_text="text")))

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code is None
