"""
Cloud Code client, wake requests and remote quota source over httpx.MockTransport.
"""
import json

import httpx
import pytest

from quota_waker.cloudcode import CloudCodeClient
from quota_waker.errors import (
    AuthExpiredError,
    ForbiddenError,
    QuotaApiError,
    RetryableTransientError,
    raise_for_status,
)
from quota_waker.telemetry.sources import LocalProbeSource, RemoteQuotaSource
from quota_waker.triggers.wake_client import WakeClient, build_wake_body

STREAM_BODY = "\n".join([
    'data: {"response": {"candidates": [{"content": {"parts": [{"text": "thinking", "thought": true}]}}]}, "traceId": "t-1"}',
    "",
    'data: {"response": {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]}}',
    "data: not json",
    'data: {"response": {"responseId": "r-1", "candidates": [{"content": {"parts": [{"text": "lo"}]}}], '
    '"usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2, "totalTokenCount": 5}}}',
    "data: [DONE]",
])

MODELS_RESPONSE = {
    "models": {
        "gemini-3-flash": {
            "displayName": "Gemini 3 Flash",
            "model": "MODEL_PLACEHOLDER_M18",
            "quotaInfo": {"remainingFraction": 1, "resetTime": "2024-01-01T05:00:00Z"},
        },
    },
    "agentModelSorts": [{"groups": [{"modelIds": ["gemini-3-flash"]}]}],
}


def routes(handlers: dict):
    """MockTransport по суффиксу пути; записывает запросы."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        for suffix, respond in handlers.items():
            if request.url.path.endswith(suffix):
                return respond(request)
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    transport.seen = seen
    return transport


class TestRaiseForStatus:

    @pytest.mark.parametrize("status,error", [
        (401, AuthExpiredError),
        (403, ForbiddenError),
        (408, RetryableTransientError),
        (429, RetryableTransientError),
        (503, RetryableTransientError),
        (404, QuotaApiError),
    ])
    def test_classification(self, status, error):
        with pytest.raises(error):
            raise_for_status(httpx.Response(status, text="nope"), "label")

    def test_success_passes(self):
        raise_for_status(httpx.Response(204), "label")


class TestCloudCodeClient:

    @pytest.mark.asyncio
    async def test_wake_reply_parsed_from_stream(self, test_settings):
        transport = routes({":streamGenerateContent": lambda r: httpx.Response(200, text=STREAM_BODY)})
        client = CloudCodeClient(config=test_settings, transport=transport)
        try:
            reply = await WakeClient(client).send("tok", "proj", "gemini-3-flash", "hi", max_output_tokens=8)
        finally:
            await client.close()

        assert reply.text == "Hello"
        assert (reply.prompt_tokens, reply.completion_tokens, reply.total_tokens) == (3, 2, 5)
        assert reply.trace_id == "t-1"
        assert reply.response_id == "r-1"

        request = transport.seen[0]
        assert request.url.params["alt"] == "sse"
        assert request.headers["Authorization"] == "Bearer tok"
        body = json.loads(request.content)
        assert body["model"] == "gemini-3-flash"
        assert body["request"]["generationConfig"] == {"temperature": 0, "maxOutputTokens": 8}

    @pytest.mark.asyncio
    async def test_stream_error_classified(self, test_settings):
        transport = routes({":streamGenerateContent": lambda r: httpx.Response(503, text="overloaded")})
        client = CloudCodeClient(config=test_settings, transport=transport)
        try:
            with pytest.raises(RetryableTransientError):
                await WakeClient(client).send("tok", "proj", "m", "hi")
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, test_settings):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = CloudCodeClient(config=test_settings, transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(RetryableTransientError):
                await client.fetch_available_models("tok", None)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_load_project_id_variants(self, test_settings):
        responses = iter([
            httpx.Response(200, json={"cloudaicompanionProject": "proj-str"}),
            httpx.Response(200, json={"cloudaicompanionProject": {"id": "proj-obj"}}),
            httpx.Response(500),
        ])
        client = CloudCodeClient(config=test_settings, transport=routes({":loadCodeAssist": lambda r: next(responses)}))
        try:
            assert await client.load_project_id("tok") == "proj-str"
            assert await client.load_project_id("tok") == "proj-obj"
            assert await client.load_project_id("tok") is None
        finally:
            await client.close()

    def test_wake_body_without_cap(self):
        body = build_wake_body("proj", "m", "hi")
        assert body["request"]["generationConfig"] == {"temperature": 0}
        assert body["userAgent"] == "antigravity"
        assert body["requestType"] == "agent"
        assert body["requestId"].startswith("agent-")
        assert body["request"]["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]


class TestRemoteQuotaSource:

    @pytest.mark.asyncio
    async def test_fetch_resolves_and_saves_project(self, credentials, tokens, test_settings):
        from quota_waker.accounts.credentials import Credential

        credentials.save_credential(Credential(email="a@example.com", refresh_token="r-a"))
        transport = routes({
            ":loadCodeAssist": lambda r: httpx.Response(200, json={"cloudaicompanionProject": "proj-x"}),
            ":fetchAvailableModels": lambda r: httpx.Response(200, json=MODELS_RESPONSE),
        })
        client = CloudCodeClient(config=test_settings, transport=transport)
        try:
            raw = await RemoteQuotaSource(client, credentials, tokens).fetch()
        finally:
            await client.close()

        assert raw.account_email == "a@example.com"
        assert [e.model_id for e in raw.entries] == ["MODEL_PLACEHOLDER_M18"]
        assert credentials.get_credential("a@example.com").project_id == "proj-x"
        assert json.loads(transport.seen[-1].content) == {"project": "proj-x"}

    @pytest.mark.asyncio
    async def test_unauthorized_response_carries_email(self, credentials, tokens, test_settings):
        transport = routes({":fetchAvailableModels": lambda r: httpx.Response(401)})
        client = CloudCodeClient(config=test_settings, transport=transport)
        try:
            with pytest.raises(AuthExpiredError) as exc_info:
                await RemoteQuotaSource(client, credentials, tokens).fetch_for_account("b@example.com")
        finally:
            await client.close()

        assert exc_info.value.email == "b@example.com"


class TestLocalProbeSource:

    @pytest.mark.asyncio
    async def test_not_ready_without_port(self, test_settings):
        with pytest.raises(RetryableTransientError):
            await LocalProbeSource(config=test_settings).fetch()

    @pytest.mark.asyncio
    async def test_fetch(self, test_settings):
        test_settings.local_probe_port = 4321
        test_settings.local_probe_csrf_token = "csrf"
        status = {
            "userStatus": {
                "cascadeModelConfigData": {
                    "clientModelConfigs": [
                        {"label": "Gemini 3 Flash", "modelOrAlias": {"model": "F"},
                         "quotaInfo": {"remainingFraction": 0.25, "resetTime": "2024-01-01T05:00:00Z"}},
                    ],
                },
            },
        }
        transport = routes({"/GetUserStatus": lambda r: httpx.Response(200, json=status)})

        raw = await LocalProbeSource(config=test_settings, transport=transport).fetch()

        assert [e.remaining_fraction for e in raw.entries] == [0.25]
        request = transport.seen[0]
        assert request.url.port == 4321
        assert request.headers["X-Codeium-Csrf-Token"] == "csrf"

    @pytest.mark.asyncio
    async def test_empty_body_is_retryable(self, test_settings):
        test_settings.local_probe_port = 4321
        test_settings.local_probe_csrf_token = "csrf"
        transport = routes({"/GetUserStatus": lambda r: httpx.Response(200, content=b"")})

        with pytest.raises(RetryableTransientError):
            await LocalProbeSource(config=test_settings, transport=transport).fetch()
