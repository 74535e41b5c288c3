"""Tests for the HTTP agent collaborator and the retry helpers."""

import asyncio
import json

import httpx
import pytest

from agentflow.core.agent import HttpAgentCollaborator, UnconfiguredAgent
from agentflow.core.error_recovery import RetryConfig, execute_async_with_retry, run_with_timeout
from agentflow.core.exceptions import (
    CollaboratorError, EvaluationError, NodeTimeoutError
)


AGENT_URL = "http://agent.test/v1/messages"


def collaborator(handler, **kwargs):
    return HttpAgentCollaborator(AGENT_URL, transport=httpx.MockTransport(handler), **kwargs)


class TestHttpAgentCollaborator:
    """Request shape and failure mapping."""

    async def test_posts_prompt_and_parses_reply(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "content": "done",
                "toolCalls": [{"name": "read_file", "args": {"path": "/tmp"}, "result": "ok", "serverId": "fs"}],
            })

        response = await collaborator(handler, default_model_id="default-model").process_message("hello")

        assert seen["url"] == AGENT_URL
        assert seen["body"] == {"prompt": "hello", "modelId": "default-model"}
        assert response.content == "done"
        assert response.tool_calls[0].server_id == "fs"

    async def test_explicit_model_id_wins(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"content": ""})

        await collaborator(handler, default_model_id="default-model").process_message("hi", model_id="other")

        assert seen["body"]["modelId"] == "other"

    async def test_http_error_status(self):
        client = collaborator(lambda request: httpx.Response(503, text="overloaded"))

        with pytest.raises(CollaboratorError) as exc_info:
            await client.process_message("hi")

        assert exc_info.value.message == "Agent returned HTTP 503"
        assert exc_info.value.details["status_code"] == 503
        assert exc_info.value.recoverable is True

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CollaboratorError, match="Agent request failed"):
            await collaborator(handler).process_message("hi")

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(CollaboratorError, match="timed out"):
            await collaborator(handler, timeout=2.0).process_message("hi")

    async def test_invalid_json(self):
        client = collaborator(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(CollaboratorError, match="invalid JSON"):
            await client.process_message("hi")

    async def test_malformed_payload(self):
        client = collaborator(lambda request: httpx.Response(200, json={"content": {"nested": True}}))

        with pytest.raises(CollaboratorError, match="malformed"):
            await client.process_message("hi")

    async def test_unconfigured_agent_always_fails(self):
        with pytest.raises(CollaboratorError, match="No agent collaborator configured"):
            await UnconfiguredAgent().process_message("hi")


class TestRetryHelpers:
    """Timeout and retry enforcement."""

    def test_retry_config_counts_retries(self):
        config = RetryConfig(max_retries=2, base_delay=1.0, jitter=False)

        assert config.max_attempts == 3
        assert config.get_delay(1) == 1.0
        assert config.get_delay(3) == 4.0
        assert config.should_retry(CollaboratorError("flaky"), 1)
        assert not config.should_retry(CollaboratorError("flaky"), 3)
        assert not config.should_retry(EvaluationError("bad"), 1)
        assert not config.should_retry(ValueError("plain"), 1)

    def test_delay_is_capped(self):
        config = RetryConfig(max_retries=10, base_delay=1.0, max_delay=5.0, jitter=False)

        assert config.get_delay(8) == 5.0

    async def test_timeout_raises_node_timeout(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(NodeTimeoutError) as exc_info:
            await run_with_timeout(slow, 0.01, "node_1")

        assert exc_info.value.context["node_id"] == "node_1"

    async def test_no_timeout_means_unbounded(self):
        async def quick():
            return "ok"

        assert await run_with_timeout(quick, None, "node_1") == "ok"

    async def test_retry_reports_attempts(self):
        attempts = []
        retried = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise CollaboratorError("flaky")
            return "ok"

        result = await execute_async_with_retry(
            flaky,
            RetryConfig(max_retries=3, base_delay=0.0),
            operation="flaky call",
            on_retry=lambda used, error: retried.append(used)
        )

        assert result == "ok"
        assert retried == [1, 2]
