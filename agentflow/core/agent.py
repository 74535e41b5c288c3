"""Agent collaborator interface and its HTTP implementation."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from ..models.core import AgentResponse
from .exceptions import CollaboratorError
from .logging import get_logger


logger = get_logger(__name__)


class AgentCollaborator(ABC):
    """The language-model client the dispatcher talks to."""

    @abstractmethod
    async def process_message(self, prompt: str, model_id: Optional[str] = None) -> AgentResponse:
        """Send a prompt and return the agent's reply with any tool calls it made."""


class HttpAgentCollaborator(AgentCollaborator):
    """
    Agent reached over HTTP.

    The endpoint receives ``{"prompt": ..., "modelId": ...}`` and answers with
    ``{"content": ..., "toolCalls": [...]}``. Every transport, status or
    payload failure surfaces as :class:`CollaboratorError`.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        default_model_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout, connect=5.0)
        self.default_model_id = default_model_id
        self.headers = headers or {}
        self.transport = transport
        logger.info(f"HttpAgentCollaborator initialized with base_url: {self.base_url}")

    async def process_message(self, prompt: str, model_id: Optional[str] = None) -> AgentResponse:
        payload: Dict[str, Any] = {"prompt": prompt, "modelId": model_id or self.default_model_id}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, headers=self.headers, transport=self.transport
            ) as client:
                response = await client.post(self.base_url, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise CollaboratorError(
                f"Agent returned HTTP {e.response.status_code}",
                status_code=e.response.status_code
            )
        except httpx.TimeoutException:
            raise CollaboratorError(f"Agent request timed out after {self.timeout.read} seconds")
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Agent request failed: {e}")
        except ValueError as e:
            raise CollaboratorError(f"Agent returned invalid JSON: {e}")

        try:
            return AgentResponse.model_validate(data)
        except ValidationError as e:
            raise CollaboratorError(f"Agent returned malformed response: {e.error_count()} validation errors")


class UnconfiguredAgent(AgentCollaborator):
    """Placeholder used when no agent URL is configured; every call fails."""

    async def process_message(self, prompt: str, model_id: Optional[str] = None) -> AgentResponse:
        raise CollaboratorError("No agent collaborator configured")
