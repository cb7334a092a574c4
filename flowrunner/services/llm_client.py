"""HTTP client for the LLM micro-service."""

from typing import Any, Dict, Optional

import httpx

from flowrunner.core.logging import get_logger
from flowrunner.services.queue.jobs import LLMExecutionJob

logger = get_logger(__name__)


async def _log_response(response: httpx.Response):
    """Response hook: one log line per LLM service call."""
    request = response.request
    logger.info("LLM service call completed", method=request.method,
                path=request.url.path, status_code=response.status_code)


class LLMServiceClient:
    """Async client for the LLM service's chat endpoint."""

    def __init__(self, base_url: str, timeout: float = 180.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            base_url: Base URL of the LLM service (e.g., http://127.0.0.1:8020)
            timeout: Request timeout in seconds
            transport: Optional transport, used by tests to mock the service
        """
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            timeout=timeout,
            transport=transport,
            event_hooks={'response': [_log_response]},
        )

    async def chat(self, job: LLMExecutionJob) -> Dict[str, Any]:
        """Run one chat completion.

        Returns:
            Dict with text, json, usage, model and providerRequestId

        Raises:
            httpx.HTTPStatusError: On a non-2xx answer, so the queue retries
        """
        payload = {
            "userId": job.user_id,
            "provider": job.provider,
            "model": job.model,
            "messages": [m.model_dump() for m in job.messages],
            "temperature": job.temperature,
            "maxOutputTokens": job.max_output_tokens,
            "responseSchema": job.response_schema,
            "requestId": job.request_id,
        }
        response = await self._client.post("/v1/chat", json=payload)
        response.raise_for_status()
        data = response.json()
        return {
            "text": data.get("text"),
            "json": data.get("json") or {},
            "usage": data.get("usage"),
            "model": data.get("model", job.model),
            "providerRequestId": data.get("providerRequestId"),
        }

    async def close(self) -> None:
        await self._client.aclose()
