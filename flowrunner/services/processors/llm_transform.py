"""LLM transform node.

Renders the prompt template against the node input, hands the call to the
``llm`` queue and waits for the worker's result.
"""

import uuid
from typing import Any, Dict, List

from flowrunner.core.logging import get_logger
from flowrunner.services.execution.models import (
    NodeExecutionInput,
    NodeExecutionOutput,
    NodeType,
    ValidationResult,
    utcnow,
)
from flowrunner.services.parameter_resolver import render_template
from flowrunner.services.queue.broker import JobQueue
from flowrunner.services.queue.jobs import LLMExecutionJob, LLMMessage, QueueName
from .base import NodeProcessor

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("openai", "openrouter")


class LlmTransformNodeProcessor(NodeProcessor):
    def __init__(self, queue: JobQueue, timeout_seconds: float = 200.0):
        self.queue = queue
        self.timeout_seconds = timeout_seconds

    def get_node_type(self) -> str:
        return NodeType.LLM_TRANSFORM.value

    async def execute(self, input: NodeExecutionInput) -> NodeExecutionOutput:
        started_at = utcnow()
        config = input.node_config or {}

        validation = await self.validate(config)
        if not validation.valid:
            return self.fail(input, f"Invalid LLM Transform configuration: {', '.join(validation.errors)}",
                             started_at)

        prompt = render_template(config["userPromptTemplate"], input.input_data)
        request_id = f"llm-{input.node_id}-{uuid.uuid4()}"
        job = LLMExecutionJob(
            user_id=input.execution_context.user_id,
            provider=config["provider"],
            model=config["model"],
            messages=[LLMMessage(role="user", content=prompt)],
            temperature=config.get("temperature"),
            max_output_tokens=config.get("maxOutputTokens"),
            response_schema=config.get("outputSchema"),
            request_id=request_id,
        )

        logger.info("Enqueueing LLM job", node_id=input.node_id, request_id=request_id,
                    provider=job.provider, model=job.model)

        try:
            queued = await self.queue.enqueue(QueueName.LLM, job.model_dump(), job_id=request_id)
            result = await self.queue.wait_until_finished(QueueName.LLM, queued.id, self.timeout_seconds)
        except Exception as e:
            return self.fail(input, str(e) or type(e).__name__, started_at)

        result = result or {}
        logger.info("LLM transform completed", node_id=input.node_id, request_id=request_id,
                    usage=result.get("usage"))

        return self.succeed(input, {
            "text": result.get("text"),
            "json": result.get("json") or {},
            "usage": result.get("usage"),
            "model": result.get("model"),
            "providerRequestId": result.get("providerRequestId"),
        }, started_at)

    async def validate(self, config: Dict[str, Any]) -> ValidationResult:
        errors: List[str] = []

        provider = config.get("provider")
        if not provider:
            errors.append("Provider is required")
        elif provider not in SUPPORTED_PROVIDERS:
            errors.append('Provider must be "openai" or "openrouter"')

        if not isinstance(config.get("model"), str) or not config.get("model"):
            errors.append("Model is required and must be a string")

        template = config.get("userPromptTemplate")
        if not isinstance(template, str) or not template.strip():
            errors.append("User prompt template is required and must be a non-empty string")

        temperature: Any = config.get("temperature")
        if temperature is not None:
            if not isinstance(temperature, (int, float)) or isinstance(temperature, bool):
                errors.append("Temperature must be a number")
            elif not 0 <= temperature <= 2:
                errors.append("Temperature must be between 0 and 2")

        max_tokens = config.get("maxOutputTokens")
        if max_tokens is not None and (not isinstance(max_tokens, int) or max_tokens < 1):
            errors.append("Max output tokens must be a positive number")

        schema = config.get("outputSchema")
        if schema is not None and not isinstance(schema, dict):
            errors.append("Output schema must be an object")

        return ValidationResult(valid=not errors, errors=errors)
