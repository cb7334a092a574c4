"""Execution routes: enqueue, inspect, resume and stream workflow runs."""

import asyncio
from typing import Any, AsyncGenerator, Dict, Optional

import orjson
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from flowrunner.core.config import Settings
from flowrunner.core.container import container
from flowrunner.core.logging import get_logger
from flowrunner.services.execution.errors import ExecutionStateError
from flowrunner.services.execution.events import ExecutionEventEmitter, Subscription
from flowrunner.services.execution.executor import WorkflowExecutor
from flowrunner.services.execution.models import TriggerType, utcnow
from flowrunner.services.execution.subscriptions import SubscriptionTokenService
from flowrunner.services.queue.broker import JobQueue
from flowrunner.services.queue.jobs import QueueName, WorkflowExecutionJob

logger = get_logger(__name__)
router = APIRouter(prefix="/api/executions", tags=["executions"])


class ExecuteWorkflowRequest(BaseModel):
    workflow_id: str
    user_id: str
    triggered_by: str = TriggerType.MANUAL.value
    initial_input: Dict[str, Any] = Field(default_factory=dict)
    execution_id: Optional[str] = None


class ResumeRequest(BaseModel):
    user_id: str
    signature: str


def _encode(data: Dict[str, Any]) -> str:
    return orjson.dumps(data).decode()


async def execution_event_stream(
    request: Request,
    execution_id: str,
    subscription: Subscription,
    events: ExecutionEventEmitter,
    heartbeat_seconds: float,
) -> AsyncGenerator[dict, None]:
    """Yield SSE messages for one execution until it finishes.

    Sends ``connected`` first, every execution event as it happens, a
    ``heartbeat`` when idle, and ``close`` after the terminal event.
    """
    try:
        yield {
            "event": "connected",
            "data": _encode({"executionId": execution_id, "timestamp": utcnow().isoformat()}),
        }

        while True:
            if await request.is_disconnected():
                logger.debug("SSE client disconnected", execution_id=execution_id)
                break

            try:
                event = await subscription.get(timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield {
                    "event": "heartbeat",
                    "data": _encode({"timestamp": utcnow().isoformat()}),
                }
                continue

            yield {"event": event.type.value, "data": _encode(event.to_dict())}

            if event.is_terminal:
                yield {"event": "close", "data": _encode({"executionId": execution_id})}
                break
    finally:
        events.unsubscribe(subscription)


@router.post("")
async def execute_workflow(
    request: ExecuteWorkflowRequest,
    queue: JobQueue = Depends(lambda: container.job_queue())
):
    """Queue a workflow run. The returned execution id is also the job id."""
    job = WorkflowExecutionJob(**request.model_dump())
    queued = await queue.enqueue(QueueName.WORKFLOW_EXECUTION, job.model_dump(),
                                 job_id=request.execution_id)
    execution_id = request.execution_id or queued.id
    logger.info("Workflow execution queued", workflow_id=request.workflow_id,
                execution_id=execution_id)
    return {"success": True, "executionId": execution_id, "jobState": queued.state.value}


@router.get("/{execution_id}")
async def get_execution(
    execution_id: str,
    user_id: str = Query(...),
    tokens: SubscriptionTokenService = Depends(lambda: container.subscription_tokens()),
    executor: WorkflowExecutor = Depends(lambda: container.executor())
):
    if not await tokens.check_ownership(execution_id, user_id):
        raise HTTPException(status_code=404, detail="Execution not found")
    context = await executor.get_execution(execution_id)
    nodes = await executor.get_node_executions(execution_id)
    return {
        "success": True,
        "execution": context.to_dict(),
        "nodes": [node.model_dump(mode="json") for node in nodes],
    }


@router.post("/{execution_id}/resume")
async def resume_execution(
    execution_id: str,
    request: ResumeRequest,
    tokens: SubscriptionTokenService = Depends(lambda: container.subscription_tokens()),
    executor: WorkflowExecutor = Depends(lambda: container.executor())
):
    """Continue a run that is waiting for a user signature."""
    if not await tokens.check_ownership(execution_id, request.user_id):
        raise HTTPException(status_code=404, detail="Execution not found")
    try:
        context = await executor.resume_execution(execution_id, request.signature)
    except ExecutionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "executionId": execution_id, "status": context.status.value}


@router.post("/{execution_id}/token")
async def issue_subscription_token(
    execution_id: str,
    user_id: str = Query(...),
    tokens: SubscriptionTokenService = Depends(lambda: container.subscription_tokens())
):
    """Issue a short-lived token for the execution's event stream."""
    if not await tokens.check_ownership(execution_id, user_id):
        raise HTTPException(status_code=403, detail="Not allowed to subscribe to this execution")
    token = await tokens.generate(execution_id, user_id)
    return {"success": True, "token": token.token, "expiresAt": token.expires_at}


@router.get("/{execution_id}/stream")
async def stream_execution(
    request: Request,
    execution_id: str,
    token: Optional[str] = Query(None),
    tokens: SubscriptionTokenService = Depends(lambda: container.subscription_tokens()),
    events: ExecutionEventEmitter = Depends(lambda: container.events()),
    settings: Settings = Depends(lambda: container.settings())
) -> EventSourceResponse:
    """SSE stream of one execution's events.

    Events emitted:
    - connected: Initial connection confirmation
    - execution:* and node:*: Execution events as they happen
    - heartbeat: Sent when no event arrived within the heartbeat interval
    - close: Sent after execution:completed or execution:failed
    """
    verification = await tokens.verify(execution_id, token)
    if not verification.valid:
        logger.warning("SSE subscription rejected", execution_id=execution_id,
                       error=verification.error)
        raise HTTPException(status_code=401, detail=verification.error)

    subscription = events.subscribe(execution_id)
    logger.info("SSE client subscribed", execution_id=execution_id, user_id=verification.user_id)
    return EventSourceResponse(execution_event_stream(
        request, execution_id, subscription, events, settings.sse_heartbeat_seconds,
    ))
