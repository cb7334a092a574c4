"""Workflow orchestrator: walks a workflow graph one node at a time.

Implements:
- Sequential traversal from the trigger node with IF/SWITCH branch selection
- A hard step bound and a visited set against runaway graphs
- Durable execution and node records in the Graph Store
- Pause on ``requiresSignature`` outputs and resume with the user's signature
- Guaranteed finalization: terminal status, terminal event, token invalidation
"""

import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TYPE_CHECKING

from flowrunner.constants import (
    BRANCHING_NODE_TYPES,
    DEFAULT_MAX_STEPS,
    PASSTHROUGH_NODE_TYPES,
    SAFE_TX_DATA_INPUT_KEY,
    SAFE_TX_HASH_INPUT_KEY,
    SIGNATURE_INPUT_KEY,
)
from flowrunner.core.logging import get_logger
from flowrunner.services.processors.passthrough import with_run_metadata
from flowrunner.services.processors.registry import NodeProcessorRegistry
from .conditions import get_nested_value
from .errors import (
    ExecutionStateError,
    FlowError,
    MaxStepsExceededError,
    NodeExecutionFailedError,
    WorkflowNotFoundError,
)
from .events import ExecutionEventEmitter
from .models import (
    ExecutionStatus,
    NodeExecutionInput,
    NodeExecutionOutput,
    WorkflowDefinition,
    WorkflowExecutionContext,
    WorkflowNode,
    as_utc,
    utcnow,
)
from .subscriptions import SubscriptionTokenService
from .validator import upstream_node_ids

if TYPE_CHECKING:
    from flowrunner.core.config import Settings
    from flowrunner.core.database import Database
    from flowrunner.models.database import NodeExecutionRecord, WorkflowExecution

logger = get_logger(__name__)

EXECUTION_ERROR_CODE = "WORKFLOW_EXECUTION_ERROR"
RESUME_ERROR_CODE = "WORKFLOW_RESUME_ERROR"

SecretsProvider = Callable[[str], Awaitable[Dict[str, Any]]]


async def no_secrets(user_id: str) -> Dict[str, Any]:
    return {}


def settings_secrets(settings: "Settings") -> SecretsProvider:
    """Secrets taken from process settings, the same for every user."""
    async def provide(user_id: str) -> Dict[str, Any]:
        if settings.wallet_private_key:
            return {"walletPrivateKey": settings.wallet_private_key}
        return {}
    return provide


class WorkflowExecutor:
    """Runs one workflow execution at a time per call.

    A run owns its ``WorkflowExecutionContext`` exclusively; nothing else
    mutates it while the run is live. Every code path ends in a terminal
    status (or a persisted pause) and revokes the run's subscription tokens.
    """

    def __init__(self, database: "Database", registry: NodeProcessorRegistry,
                 events: ExecutionEventEmitter, tokens: SubscriptionTokenService,
                 secrets_provider: Optional[SecretsProvider] = None,
                 max_steps: int = DEFAULT_MAX_STEPS):
        self.database = database
        self.registry = registry
        self.events = events
        self.tokens = tokens
        self.secrets_provider = secrets_provider or no_secrets
        self.max_steps = max_steps

    # =========================================================================
    # EXECUTION ENTRY POINTS
    # =========================================================================

    async def execute_workflow(self, workflow_id: str, user_id: str, triggered_by: str,
                               initial_input: Optional[Dict[str, Any]] = None,
                               provided_execution_id: Optional[str] = None) -> WorkflowExecutionContext:
        """Run a workflow to a terminal status (or a signature pause).

        When ``provided_execution_id`` already names a persisted execution, its
        stored state is returned and nothing runs.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist (no row is created)
        """
        if provided_execution_id:
            existing = await self.database.get_execution(provided_execution_id)
            if existing:
                logger.info("Execution already exists, returning stored state",
                            execution_id=provided_execution_id, status=existing.status)
                return await self._context_from_row(existing)

        definition = await self.database.load_workflow(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)

        execution_id = provided_execution_id or str(uuid.uuid4())
        initial_input = initial_input or {}
        row, created = await self.database.create_execution(
            execution_id, workflow_id, user_id, triggered_by, initial_input,
            version_number=definition.version,
        )
        if not created:
            return await self._context_from_row(row)

        ctx = WorkflowExecutionContext(
            execution_id=execution_id,
            workflow_id=workflow_id,
            user_id=user_id,
            triggered_by=triggered_by,
            initial_input=initial_input,
            triggered_at=as_utc(row.triggered_at),
            status=ExecutionStatus.RUNNING,
        )
        logger.info("Starting workflow execution", execution_id=execution_id,
                    workflow_id=workflow_id, triggered_by=triggered_by,
                    node_count=len(definition.nodes))

        async def run() -> bool:
            await self.database.update_execution_status(execution_id, ExecutionStatus.RUNNING)
            self.events.execution_started(execution_id, workflow_id, triggered_by)
            if not definition.trigger_node_id:
                raise FlowError(f"Workflow {workflow_id} has no trigger node")
            return await self._walk(definition, ctx, definition.trigger_node_id, set(), 0)

        return await self._drive(ctx, run, EXECUTION_ERROR_CODE)

    async def resume_execution(self, execution_id: str, signature: str) -> WorkflowExecutionContext:
        """Continue a run parked in WAITING_FOR_SIGNATURE.

        The paused node runs again with the signature injected into its input,
        then traversal continues from its successor.

        Raises:
            ExecutionStateError: If the run does not exist, is not waiting, or
                another resume claimed it first
        """
        row = await self.database.get_execution(execution_id)
        if row is None:
            raise ExecutionStateError(f"Execution not found: {execution_id}")
        if row.status != ExecutionStatus.WAITING_FOR_SIGNATURE.value:
            raise ExecutionStateError(
                f"Execution {execution_id} is not waiting for signature (status: {row.status})"
            )
        if not row.paused_at_node_id or not row.paused_context:
            raise ExecutionStateError(f"Execution {execution_id} has no paused state")

        paused = dict(row.paused_context)
        paused_node_id = row.paused_at_node_id
        ctx = WorkflowExecutionContext.from_dict(paused)
        ctx.status = ExecutionStatus.RUNNING
        ctx.current_node_id = paused_node_id
        visited: Set[str] = set(paused.get("visited", []))
        steps = paused.get("steps", 0)

        if not await self.database.claim_paused_execution(execution_id):
            raise ExecutionStateError(f"Execution {execution_id} is already being resumed")
        logger.info("Resuming paused workflow execution", execution_id=execution_id,
                    node_id=paused_node_id)

        async def run() -> bool:
            definition = await self.database.load_workflow(ctx.workflow_id)
            if definition is None:
                raise WorkflowNotFoundError(ctx.workflow_id)
            node = definition.get_node(paused_node_id)
            if node is None:
                raise FlowError(f"Paused node {paused_node_id} not found in workflow")

            result = await self._run_node(definition, ctx, node, extra_input={
                SIGNATURE_INPUT_KEY: signature,
                SAFE_TX_HASH_INPUT_KEY: paused.get("safeTxHash"),
                SAFE_TX_DATA_INPUT_KEY: paused.get("safeTxData"),
            })
            if await self._settle(ctx, node, result, visited, steps):
                return True

            next_id = self._next_node_id(definition, ctx, node, result.output)
            return await self._walk(definition, ctx, next_id, visited, steps)

        return await self._drive(ctx, run, RESUME_ERROR_CODE)

    # =========================================================================
    # READ HELPERS
    # =========================================================================

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecutionContext]:
        row = await self.database.get_execution(execution_id)
        if row is None:
            return None
        return await self._context_from_row(row)

    async def get_node_executions(self, execution_id: str) -> List["NodeExecutionRecord"]:
        return await self.database.list_node_executions(execution_id)

    # =========================================================================
    # TRAVERSAL
    # =========================================================================

    async def _drive(self, ctx: WorkflowExecutionContext, run: Callable[[], Awaitable[bool]],
                     error_code: str) -> WorkflowExecutionContext:
        """Run ``run`` and finalize the execution whatever happens."""
        paused = False
        try:
            paused = await run()
            if not paused:
                ctx.status = ExecutionStatus.SUCCESS
        except Exception as e:
            ctx.status = ExecutionStatus.FAILED
            ctx.error = self._error_payload(e, error_code, ctx)
            logger.error("Workflow execution failed", execution_id=ctx.execution_id,
                         node_id=ctx.error.get("nodeId"), error=str(e))
        finally:
            if not paused:
                await self._finalize(ctx)
        return ctx

    async def _walk(self, definition: WorkflowDefinition, ctx: WorkflowExecutionContext,
                    current_id: Optional[str], visited: Set[str], steps: int) -> bool:
        """Follow edges from ``current_id``. Returns True if the run paused."""
        while current_id and steps < self.max_steps:
            steps += 1

            if current_id in visited:
                logger.warning("Node already visited, stopping traversal",
                               execution_id=ctx.execution_id, node_id=current_id)
                return False
            visited.add(current_id)

            node = definition.get_node(current_id)
            if node is None:
                logger.warning("Edge references missing node, stopping traversal",
                               execution_id=ctx.execution_id, node_id=current_id)
                return False

            ctx.current_node_id = node.id

            if node.type in PASSTHROUGH_NODE_TYPES:
                ctx.node_outputs[node.id] = with_run_metadata(ctx.initial_input, ctx)
                current_id = self._next_node_id(definition, ctx, node, None)
                continue

            result = await self._run_node(definition, ctx, node)
            if await self._settle(ctx, node, result, visited, steps):
                return True

            current_id = self._next_node_id(definition, ctx, node, result.output)

        if current_id:
            raise MaxStepsExceededError(self.max_steps)
        return False

    def _next_node_id(self, definition: WorkflowDefinition, ctx: WorkflowExecutionContext,
                      node: WorkflowNode, output: Optional[Dict[str, Any]]) -> Optional[str]:
        edges = definition.outgoing_edges(node.id)
        if not edges:
            return None

        branch = (output or {}).get("branchToFollow")
        if node.type in BRANCHING_NODE_TYPES and branch is not None:
            branch = str(branch)
            edge = next((e for e in edges if e.source_handle == branch), None)
            if edge is None:
                logger.warning("No edge for selected branch, ending path",
                               execution_id=ctx.execution_id, node_id=node.id, branch=branch)
                ctx.unmatched_branch = {"nodeId": node.id, "branch": branch}
                return None
            logger.info("Branch selected", execution_id=ctx.execution_id,
                        node_id=node.id, branch=branch)
            return edge.target_node_id

        if len(edges) > 1:
            logger.warning("Node has multiple outgoing edges, following the first",
                           execution_id=ctx.execution_id, node_id=node.id, edge_count=len(edges))
        return edges[0].target_node_id

    # =========================================================================
    # NODE EXECUTION
    # =========================================================================

    def collect_input_data(self, definition: WorkflowDefinition, ctx: WorkflowExecutionContext,
                           node_id: str) -> Dict[str, Any]:
        """Build a node's input from its predecessors' outputs.

        Edges with ``data_mapping`` copy selected paths; other edges merge the
        whole source output. ``blocks`` maps every upstream node id that has
        produced output to that output.
        """
        incoming = definition.incoming_edges(node_id)
        if not incoming:
            data = dict(ctx.initial_input)
            data["blocks"] = {}
            return data

        data: Dict[str, Any] = {}
        for edge in incoming:
            source_output = ctx.node_outputs.get(edge.source_node_id)
            if edge.data_mapping:
                for target_key, source_path in edge.data_mapping.items():
                    data[target_key] = get_nested_value(source_output, source_path)
            elif isinstance(source_output, dict):
                data.update(source_output)

        data["blocks"] = {
            ancestor: ctx.node_outputs[ancestor]
            for ancestor in upstream_node_ids(definition, node_id)
            if ancestor in ctx.node_outputs
        }
        return data

    async def _run_node(self, definition: WorkflowDefinition, ctx: WorkflowExecutionContext,
                        node: WorkflowNode,
                        extra_input: Optional[Dict[str, Any]] = None) -> NodeExecutionOutput:
        processor = self.registry.get_processor(node.type)

        input_data = self.collect_input_data(definition, ctx, node.id)
        if extra_input:
            input_data.update(extra_input)

        record_id = await self.database.create_node_execution(
            ctx.execution_id, node.id, node.type, input_data,
        )
        self.events.node_started(ctx.execution_id, node.id, node.type)

        node_input = NodeExecutionInput(
            node_id=node.id,
            node_type=node.type,
            node_config=node.config,
            input_data=input_data,
            execution_context=ctx,
            secrets=await self.secrets_provider(ctx.user_id),
        )

        started_at = utcnow()
        try:
            result = await processor.execute(node_input)
        except Exception as e:
            logger.error("Node processor raised", execution_id=ctx.execution_id,
                         node_id=node.id, node_type=node.type, error=str(e))
            result = processor.fail(node_input, str(e) or type(e).__name__, started_at)

        await self.database.update_node_execution(
            record_id,
            ExecutionStatus.SUCCESS if result.success else ExecutionStatus.FAILED,
            output_data=result.output,
            error=result.error,
            completed_at=result.completed_at,
            duration_ms=result.duration_ms,
        )
        ctx.node_outputs[node.id] = result.output

        if result.success:
            self.events.node_completed(ctx.execution_id, node.id, node.type,
                                       result.output, result.duration_ms)
        else:
            self.events.node_failed(ctx.execution_id, node.id, node.type, result.error)

        logger.info("Node executed", execution_id=ctx.execution_id, node_id=node.id,
                    node_type=node.type, success=result.success, duration_ms=result.duration_ms)
        return result

    async def _settle(self, ctx: WorkflowExecutionContext, node: WorkflowNode,
                      result: NodeExecutionOutput, visited: Set[str], steps: int) -> bool:
        """Decide what a node result means for the run.

        Returns True if the run paused for a signature.

        Raises:
            NodeExecutionFailedError: If the node failed without ``continueOnError``
        """
        if result.success:
            return False

        output = result.output or {}
        if output.get("requiresSignature") and output.get("safeTxHash"):
            await self._pause(ctx, node, output, visited, steps)
            return True

        if (node.config or {}).get("continueOnError"):
            logger.warning("Node failed, continuing", execution_id=ctx.execution_id,
                           node_id=node.id, error=result.error_message)
            return False

        raise NodeExecutionFailedError(node.id, result.error)

    async def _pause(self, ctx: WorkflowExecutionContext, node: WorkflowNode,
                     output: Dict[str, Any], visited: Set[str], steps: int) -> None:
        ctx.status = ExecutionStatus.WAITING_FOR_SIGNATURE
        paused = ctx.to_dict()
        paused.update({
            "visited": sorted(visited),
            "steps": steps,
            "safeTxHash": output.get("safeTxHash"),
            "safeTxData": output.get("safeTxData"),
        })
        await self.database.pause_execution(ctx.execution_id, node.id, paused,
                                            ExecutionStatus.WAITING_FOR_SIGNATURE)
        self.events.node_signature_required(ctx.execution_id, node.id, node.type, {
            "safeTxHash": output.get("safeTxHash"),
            "safeTxData": output.get("safeTxData"),
        })
        logger.info("Node requires user signature, execution paused",
                    execution_id=ctx.execution_id, node_id=node.id)

    # =========================================================================
    # FINALIZATION
    # =========================================================================

    async def _finalize(self, ctx: WorkflowExecutionContext) -> None:
        if not ctx.status.is_terminal:
            # Cancelled mid-run (e.g. worker shutdown); never leave RUNNING behind
            ctx.status = ExecutionStatus.FAILED
            ctx.error = ctx.error or {
                "message": "Execution interrupted",
                "code": EXECUTION_ERROR_CODE,
                "nodeId": ctx.current_node_id,
            }
        ctx.completed_at = utcnow()

        try:
            await self.database.update_execution_status(ctx.execution_id, ctx.status, ctx.error)
            await self.database.touch_workflow(ctx.workflow_id)
        finally:
            if ctx.status == ExecutionStatus.SUCCESS:
                self.events.execution_completed(ctx.execution_id, {
                    "workflowId": ctx.workflow_id,
                    "nodeCount": len(ctx.node_outputs),
                    "unmatchedBranch": ctx.unmatched_branch,
                })
            else:
                self.events.execution_failed(ctx.execution_id, ctx.error or {})
            await self.tokens.invalidate(ctx.execution_id)

        logger.info("Workflow execution finished", execution_id=ctx.execution_id,
                    status=ctx.status.value, nodes_executed=len(ctx.node_outputs))

    @staticmethod
    def _error_payload(error: Exception, code: str, ctx: WorkflowExecutionContext) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"message": str(error), "code": code}
        if isinstance(error, NodeExecutionFailedError):
            payload["nodeId"] = error.node_id
            payload["nodeError"] = error.error
        elif ctx.current_node_id:
            payload["nodeId"] = ctx.current_node_id
        if isinstance(error, FlowError):
            payload["reason"] = error.code
        return payload

    async def _context_from_row(self, row: "WorkflowExecution") -> WorkflowExecutionContext:
        records = await self.database.list_node_executions(row.id)
        node_outputs = {r.node_id: r.output_data for r in records if r.output_data is not None}
        return WorkflowExecutionContext(
            execution_id=row.id,
            workflow_id=row.workflow_id,
            user_id=row.user_id,
            triggered_by=row.triggered_by,
            initial_input=row.initial_input or {},
            node_outputs=node_outputs,
            status=ExecutionStatus(row.status),
            triggered_at=as_utc(row.triggered_at),
            started_at=as_utc(row.started_at),
            completed_at=as_utc(row.completed_at),
            error=row.error,
            current_node_id=row.paused_at_node_id,
            retry_count=row.retry_count,
        )
