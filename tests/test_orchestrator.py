"""Workflow orchestrator: traversal, branching, failures, pause/resume."""

import asyncio

import pytest

from conftest import ScriptedProcessor, edge, make_context, node
from flowrunner.services.execution.errors import ExecutionStateError, WorkflowNotFoundError
from flowrunner.services.execution.events import ExecutionEventType
from flowrunner.services.execution.executor import WorkflowExecutor
from flowrunner.services.execution.models import ExecutionStatus, WorkflowDefinition


def drain(subscription):
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


# =============================================================================
# LINEAR RUNS
# =============================================================================

async def test_linear_run_succeeds_and_records_nodes(executor, registry, database, save_workflow):
    api = ScriptedProcessor("API", [(True, {"status": 200})])
    registry.register(api)
    workflow_id = await save_workflow(
        [node("start", "START"), node("call", "API")],
        [edge("start", "call")],
    )

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL", {"amount": 3})

    assert ctx.status == ExecutionStatus.SUCCESS
    assert ctx.node_outputs["call"] == {"status": 200}
    start_output = ctx.node_outputs["start"]
    assert start_output["amount"] == 3
    assert start_output["workflowId"] == workflow_id
    assert start_output["executionId"] == ctx.execution_id
    assert start_output["triggeredBy"] == "MANUAL"

    # trigger passthrough creates no node record
    records = await database.list_node_executions(ctx.execution_id)
    assert [r.node_id for r in records] == ["call"]
    assert records[0].status == ExecutionStatus.SUCCESS.value

    row = await database.get_execution(ctx.execution_id)
    assert row.status == ExecutionStatus.SUCCESS.value
    assert row.completed_at is not None


async def test_event_sequence(executor, registry, events, save_workflow):
    registry.register(ScriptedProcessor("API", [(True, {"ok": True})]))
    workflow_id = await save_workflow(
        [node("start", "START"), node("call", "API")],
        [edge("start", "call")],
    )
    subscription = events.subscribe("exec-events")

    await executor.execute_workflow(workflow_id, "user-1", "MANUAL",
                                    provided_execution_id="exec-events")

    assert [e.type for e in drain(subscription)] == [
        ExecutionEventType.EXECUTION_STARTED,
        ExecutionEventType.NODE_STARTED,
        ExecutionEventType.NODE_COMPLETED,
        ExecutionEventType.EXECUTION_COMPLETED,
    ]


async def test_step_bound(database, registry, events, tokens, save_workflow):
    registry.register(ScriptedProcessor("DELAY", [(True, {})]))
    names = [f"d{i}" for i in range(5)]
    workflow_id = await save_workflow(
        [node("start", "START")] + [node(n, "DELAY") for n in names],
        [edge("start", names[0])] + [edge(a, b) for a, b in zip(names, names[1:])],
    )
    executor = WorkflowExecutor(database, registry, events, tokens, max_steps=3)

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL")

    assert ctx.status == ExecutionStatus.FAILED
    assert ctx.error["message"] == "Workflow exceeded maximum steps (3)"
    assert ctx.error["code"] == "WORKFLOW_EXECUTION_ERROR"
    assert "d3" not in ctx.node_outputs


async def test_provided_execution_id_is_idempotent(executor, registry, save_workflow):
    api = ScriptedProcessor("API", [(True, {"n": 1})])
    registry.register(api)
    workflow_id = await save_workflow(
        [node("start", "START"), node("call", "API")],
        [edge("start", "call")],
    )

    first = await executor.execute_workflow(workflow_id, "user-1", "CRON",
                                            provided_execution_id="exec-same")
    second = await executor.execute_workflow(workflow_id, "user-1", "CRON",
                                             provided_execution_id="exec-same")

    assert len(api.calls) == 1
    assert second.execution_id == first.execution_id
    assert second.status == ExecutionStatus.SUCCESS
    assert second.node_outputs["call"] == {"n": 1}


async def test_concurrent_runs_with_same_execution_id_run_once(executor, registry, database,
                                                              save_workflow):
    api = ScriptedProcessor("API", [(True, {"n": 1})])
    registry.register(api)
    workflow_id = await save_workflow(
        [node("start", "START"), node("call", "API")],
        [edge("start", "call")],
    )

    first, second = await asyncio.gather(
        executor.execute_workflow(workflow_id, "user-1", "CRON", provided_execution_id="exec-race"),
        executor.execute_workflow(workflow_id, "user-1", "CRON", provided_execution_id="exec-race"),
    )

    assert len(api.calls) == 1
    assert first.execution_id == second.execution_id == "exec-race"
    records = await database.list_node_executions("exec-race")
    assert [r.node_id for r in records] == ["call"]
    row = await database.get_execution("exec-race")
    assert row.status == ExecutionStatus.SUCCESS.value


async def test_start_failure_finalizes_run(executor, registry, database, tokens, events,
                                           save_workflow, monkeypatch):
    api = ScriptedProcessor("API", [(True, {})])
    registry.register(api)
    workflow_id = await save_workflow(
        [node("start", "START"), node("call", "API")],
        [edge("start", "call")],
    )
    token = await tokens.generate("exec-start", "user-1")
    subscription = events.subscribe("exec-start")
    store_status = database.update_execution_status

    async def refuse_running(execution_id, status, error=None):
        if status == ExecutionStatus.RUNNING:
            raise RuntimeError("database unavailable")
        await store_status(execution_id, status, error)

    monkeypatch.setattr(database, "update_execution_status", refuse_running)

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL",
                                          provided_execution_id="exec-start")

    assert ctx.status == ExecutionStatus.FAILED
    assert ctx.error["message"] == "database unavailable"
    assert api.calls == []
    row = await database.get_execution("exec-start")
    assert row.status == ExecutionStatus.FAILED.value
    assert row.completed_at is not None
    assert not (await tokens.verify("exec-start", token.token)).valid
    assert drain(subscription)[-1].type == ExecutionEventType.EXECUTION_FAILED


async def test_unknown_workflow_raises_without_row(executor, database):
    with pytest.raises(WorkflowNotFoundError):
        await executor.execute_workflow("missing", "user-1", "MANUAL",
                                        provided_execution_id="exec-missing")
    assert await database.get_execution("exec-missing") is None


async def test_revisited_node_stops_traversal(executor, registry, save_workflow):
    a = ScriptedProcessor("API", [(True, {})])
    registry.register(a)
    workflow_id = await save_workflow(
        [node("start", "START"), node("a", "API"), node("b", "API")],
        [edge("start", "a"), edge("a", "b"), edge("b", "a")],
        validate=False,
    )

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL")

    assert ctx.status == ExecutionStatus.SUCCESS
    assert len(a.calls) == 2


async def test_multiple_edges_follow_first(executor, registry, save_workflow):
    registry.register(ScriptedProcessor("API", [(True, {})]))
    workflow_id = await save_workflow(
        [node("start", "START"), node("first", "API"), node("second", "API")],
        [edge("start", "first"), edge("start", "second")],
    )

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL")

    assert "first" in ctx.node_outputs
    assert "second" not in ctx.node_outputs


# =============================================================================
# BRANCHING
# =============================================================================

@pytest.mark.parametrize("price,expected,skipped", [(3, "cheap", "pricey"), (9, "pricey", "cheap")])
async def test_if_branch_selection(executor, registry, save_workflow, price, expected, skipped):
    registry.register(ScriptedProcessor("EMAIL", [(True, {"sent": True})]))
    workflow_id = await save_workflow(
        [
            node("start", "START"),
            node("check", "IF", leftPath="price", operator="lt", rightValue="5"),
            node("cheap", "EMAIL"),
            node("pricey", "EMAIL"),
        ],
        [
            edge("start", "check"),
            edge("check", "cheap", handle="true"),
            edge("check", "pricey", handle="false"),
        ],
    )

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL", {"price": price})

    assert ctx.status == ExecutionStatus.SUCCESS
    assert expected in ctx.node_outputs
    assert skipped not in ctx.node_outputs


async def test_switch_falls_back_to_default(executor, registry, save_workflow):
    registry.register(ScriptedProcessor("EMAIL", [(True, {})]))
    cases = [
        {"id": "ok", "label": "Ok", "operator": "equals", "compareValue": "ok"},
        {"id": "default", "label": "Default", "isDefault": True},
    ]
    workflow_id = await save_workflow(
        [
            node("start", "START"),
            node("route", "SWITCH", valuePath="status", cases=cases),
            node("on_ok", "EMAIL"),
            node("on_default", "EMAIL"),
        ],
        [
            edge("start", "route"),
            edge("route", "on_ok", handle="ok"),
            edge("route", "on_default", handle="default"),
        ],
    )

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL", {"status": "weird"})

    assert ctx.node_outputs["route"]["branchToFollow"] == "default"
    assert "on_default" in ctx.node_outputs
    assert "on_ok" not in ctx.node_outputs


async def test_unmatched_branch_ends_successfully(executor, registry, save_workflow):
    registry.register(ScriptedProcessor("EMAIL", [(True, {})]))
    workflow_id = await save_workflow(
        [
            node("start", "START"),
            node("check", "IF", leftPath="price", operator="gt", rightValue=100),
            node("alert", "EMAIL"),
        ],
        [edge("start", "check"), edge("check", "alert", handle="true")],
    )

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL", {"price": 1})

    assert ctx.status == ExecutionStatus.SUCCESS
    assert ctx.unmatched_branch == {"nodeId": "check", "branch": "false"}
    assert "alert" not in ctx.node_outputs


# =============================================================================
# INPUT PROPAGATION
# =============================================================================

async def test_blocks_carry_every_ancestor_output(executor, registry, save_workflow):
    first = ScriptedProcessor("API", [(True, {"price": 42})])
    last = ScriptedProcessor("EMAIL", [(True, {})])
    registry.register(first)
    registry.register(last)
    workflow_id = await save_workflow(
        [node("start", "START"), node("fetch", "API"), node("notify", "EMAIL")],
        [edge("start", "fetch"), edge("fetch", "notify")],
    )

    await executor.execute_workflow(workflow_id, "user-1", "MANUAL", {"seed": 1})

    notify_input = last.calls[0]
    assert notify_input["price"] == 42
    assert set(notify_input["blocks"]) == {"start", "fetch"}
    assert notify_input["blocks"]["fetch"] == {"price": 42}
    assert notify_input["blocks"]["start"]["seed"] == 1


async def test_data_mapping_copies_selected_paths(executor, registry, save_workflow):
    registry.register(ScriptedProcessor("API", [(True, {"quote": {"usd": 7}, "noise": 1})]))
    sink = ScriptedProcessor("EMAIL", [(True, {})])
    registry.register(sink)
    workflow_id = await save_workflow(
        [node("start", "START"), node("fetch", "API"), node("notify", "EMAIL")],
        [edge("start", "fetch"), edge("fetch", "notify", data_mapping={"amount": "quote.usd"})],
    )

    await executor.execute_workflow(workflow_id, "user-1", "MANUAL")

    assert sink.calls[0]["amount"] == 7
    assert "noise" not in sink.calls[0]


async def test_entry_node_gets_empty_blocks(executor, registry, save_workflow):
    api = ScriptedProcessor("API", [(True, {})])
    registry.register(api)
    workflow_id = await save_workflow([node("call", "API")], [], trigger_node_id="call")

    await executor.execute_workflow(workflow_id, "user-1", "MANUAL", {"seed": 1})

    assert api.calls[0]["seed"] == 1
    assert api.calls[0]["blocks"] == {}


async def test_collect_input_without_incoming_edges(executor):
    definition = WorkflowDefinition(id="wf-1", user_id="user-1",
                                    nodes=[node("start", "START")], edges=[])
    ctx = make_context(initial_input={"amount": 5})

    assert executor.collect_input_data(definition, ctx, "start") == {"amount": 5, "blocks": {}}


# =============================================================================
# FAILURES
# =============================================================================

async def test_node_failure_fails_run_and_revokes_tokens(executor, registry, tokens, events,
                                                         database, save_workflow):
    registry.register(ScriptedProcessor("API", [(False, {"error": "upstream 500"})]))
    after = ScriptedProcessor("EMAIL", [(True, {})])
    registry.register(after)
    workflow_id = await save_workflow(
        [node("start", "START"), node("call", "API"), node("notify", "EMAIL")],
        [edge("start", "call"), edge("call", "notify")],
    )
    token = await tokens.generate("exec-fail", "user-1")
    subscription = events.subscribe("exec-fail")

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL",
                                          provided_execution_id="exec-fail")

    assert ctx.status == ExecutionStatus.FAILED
    assert ctx.error["nodeId"] == "call"
    assert ctx.error["message"] == "Node call failed: upstream 500"
    assert after.calls == []
    assert "call" in ctx.node_outputs

    verification = await tokens.verify("exec-fail", token.token)
    assert not verification.valid

    emitted = drain(subscription)
    assert emitted[-1].type == ExecutionEventType.EXECUTION_FAILED
    assert emitted[-1].error["nodeId"] == "call"

    row = await database.get_execution("exec-fail")
    assert row.status == ExecutionStatus.FAILED.value
    assert row.error["nodeId"] == "call"


async def test_continue_on_error(executor, registry, save_workflow):
    registry.register(ScriptedProcessor("API", [(False, {"error": "flaky"})]))
    after = ScriptedProcessor("EMAIL", [(True, {})])
    registry.register(after)
    workflow_id = await save_workflow(
        [node("start", "START"), node("call", "API", continueOnError=True), node("notify", "EMAIL")],
        [edge("start", "call"), edge("call", "notify")],
    )

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL")

    assert ctx.status == ExecutionStatus.SUCCESS
    assert len(after.calls) == 1


async def test_processor_exception_is_recorded_as_node_failure(executor, registry, database,
                                                               save_workflow):
    class Exploding(ScriptedProcessor):
        async def execute(self, input):
            raise RuntimeError("boom")

    registry.register(Exploding("API", [(True, {})]))
    workflow_id = await save_workflow(
        [node("start", "START"), node("call", "API")],
        [edge("start", "call")],
    )

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL")

    assert ctx.status == ExecutionStatus.FAILED
    records = await database.list_node_executions(ctx.execution_id)
    assert records[0].status == ExecutionStatus.FAILED.value
    assert records[0].error["message"] == "boom"


async def test_missing_processor_fails_run(executor, save_workflow):
    workflow_id = await save_workflow(
        [node("start", "START"), node("wallet", "WALLET")],
        [edge("start", "wallet")],
    )

    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL")

    assert ctx.status == ExecutionStatus.FAILED
    assert ctx.error["reason"] == "PROCESSOR_NOT_FOUND"
    assert ctx.error["nodeId"] == "wallet"


# =============================================================================
# SIGNATURE PAUSE / RESUME
# =============================================================================

SIGNATURE_NEEDED = (False, {
    "error": "Signature required",
    "requiresSignature": True,
    "safeTxHash": "0xabc",
    "safeTxData": {"to": "0x1", "value": "0"},
})


async def test_signature_pause_and_resume(executor, registry, tokens, database, events, save_workflow):
    swap = ScriptedProcessor("SWAP", [SIGNATURE_NEEDED, (True, {"txHash": "0xdef"})])
    notify = ScriptedProcessor("EMAIL", [(True, {"sent": True})])
    registry.register(swap)
    registry.register(notify)
    workflow_id = await save_workflow(
        [node("start", "START"), node("swap", "SWAP"), node("notify", "EMAIL")],
        [edge("start", "swap"), edge("swap", "notify")],
    )
    token = await tokens.generate("exec-sig", "user-1")
    subscription = events.subscribe("exec-sig")

    paused = await executor.execute_workflow(workflow_id, "user-1", "MANUAL", {"amount": 1},
                                             provided_execution_id="exec-sig")

    assert paused.status == ExecutionStatus.WAITING_FOR_SIGNATURE
    assert notify.calls == []
    row = await database.get_execution("exec-sig")
    assert row.status == ExecutionStatus.WAITING_FOR_SIGNATURE.value
    assert row.paused_at_node_id == "swap"
    assert (await tokens.verify("exec-sig", token.token)).valid
    signature_events = [e for e in drain(subscription)
                        if e.type == ExecutionEventType.NODE_SIGNATURE_REQUIRED]
    assert signature_events[0].data["safeTxHash"] == "0xabc"

    resumed = await executor.resume_execution("exec-sig", "0xsig")

    assert resumed.status == ExecutionStatus.SUCCESS
    resume_input = swap.calls[1]
    assert resume_input["__signature"] == "0xsig"
    assert resume_input["__safeTxHash"] == "0xabc"
    assert resume_input["__safeTxData"] == {"to": "0x1", "value": "0"}
    assert len(notify.calls) == 1
    assert resumed.node_outputs["swap"] == {"txHash": "0xdef"}
    assert resumed.node_outputs["start"]["amount"] == 1
    assert not (await tokens.verify("exec-sig", token.token)).valid

    row = await database.get_execution("exec-sig")
    assert row.status == ExecutionStatus.SUCCESS.value
    assert row.paused_context is None


async def test_concurrent_resumes_run_paused_node_once(executor, registry, database, save_workflow):
    swap = ScriptedProcessor("SWAP", [SIGNATURE_NEEDED, (True, {"txHash": "0xdef"})])
    notify = ScriptedProcessor("EMAIL", [(True, {})])
    registry.register(swap)
    registry.register(notify)
    workflow_id = await save_workflow(
        [node("start", "START"), node("swap", "SWAP"), node("notify", "EMAIL")],
        [edge("start", "swap"), edge("swap", "notify")],
    )
    await executor.execute_workflow(workflow_id, "user-1", "MANUAL",
                                    provided_execution_id="exec-double")

    outcomes = await asyncio.gather(
        executor.resume_execution("exec-double", "0xsig"),
        executor.resume_execution("exec-double", "0xsig"),
        return_exceptions=True,
    )

    finished = [o for o in outcomes if not isinstance(o, Exception)]
    refused = [o for o in outcomes if isinstance(o, ExecutionStateError)]
    assert len(finished) == 1 and len(refused) == 1
    assert finished[0].status == ExecutionStatus.SUCCESS
    assert len(swap.calls) == 2
    assert len(notify.calls) == 1
    row = await database.get_execution("exec-double")
    assert row.status == ExecutionStatus.SUCCESS.value


async def test_resume_requires_waiting_run(executor, registry, save_workflow):
    registry.register(ScriptedProcessor("API", [(True, {})]))
    workflow_id = await save_workflow(
        [node("start", "START"), node("call", "API")],
        [edge("start", "call")],
    )
    await executor.execute_workflow(workflow_id, "user-1", "MANUAL", provided_execution_id="exec-done")

    with pytest.raises(ExecutionStateError):
        await executor.resume_execution("exec-done", "0xsig")
    with pytest.raises(ExecutionStateError):
        await executor.resume_execution("exec-unknown", "0xsig")


async def test_read_helpers(executor, registry, save_workflow):
    registry.register(ScriptedProcessor("API", [(True, {"v": 1})]))
    workflow_id = await save_workflow(
        [node("start", "START"), node("a", "API"), node("b", "API")],
        [edge("start", "a"), edge("a", "b")],
    )
    ctx = await executor.execute_workflow(workflow_id, "user-1", "MANUAL")

    stored = await executor.get_execution(ctx.execution_id)
    records = await executor.get_node_executions(ctx.execution_id)

    assert stored.status == ExecutionStatus.SUCCESS
    assert [r.node_id for r in records] == ["a", "b"]
    assert await executor.get_execution("nope") is None
