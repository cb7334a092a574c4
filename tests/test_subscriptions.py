"""Execution-scoped stream tokens."""

import asyncio

from flowrunner.services.execution.models import ExecutionStatus
from flowrunner.services.execution.subscriptions import SubscriptionTokenService


async def test_generated_token_verifies_for_its_execution(tokens):
    token = await tokens.generate("exec-1", "user-1")

    assert len(token.token) == 64
    verification = await tokens.verify("exec-1", token.token)
    assert verification.valid
    assert verification.user_id == "user-1"


async def test_token_is_scoped_to_one_execution(tokens):
    token = await tokens.generate("exec-1", "user-1")
    verification = await tokens.verify("exec-2", token.token)
    assert not verification.valid
    assert verification.error == "Token not valid for this execution"


async def test_missing_and_unknown_tokens(tokens):
    assert (await tokens.verify("exec-1", None)).error == "Token is required"
    assert (await tokens.verify("exec-1", "deadbeef")).error == "Invalid or expired token"


async def test_expired_token_is_rejected(cache, database):
    short_lived = SubscriptionTokenService(cache, database, ttl_ms=20)
    token = await short_lived.generate("exec-1", "user-1")
    await asyncio.sleep(0.05)
    assert not (await short_lived.verify("exec-1", token.token)).valid


async def test_invalidate_revokes_every_token_of_execution(tokens):
    first = await tokens.generate("exec-1", "user-1")
    second = await tokens.generate("exec-1", "user-1")
    other = await tokens.generate("exec-2", "user-1")

    await tokens.invalidate("exec-1")

    assert not (await tokens.verify("exec-1", first.token)).valid
    assert not (await tokens.verify("exec-1", second.token)).valid
    assert (await tokens.verify("exec-2", other.token)).valid


async def test_invalidate_without_tokens_is_noop(tokens):
    await tokens.invalidate("never-issued")


async def test_ownership_follows_execution_owner(tokens, database, save_workflow):
    workflow_id = await save_workflow([], [], user_id="owner")
    await database.create_execution("exec-9", workflow_id, "owner", "MANUAL", {})
    await database.update_execution_status("exec-9", ExecutionStatus.RUNNING)

    assert await tokens.check_ownership("exec-9", "owner")
    assert not await tokens.check_ownership("exec-9", "intruder")
    assert not await tokens.check_ownership("missing", "owner")
