"""Centralized constants for node types, Redis keys and queue names."""

from typing import FrozenSet

# =============================================================================
# NODE TYPE GROUPS
# =============================================================================

# Entry points: run as passthroughs inside the orchestrator loop and create
# no node-execution record.
PASSTHROUGH_NODE_TYPES: FrozenSet[str] = frozenset([
    'TRIGGER',
    'START',
])

# Nodes whose output carries ``branchToFollow``
BRANCHING_NODE_TYPES: FrozenSet[str] = frozenset([
    'IF',
    'SWITCH',
])

# Node types treated as workflow triggers by the validator
TRIGGER_NODE_TYPES: FrozenSet[str] = frozenset([
    'TRIGGER',
    'START',
    'TIME_BLOCK',
])

# =============================================================================
# EXECUTION LIMITS
# =============================================================================

DEFAULT_MAX_STEPS = 100
MAX_SWITCH_CASES = 5

# Keys injected into a node's input when a paused run resumes with a signature
SIGNATURE_INPUT_KEY = '__signature'
SAFE_TX_HASH_INPUT_KEY = '__safeTxHash'
SAFE_TX_DATA_INPUT_KEY = '__safeTxData'

# =============================================================================
# REDIS KEY PREFIXES
# =============================================================================

LOCK_KEY_PREFIX = 'lock:'
RATE_LIMIT_KEY_PREFIX = 'rateLimit:'
SLIDING_RATE_LIMIT_KEY_PREFIX = 'slidingRateLimit:'
SUBSCRIPTION_TOKEN_KEY_PREFIX = 'sseToken:'
EXECUTION_TOKENS_KEY_PREFIX = 'execToken:'
QUEUE_KEY_PREFIX = 'queue:'

# =============================================================================
# QUEUE NAMES
# =============================================================================

WORKFLOW_EXECUTION_QUEUE = 'workflow-execution'
NODE_EXECUTION_QUEUE = 'node-execution'
SWAP_EXECUTION_QUEUE = 'swap-execution'
LENDING_EXECUTION_QUEUE = 'lending-execution'
PERPS_EXECUTION_QUEUE = 'perps-execution'
LLM_QUEUE = 'llm'
WORKFLOW_TRIGGER_QUEUE = 'workflow-trigger'

ALL_QUEUES: FrozenSet[str] = frozenset([
    WORKFLOW_EXECUTION_QUEUE,
    NODE_EXECUTION_QUEUE,
    SWAP_EXECUTION_QUEUE,
    LENDING_EXECUTION_QUEUE,
    PERPS_EXECUTION_QUEUE,
    LLM_QUEUE,
    WORKFLOW_TRIGGER_QUEUE,
])


def time_block_job_id(time_block_id: str) -> str:
    """Scheduler job id for a time block."""
    return f'timeblock:{time_block_id}'
