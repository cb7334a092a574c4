"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from flowrunner.core.cache import CacheService
from flowrunner.core.config import Settings
from flowrunner.core.database import Database
from flowrunner.services.execution.events import ExecutionEventEmitter
from flowrunner.services.execution.executor import WorkflowExecutor, settings_secrets
from flowrunner.services.execution.subscriptions import SubscriptionTokenService
from flowrunner.services.execution.validator import WorkflowValidator
from flowrunner.services.llm_client import LLMServiceClient
from flowrunner.services.locking import DistributedLock
from flowrunner.services.processors import build_registry
from flowrunner.services.queue.broker import JobQueue
from flowrunner.services.queue.handlers import (
    LLMJobHandler,
    NodeJobHandler,
    TriggerJobHandler,
    WorkflowJobHandler,
)
from flowrunner.services.queue.jobs import QueueName, build_queue_configs
from flowrunner.services.queue.worker import WorkerPool
from flowrunner.services.rate_limiter import RateLimiter
from flowrunner.services.scheduler import TimeBlockScheduler


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Stores
    validator = providers.Factory(
        WorkflowValidator
    )

    database = providers.Singleton(
        Database,
        settings=settings,
        validator=validator
    )

    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    # Coordination primitives
    lock = providers.Singleton(
        DistributedLock,
        cache=cache
    )

    rate_limiter = providers.Singleton(
        RateLimiter,
        cache=cache
    )

    # Events and stream tokens
    events = providers.Singleton(
        ExecutionEventEmitter,
    )

    subscription_tokens = providers.Singleton(
        SubscriptionTokenService,
        cache=cache,
        database=database,
        ttl_ms=settings.provided.subscription_token_ttl_ms
    )

    # Queues
    queue_configs = providers.Singleton(
        build_queue_configs,
        settings=settings
    )

    job_queue = providers.Singleton(
        JobQueue,
        cache=cache,
        configs=queue_configs,
        poll_interval=settings.provided.queue_poll_interval
    )

    # Execution
    processor_registry = providers.Singleton(
        build_registry,
        queue=job_queue,
        settings=settings
    )

    secrets_provider = providers.Singleton(
        settings_secrets,
        settings=settings
    )

    executor = providers.Singleton(
        WorkflowExecutor,
        database=database,
        registry=processor_registry,
        events=events,
        tokens=subscription_tokens,
        secrets_provider=secrets_provider,
        max_steps=settings.provided.max_steps_per_execution
    )

    scheduler = providers.Singleton(
        TimeBlockScheduler,
        queue=job_queue,
        database=database
    )

    llm_client = providers.Singleton(
        LLMServiceClient,
        base_url=settings.provided.llm_service_url,
        timeout=settings.provided.llm_job_timeout_seconds
    )

    # Workers
    workflow_handler = providers.Factory(WorkflowJobHandler, executor=executor)
    node_handler = providers.Factory(NodeJobHandler, registry=processor_registry)
    llm_handler = providers.Factory(LLMJobHandler, client=llm_client)
    trigger_handler = providers.Factory(
        TriggerJobHandler,
        database=database,
        queue=job_queue,
        lock=lock,
        scheduler=scheduler
    )

    worker_pool = providers.Singleton(
        WorkerPool,
        queue=job_queue,
        handlers=providers.Dict({
            QueueName.WORKFLOW_EXECUTION: workflow_handler,
            QueueName.NODE_EXECUTION: node_handler,
            QueueName.LLM: llm_handler,
            QueueName.WORKFLOW_TRIGGER: trigger_handler,
        }),
        rate_limiter=rate_limiter
    )


# Global container instance
container = Container()
