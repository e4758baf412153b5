# aios/runtime.py
"""
Composition root

build_runtime() wires one instance of every service in dependency order:

    bus -> store -> queue -> resolver -> supervisor -> phase gate -> engine

then points the queue at engine.execute_task and makes the resolver hold
orchestration completion until every plan phase has passed its review.
Tests and the API each build their own Runtime, so no state is shared
between them.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import redis
from sqlalchemy.engine import Engine

from aios.config import Settings, get_settings
from aios.dependency_resolver import DependencyResolver
from aios.engine import CapabilityRegistry, ExecutionEngine
from aios.events import EventBus
from aios.integrations.completion_client import CompletionClient, CompletionConfig
from aios.integrations.redis_events import RedisEventPublisher
from aios.learning import AgentLearning
from aios.models import create_db_engine, create_session_factory, init_db
from aios.phase_gate import PhaseGateController
from aios.processor import AutoProcessor
from aios.queue_manager import QueueManager
from aios.store import WorkStore
from aios.supervisor import TaskSupervisor

logger = logging.getLogger("aios.runtime")


@dataclass
class Runtime:
    settings: Settings
    db_engine: Engine
    store: WorkStore
    bus: EventBus
    registry: CapabilityRegistry
    queue: QueueManager
    resolver: DependencyResolver
    supervisor: TaskSupervisor
    phase_gate: PhaseGateController
    learning: AgentLearning
    engine: ExecutionEngine
    processor: AutoProcessor
    completion_client: Optional[CompletionClient] = None
    redis_publisher: Optional[RedisEventPublisher] = None

    async def tick(self) -> int:
        return await self.processor.tick()

    async def close(self) -> None:
        await self.processor.stop()
        await self.supervisor.shutdown()
        if self.completion_client is not None:
            await self.completion_client.close()
        if self.redis_publisher is not None:
            self.redis_publisher.close()
        self.db_engine.dispose()
        logger.info("Runtime closed")


def build_runtime(
    settings: Optional[Settings] = None,
    db_engine: Optional[Engine] = None,
    completion_client: Optional[CompletionClient] = None,
    redis_client: Optional[redis.Redis] = None,
    registry: Optional[CapabilityRegistry] = None,
) -> Runtime:
    settings = settings or get_settings()

    if db_engine is None:
        db_engine = create_db_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
    init_db(db_engine)

    if completion_client is None and settings.ANTHROPIC_API_KEY:
        completion_client = CompletionClient(CompletionConfig.from_settings(settings))

    bus = EventBus(max_history=settings.EVENT_HISTORY_SIZE)
    store = WorkStore(create_session_factory(db_engine))
    queue = QueueManager(store, bus, default_max_attempts=settings.QUEUE_MAX_ATTEMPTS)
    resolver = DependencyResolver(store, queue, bus)
    supervisor = TaskSupervisor()
    phase_gate = PhaseGateController(
        store, bus, resolver, supervisor,
        completion_client=completion_client,
        fail_open=settings.PHASE_REVIEW_FAIL_OPEN,
    )
    resolver.set_completion_guard(phase_gate.unreviewed_phases)
    learning = AgentLearning(store)
    engine = ExecutionEngine(
        store, bus,
        registry=registry or CapabilityRegistry(),
        resolver=resolver,
        phase_gate=phase_gate,
        completion_client=completion_client,
        learning=learning,
        default_concurrency=settings.ORCHESTRATION_CONCURRENCY,
        retry_attempts=settings.ORCHESTRATION_RETRY_ATTEMPTS,
        execution_timeout=settings.ORCHESTRATION_EXECUTION_TIMEOUT,
    )
    queue.set_executor(engine.execute_task)
    processor = AutoProcessor(queue, interval=settings.AUTO_PROCESS_INTERVAL)

    redis_publisher = None
    if redis_client is not None or settings.EVENTS_REDIS_ENABLED:
        if redis_client is not None:
            redis_publisher = RedisEventPublisher(redis_client, channel=settings.EVENTS_REDIS_CHANNEL)
        else:
            redis_publisher = RedisEventPublisher.from_url(settings.REDIS_URL, channel=settings.EVENTS_REDIS_CHANNEL)
        redis_publisher.attach(bus)

    logger.info(
        f"Runtime built | environment={settings.ENVIRONMENT} | "
        f"completion={'on' if completion_client else 'off'} | "
        f"redis_events={'on' if redis_publisher else 'off'} | "
        f"fail_open={settings.PHASE_REVIEW_FAIL_OPEN}"
    )

    return Runtime(
        settings=settings,
        db_engine=db_engine,
        store=store,
        bus=bus,
        registry=engine.registry,
        queue=queue,
        resolver=resolver,
        supervisor=supervisor,
        phase_gate=phase_gate,
        learning=learning,
        engine=engine,
        processor=processor,
        completion_client=completion_client,
        redis_publisher=redis_publisher,
    )
