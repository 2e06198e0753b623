"""
Scenario Orchestrator

Runs one scenario at a time:
- starts a broker with the scenario's policy
- spawns consumers and producers on a fixed-size thread pool
- waits for every worker to report ready
- lets the run go for a bounded time, then requests stop
- waits a bounded grace period for workers to exit
- reports the verdict from the shared failure signal
"""
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .broker import DeliveryHook, InMemoryBroker
from .constants import Defaults
from .logs import get_logger
from .metrics import ScenarioMetrics
from .redis_broker import RedisStreamBroker
from .scenarios import BrokerPolicy, ScenarioConfig
from .sync import ReadinessBarrier
from .workers import ConsumerWorker, ProducerWorker, WorkerContext

logger = get_logger(__name__)

BrokerFactory = Callable[[BrokerPolicy], Any]


class ScenarioStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    SETUP_TIMEOUT = "setup_timeout"


class HarnessError(Exception):
    """Base exception for harness-level problems (not delivery findings)."""
    pass


class SetupTimeoutError(HarnessError):
    """Not every worker reported ready within the readiness timeout."""
    pass


@dataclass
class ScenarioResult:
    scenario: ScenarioConfig
    status: ScenarioStatus
    metrics: ScenarioMetrics
    ready_workers: int = 0
    total_workers: int = 0
    stragglers: int = 0
    max_repeat_count: int = 0
    error: Optional[str] = None
    corruption_events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status is ScenarioStatus.PASSED

    @property
    def failure_signalled(self) -> bool:
        return self.status is ScenarioStatus.FAILED

    def assert_passed(self):
        if self.status is ScenarioStatus.SETUP_TIMEOUT:
            raise SetupTimeoutError(self.error or f"{self.scenario}: setup timed out")
        if self.status is ScenarioStatus.FAILED:
            raise AssertionError(
                f"Test Encountered a null bodied message ({self.scenario}): "
                f"{self.corruption_events[:3]}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario_id": self.scenario.scenario_id,
            "status": self.status.value,
            "ready_workers": self.ready_workers,
            "total_workers": self.total_workers,
            "stragglers": self.stragglers,
            "max_repeat_count": self.max_repeat_count,
            "error": self.error,
            "metrics": self.metrics.to_dict()
        }


class Orchestrator:

    def __init__(
        self,
        broker_factory: BrokerFactory,
        consumer_count: int = Defaults.CONSUMER_COUNT,
        producer_count: int = Defaults.PRODUCER_COUNT,
        topic: str = Defaults.TOPIC,
        receive_timeout: float = Defaults.RECEIVE_TIMEOUT,
        ready_timeout: float = Defaults.READY_TIMEOUT,
        run_seconds: float = Defaults.RUN_SECONDS,
        shutdown_grace: float = Defaults.SHUTDOWN_GRACE,
        priority: int = Defaults.PRIORITY,
        time_to_live: float = Defaults.TIME_TO_LIVE
    ):
        self.broker_factory = broker_factory
        self.consumer_count = consumer_count
        self.producer_count = producer_count
        self.topic = topic
        self.receive_timeout = receive_timeout
        self.ready_timeout = ready_timeout
        self.run_seconds = run_seconds
        self.shutdown_grace = shutdown_grace
        self.priority = priority
        self.time_to_live = time_to_live

        self.barrier: Optional[ReadinessBarrier] = None
        self.context: Optional[WorkerContext] = None
        self.consumers: List[ConsumerWorker] = []
        self.producers: List[ProducerWorker] = []
        self.broker = None

    @classmethod
    def from_settings(cls, settings, broker_factory: BrokerFactory) -> 'Orchestrator':
        return cls(
            broker_factory,
            consumer_count=settings.consumer_count,
            producer_count=settings.producer_count,
            topic=settings.topic,
            receive_timeout=settings.receive_timeout,
            ready_timeout=settings.ready_timeout,
            run_seconds=settings.run_seconds,
            shutdown_grace=settings.shutdown_grace,
            priority=settings.priority,
            time_to_live=settings.time_to_live
        )

    @property
    def total_workers(self) -> int:
        return self.consumer_count + self.producer_count

    def run(self, scenario: ScenarioConfig) -> ScenarioResult:
        logger.info("Running scenario %s", scenario)
        self.broker = self.broker_factory(scenario.policy)
        self.broker.start()
        try:
            return self._run_workers(scenario)
        finally:
            self.broker.stop()

    def _run_workers(self, scenario: ScenarioConfig) -> ScenarioResult:
        self.barrier = ReadinessBarrier(self.total_workers)
        ctx = WorkerContext(
            scenario=scenario,
            broker=self.broker,
            barrier=self.barrier,
            topic=self.topic,
            receive_timeout=self.receive_timeout,
            priority=self.priority,
            time_to_live=self.time_to_live
        )
        self.context = ctx
        self.consumers = [ConsumerWorker(ctx) for _ in range(self.consumer_count)]
        self.producers = [
            ProducerWorker(ctx, name=f"producer-{i + 1}") for i in range(self.producer_count)
        ]

        executor = ThreadPoolExecutor(
            max_workers=max(self.total_workers, 1),
            thread_name_prefix=f"fanout-{scenario.encoding.value}"
        )
        futures = []
        for i, consumer in enumerate(self.consumers):
            logger.info("Created Consumer: %d", i + 1)
            futures.append(executor.submit(consumer.run))
        for i, producer in enumerate(self.producers):
            logger.info("Created Producer: %d", i + 1)
            futures.append(executor.submit(producer.run))

        try:
            self._await_ready()
        except SetupTimeoutError as e:
            logger.error("Scenario %s aborted: %s", scenario.scenario_id, e)
            ctx.stop.set()
            stragglers = self._drain(executor, futures)
            return self._result(ScenarioStatus.SETUP_TIMEOUT, stragglers, error=str(e))

        if ctx.failure.wait(self.run_seconds):
            logger.warning("Failure signalled during scenario %s", scenario.scenario_id)

        ctx.stop.set()
        stragglers = self._drain(executor, futures)

        status = ScenarioStatus.FAILED if ctx.failure.is_set() else ScenarioStatus.PASSED
        return self._result(status, stragglers)

    def _await_ready(self):
        if not self.barrier.await_all(self.ready_timeout):
            ready = self.total_workers - self.barrier.remaining
            raise SetupTimeoutError(
                f"Only {ready}/{self.total_workers} workers ready after {self.ready_timeout}s"
            )

    def _drain(self, executor: ThreadPoolExecutor, futures) -> int:
        """Wait up to the grace period for workers to exit. Returns the number still running."""
        started = time.time()
        done, not_done = wait(futures, timeout=self.shutdown_grace)
        for future in done:
            error = future.exception()
            if error is not None:
                logger.error("Worker raised: %r", error)
        if not_done:
            message = (
                f"{len(not_done)} workers still running {self.shutdown_grace}s after stop request"
            )
            logger.warning(message)
            self.context.metrics.add_warning(message)
        else:
            logger.info("All workers exited in %.2fs", time.time() - started)
        executor.shutdown(wait=False, cancel_futures=True)
        return len(not_done)

    def _result(self, status: ScenarioStatus, stragglers: int, error: Optional[str] = None) -> ScenarioResult:
        ctx = self.context
        metrics = ctx.metrics.finalize()
        metrics.set_gauge("max_repeat_count", ctx.tracker.max_repeat_count)
        metrics.set_gauge("stragglers", stragglers)
        return ScenarioResult(
            scenario=ctx.scenario,
            status=status,
            metrics=metrics,
            ready_workers=self.total_workers - self.barrier.remaining,
            total_workers=self.total_workers,
            stragglers=stragglers,
            max_repeat_count=ctx.tracker.max_repeat_count,
            error=error,
            corruption_events=list(metrics.corruption_events)
        )


def run_matrix(orchestrator: Orchestrator, scenarios: Iterable[ScenarioConfig]) -> List[ScenarioResult]:
    results = []
    for scenario in scenarios:
        result = orchestrator.run(scenario)
        logger.info("Scenario %s: %s", scenario.scenario_id, result.status.value)
        results.append(result)
    return results


def broker_factory_for(settings, delivery_hook: Optional[DeliveryHook] = None) -> BrokerFactory:
    """Broker factory for the backend named in `settings`."""
    if settings.backend == "redis":
        return lambda policy: RedisStreamBroker(
            policy=policy,
            redis_url=settings.redis_url,
            key_prefix=settings.key_prefix
        )
    return lambda policy: InMemoryBroker(policy=policy, delivery_hook=delivery_hook)
