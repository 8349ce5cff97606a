"""Per-chain worker loops.

One ``ChainWorker`` per (chain, network) consumes a bounded queue of events:
deposit observations, withdrawal requests and periodic ticks. ``WorkerPool``
owns the workers and the tick schedulers.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from custody.chains import get_chain_spec
from custody.errors import CustodyError
from custody.services import CustodyServices

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    DEPOSIT_OBSERVED = "deposit_observed"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_APPROVED = "withdrawal_approved"
    CONFIRMATION_TICK = "confirmation_tick"
    SWEEP_TICK = "sweep_tick"
    WITHDRAWAL_CONFIRMATION_TICK = "withdrawal_confirmation_tick"
    HOT_WALLET_TICK = "hot_wallet_tick"


@dataclass
class WorkerEvent:
    """Unit of work for a chain worker.

    If ``future`` is set it receives the handler's result or exception.
    """

    kind: EventKind
    payload: Any = None
    future: Optional[asyncio.Future] = field(default=None, repr=False)


class ChainWorker:
    """Serial event loop for one (chain, network)."""

    def __init__(self, chain: str, network: str, services: CustodyServices, queue_size: int = 1000):
        self.spec = get_chain_spec(chain, network)
        self.services = services
        self.queue: asyncio.Queue[WorkerEvent] = asyncio.Queue(maxsize=queue_size)
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return f"{self.spec.chain}:{self.spec.network}"

    async def submit(self, event: WorkerEvent) -> None:
        """Enqueue, waiting while the queue is full."""
        await self.queue.put(event)

    def submit_nowait(self, event: WorkerEvent) -> None:
        """Enqueue without waiting. Raises asyncio.QueueFull."""
        self.queue.put_nowait(event)

    async def call(self, kind: EventKind, payload: Any = None) -> Any:
        """Enqueue an event and wait for its result."""
        future = asyncio.get_running_loop().create_future()
        await self.submit(WorkerEvent(kind, payload, future))
        return await future

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"worker-{self.name}")

    async def stop(self) -> None:
        """Finish the in-flight event, then stop dequeuing."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def run(self) -> None:
        logger.info(f"Worker {self.name} started")
        while not self._stop.is_set():
            try:
                event = await asyncio.wait_for(self.queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue

            try:
                result = await self.handle(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if isinstance(e, CustodyError):
                    logger.warning(f"Worker {self.name} {event.kind.value} failed: {e}")
                else:
                    logger.exception(f"Worker {self.name} {event.kind.value} crashed: {e}")
                if event.future is not None and not event.future.done():
                    event.future.set_exception(e)
            else:
                if event.future is not None and not event.future.done():
                    event.future.set_result(result)
            finally:
                self.queue.task_done()

        # Events still queued at shutdown are abandoned; waiters get cancelled
        while not self.queue.empty():
            event = self.queue.get_nowait()
            if event.future is not None and not event.future.done():
                event.future.cancel()
            self.queue.task_done()
        logger.info(f"Worker {self.name} stopped")

    async def handle(self, event: WorkerEvent) -> Any:
        s = self.services
        chain, network = self.spec.chain, self.spec.network

        if event.kind == EventKind.DEPOSIT_OBSERVED:
            return await s.tracker.observe(event.payload)
        if event.kind == EventKind.WITHDRAWAL_REQUESTED:
            return await s.withdrawals.process_withdrawal(event.payload)
        if event.kind == EventKind.WITHDRAWAL_APPROVED:
            return await s.withdrawals.approve_withdrawal(**event.payload)
        if event.kind == EventKind.CONFIRMATION_TICK:
            return await s.tracker.poll_pending(chain, network)
        if event.kind == EventKind.SWEEP_TICK:
            if not self.spec.is_evm:
                return None
            outcomes = await s.planner.plan(chain, network)
            execution = await s.executor.run_once(chain, network)
            return {"planned": len(outcomes), **execution}
        if event.kind == EventKind.WITHDRAWAL_CONFIRMATION_TICK:
            confirmed = await s.withdrawals.process_withdrawal_confirmations(chain, network)
            retried = await s.withdrawals.retry_pending(chain, network)
            return {"confirmations": confirmed, "retries": retried}
        if event.kind == EventKind.HOT_WALLET_TICK:
            return await s.monitor.check_balances(chain, network)

        raise ValueError(f"Unknown event kind: {event.kind}")


class WorkerPool:
    """Owns one worker per enabled chain plus periodic tick schedulers."""

    def __init__(self, services: CustodyServices, chains: Optional[list[tuple[str, str]]] = None):
        self.services = services
        settings = services.settings
        self.workers: dict[tuple[str, str], ChainWorker] = {}
        for chain, network in chains if chains is not None else settings.chain_pairs:
            worker = ChainWorker(chain, network, services, settings.worker_queue_size)
            self.workers[worker.spec.key] = worker

        self.intervals = {
            EventKind.CONFIRMATION_TICK: settings.confirmation_interval_seconds,
            EventKind.SWEEP_TICK: settings.sweep_interval_seconds,
            EventKind.WITHDRAWAL_CONFIRMATION_TICK: settings.withdrawal_confirmation_interval_seconds,
            EventKind.HOT_WALLET_TICK: settings.hot_wallet_check_interval_seconds,
        }
        self._stop = asyncio.Event()
        self._tickers: list[asyncio.Task] = []

    def get(self, chain: str, network: str) -> ChainWorker:
        spec = get_chain_spec(chain, network)
        worker = self.workers.get(spec.key)
        if worker is None:
            raise CustodyError(f"No worker running for {spec.chain}:{spec.network}")
        return worker

    async def dispatch(self, chain: str, network: str, kind: EventKind, payload: Any = None) -> Any:
        """Run an event on the chain's worker and return its result."""
        return await self.get(chain, network).call(kind, payload)

    def start(self) -> None:
        for worker in self.workers.values():
            worker.start()
        for kind, interval in self.intervals.items():
            if interval > 0:
                self._tickers.append(asyncio.create_task(self._tick(kind, interval), name=f"tick-{kind.value}"))
        logger.info(f"Started {len(self.workers)} chain workers")

    async def _tick(self, kind: EventKind, interval: float) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            for worker in self.workers.values():
                try:
                    worker.submit_nowait(WorkerEvent(kind))
                except asyncio.QueueFull:
                    logger.warning(f"Worker {worker.name} queue full, skipping {kind.value}")

    async def stop(self) -> None:
        self._stop.set()
        for task in self._tickers:
            await task
        self._tickers.clear()
        await asyncio.gather(*(worker.stop() for worker in self.workers.values()))
        logger.info("All chain workers stopped")
