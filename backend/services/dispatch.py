"""
Post-commit side effects: real-time broadcast, notification jobs, receipts.

Nothing here may touch financial state. Every call is guarded: a failing
broadcaster, queue or storage is logged and swallowed so the committed
transaction that triggered it stands.
"""

from enum import Enum
from typing import Any, Callable, Optional, Protocol

from loguru import logger
from pydantic import BaseModel
from sqlalchemy.engine import Engine


class NotificationType(str, Enum):
    PAYMENT_COMPLETED = "payment_completed"
    ESTIMATE_LOCKED = "estimate_locked"
    ORDER_CLOSED = "order_closed"


class NotificationJob(BaseModel):
    type: NotificationType
    order_id: int
    payment_id: Optional[int] = None
    estimate_id: Optional[int] = None


class Broadcaster(Protocol):
    def publish(self, channel: str, event: dict) -> None: ...


class NotificationQueue(Protocol):
    def enqueue(self, job: NotificationJob) -> None: ...


class InMemoryBroadcaster:
    """Keeps published events; stands in for the websocket hub."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def publish(self, channel: str, event: dict) -> None:
        self.events.append((channel, event))
        logger.debug(f"broadcast {channel}: {event.get('kind')}")

    def kinds(self, order_id: Optional[int] = None) -> list[str]:
        return [e["kind"] for ch, e in self.events if order_id is None or ch == f"order:{order_id}"]


class InMemoryQueue:
    def __init__(self):
        self.jobs: list[NotificationJob] = []

    def enqueue(self, job: NotificationJob) -> None:
        self.jobs.append(job)
        logger.info(f"Queued {job.type.value} notification for order {job.order_id}")


Runner = Callable[..., Any]


def run_now(fn: Callable, *args, **kwargs) -> None:
    fn(*args, **kwargs)


class Dispatcher:
    """
    Hands side effects to a runner after the unit of work has committed.

    The default runner executes inline. The HTTP app passes
    ``BackgroundTasks.add_task`` so effects run after the response is sent.
    """

    def __init__(
        self,
        broadcaster: Optional[Broadcaster] = None,
        queue: Optional[NotificationQueue] = None,
        storage=None,
        engine: Optional[Engine] = None,
        runner: Runner = run_now,
    ):
        self.broadcaster = broadcaster or InMemoryBroadcaster()
        self.queue = queue or InMemoryQueue()
        self.storage = storage
        self.engine = engine
        self.runner = runner

    def with_runner(self, runner: Runner) -> "Dispatcher":
        return Dispatcher(self.broadcaster, self.queue, self.storage, self.engine, runner)

    def _guarded(self, label: str, fn: Callable, *args, **kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.warning(f"Side effect {label} failed: {e}")

    def _submit(self, label: str, fn: Callable, *args, **kwargs) -> None:
        try:
            self.runner(self._guarded, label, fn, *args, **kwargs)
        except Exception as e:
            logger.warning(f"Could not schedule {label}: {e}")

    def broadcast(self, order_id: int, kind: str, **payload) -> None:
        event = {"id": order_id, "kind": kind, **payload}
        self._submit(f"broadcast:{kind}", self.broadcaster.publish, f"order:{order_id}", event)

    def notify(
        self,
        job_type: NotificationType,
        order_id: int,
        payment_id: Optional[int] = None,
        estimate_id: Optional[int] = None,
    ) -> None:
        job = NotificationJob(type=job_type, order_id=order_id, payment_id=payment_id, estimate_id=estimate_id)
        self._submit(f"notify:{job_type.value}", self.queue.enqueue, job)

    def generate_receipt(self, payment_id: int) -> None:
        if self.storage is None or self.engine is None:
            logger.debug(f"Receipt storage not configured, skipping payment {payment_id}")
            return
        from backend.services.receipts import generate_receipt

        self._submit("receipt", generate_receipt, self.engine, self.storage, payment_id)


def default_dispatcher() -> Dispatcher:
    return Dispatcher()
