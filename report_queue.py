"""Durable report queue backed by the application database.

Producers ``publish`` a :class:`ReportJob`; consumers ``claim`` messages under
a lease, run the subscribed handler and ``ack`` them. A consumer that dies
mid-handling never acks, so its lease runs out and the next ``claim`` hands
the message to another consumer. Delivery is therefore at-least-once and
unordered across messages.

A handler that raises marks its message ``failed``. The queue does not
requeue it; retrying is the handler's decision. A payload that does not
decode into a :class:`ReportJob` is marked ``failed`` at claim time so it
cannot block the messages queued behind it.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from config import Settings, get_settings
from database import SessionFactory, session_scope, utcnow
from models import MessageStatus, QueuedMessage
from schemas import ReportJob


logger = logging.getLogger(__name__)

GENERATE_REPORT_PATTERN = "generate_report"

ReportHandler = Callable[[ReportJob], None]


class QueueUnavailable(RuntimeError):
    pass


@dataclass(frozen=True)
class ClaimedMessage:
    id: int
    claim_token: str
    attempts: int
    job: ReportJob


class DatabaseReportQueue:
    def __init__(
        self,
        session_factory: SessionFactory,
        queue_name: Optional[str] = None,
        lease_secs: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.queue_name = queue_name or settings.report_queue_name
        self.lease = timedelta(
            seconds=lease_secs if lease_secs is not None else settings.queue_lease_secs
        )
        self._handlers: list[ReportHandler] = []

    def publish(self, job: ReportJob) -> int:
        try:
            with session_scope(self.session_factory) as session:
                message = QueuedMessage(
                    queue=self.queue_name,
                    pattern=GENERATE_REPORT_PATTERN,
                    payload=job.to_message(),
                    status=MessageStatus.pending,
                    available_at=utcnow(),
                )
                session.add(message)
                session.flush()
                message_id = message.id
        except SQLAlchemyError as exc:
            raise QueueUnavailable(
                f"Report queue '{self.queue_name}' rejected message for owner {job.owner_id}"
            ) from exc
        logger.info(
            f"report_queue_publish: queue={self.queue_name} message_id={message_id} "
            f"owner_id={job.owner_id}"
        )
        return message_id

    def subscribe(self, handler: ReportHandler) -> None:
        self._handlers.append(handler)

    @property
    def handlers(self) -> list[ReportHandler]:
        return list(self._handlers)

    def claim(self, limit: int = 1, now: Optional[datetime] = None) -> list[ClaimedMessage]:
        now = now or utcnow()
        claimed: list[ClaimedMessage] = []
        with session_scope(self.session_factory) as session:
            candidates = session.scalars(
                select(QueuedMessage)
                .where(
                    QueuedMessage.queue == self.queue_name,
                    or_(
                        and_(
                            QueuedMessage.status == MessageStatus.pending,
                            QueuedMessage.available_at <= now,
                        ),
                        and_(
                            QueuedMessage.status == MessageStatus.in_flight,
                            QueuedMessage.lease_expires_at <= now,
                        ),
                    ),
                )
                .order_by(QueuedMessage.available_at, QueuedMessage.id)
                .limit(limit)
            ).all()
            for message in candidates:
                token = uuid.uuid4().hex
                # Another consumer may have taken the row since the select.
                result = session.execute(
                    update(QueuedMessage)
                    .where(
                        QueuedMessage.id == message.id,
                        QueuedMessage.status == message.status,
                        QueuedMessage.claim_token == message.claim_token,
                    )
                    .values(
                        status=MessageStatus.in_flight,
                        claim_token=token,
                        lease_expires_at=now + self.lease,
                        attempts=QueuedMessage.attempts + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                if message.status == MessageStatus.in_flight:
                    logger.warning(
                        f"report_queue_redeliver: message_id={message.id} "
                        f"attempts={message.attempts + 1}"
                    )
                try:
                    job = ReportJob.from_message(message.payload)
                except ValidationError as exc:
                    logger.error(
                        f"report_queue_malformed: message_id={message.id} "
                        f"errors={exc.error_count()}"
                    )
                    session.execute(
                        update(QueuedMessage)
                        .where(
                            QueuedMessage.id == message.id,
                            QueuedMessage.claim_token == token,
                        )
                        .values(
                            status=MessageStatus.failed,
                            lease_expires_at=None,
                            last_error=f"ValidationError: {exc}",
                        )
                        .execution_options(synchronize_session=False)
                    )
                    continue
                claimed.append(
                    ClaimedMessage(
                        id=message.id,
                        claim_token=token,
                        attempts=message.attempts + 1,
                        job=job,
                    )
                )
        return claimed

    def ack(self, message: ClaimedMessage) -> bool:
        return self._finish(message, MessageStatus.done, None)

    def fail(self, message: ClaimedMessage, error: str) -> bool:
        return self._finish(message, MessageStatus.failed, error)

    def _finish(
        self, message: ClaimedMessage, status: MessageStatus, error: Optional[str]
    ) -> bool:
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(QueuedMessage)
                .where(
                    QueuedMessage.id == message.id,
                    QueuedMessage.claim_token == message.claim_token,
                )
                .values(status=status, lease_expires_at=None, last_error=error)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            # The lease expired and someone else owns the message now.
            logger.warning(
                f"report_queue_stale_claim: message_id={message.id} status={status.value}"
            )
            return False
        return True

    def pending_count(self) -> int:
        with session_scope(self.session_factory) as session:
            stmt = select(func.count(QueuedMessage.id)).where(
                QueuedMessage.queue == self.queue_name,
                QueuedMessage.status.in_(
                    [MessageStatus.pending, MessageStatus.in_flight]
                ),
            )
            return int(session.execute(stmt).scalar_one() or 0)


class ReportWorker:
    """Pulls report jobs off the queue and runs the subscribed handlers."""

    def __init__(
        self,
        queue: DatabaseReportQueue,
        settings: Optional[Settings] = None,
        concurrency: int = 1,
    ) -> None:
        self.queue = queue
        self.settings = settings or get_settings()
        self.concurrency = max(1, concurrency)
        self._stop = threading.Event()

    def handle(self, message: ClaimedMessage) -> bool:
        job = message.job
        logger.info(
            f"report_worker_received: message_id={message.id} owner_id={job.owner_id} "
            f"attempt={message.attempts}"
        )
        try:
            for handler in self.queue.handlers:
                handler(job)
        except Exception as exc:
            logger.exception(
                f"report_worker_failed: message_id={message.id} owner_id={job.owner_id}"
            )
            self.queue.fail(message, f"{type(exc).__name__}: {exc}")
            return False
        self.queue.ack(message)
        return True

    def run_once(self, limit: int = 10) -> int:
        if not self.queue.handlers:
            raise RuntimeError("No report handler subscribed")
        handled = 0
        for message in self.queue.claim(limit=limit):
            self.handle(message)
            handled += 1
        return handled

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                handled = self.run_once(limit=1)
            except QueueUnavailable:
                logger.exception("report_worker_queue_unavailable")
                handled = 0
            except Exception:
                logger.exception("report_worker_poll_failed")
                handled = 0
            if not handled:
                self._stop.wait(self.settings.worker_poll_secs)

    def run_forever(self) -> None:
        logger.info(
            f"report_worker_start: queue={self.queue.queue_name} "
            f"concurrency={self.concurrency}"
        )
        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="report-worker"
        ) as pool:
            for _ in range(self.concurrency):
                pool.submit(self._loop)
        logger.info("report_worker_stop")

    def stop(self) -> None:
        self._stop.set()


def log_report_delivery(job: ReportJob) -> None:
    """Stand-in delivery: rendering and email transport live outside this app."""
    logger.info(
        f"report_delivery: owner={job.owner_name} email={job.owner_email} "
        f"period={job.period_start.isoformat()}..{job.period_end.isoformat()} "
        f"format={job.format.value}"
    )
    logger.info(f"report_delivery: total={job.total_amount:.2f}")
    for category, amount in sorted(job.category_totals.items()):
        logger.info(f"report_delivery:   {category}: {amount:.2f}")
    logger.info(f"report_delivery: email would be sent to {job.owner_email}")
