import json
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from database import make_engine, make_session_factory, session_scope, utcnow
from models import MessageStatus, QueuedMessage
from report_queue import (
    DatabaseReportQueue,
    QueueUnavailable,
    ReportWorker,
    log_report_delivery,
)
from schemas import ReportFormat, ReportJob


def _job(owner_id: int = 1) -> ReportJob:
    return ReportJob(
        owner_id=owner_id,
        owner_email="ada@example.com",
        owner_name="Ada",
        period_start=date(2024, 1, 1),
        period_end=date(2024, 1, 31),
        total_amount=100.0,
        category_totals={"Food": 80.0, "Transport": 20.0},
        format=ReportFormat.pdf,
        generated_at=datetime(2024, 2, 1, 0, 0, tzinfo=timezone.utc),
    )


def _status(session_factory, message_id: int) -> QueuedMessage:
    with session_scope(session_factory) as session:
        return session.get(QueuedMessage, message_id)


def test_job_serializes_with_camel_case_keys():
    payload = json.loads(_job().to_message())
    assert set(payload) == {
        "ownerId",
        "ownerEmail",
        "ownerName",
        "periodStart",
        "periodEnd",
        "totalAmount",
        "categoryTotals",
        "format",
        "generatedAt",
    }
    assert payload["categoryTotals"] == {"Food": 80.0, "Transport": 20.0}
    assert ReportJob.from_message(_job().to_message()) == _job()


def test_worker_delivers_published_job(session_factory, settings):
    queue = DatabaseReportQueue(session_factory)
    received: list[ReportJob] = []
    queue.subscribe(received.append)
    message_id = queue.publish(_job())

    handled = ReportWorker(queue, settings).run_once()

    assert handled == 1
    assert received == [_job()]
    assert _status(session_factory, message_id).status == MessageStatus.done
    assert queue.pending_count() == 0


def test_leased_message_is_not_handed_out_twice(session_factory):
    queue = DatabaseReportQueue(session_factory, lease_secs=60)
    queue.publish(_job())

    assert len(queue.claim()) == 1
    assert queue.claim() == []


def test_message_survives_consumer_crash(session_factory, settings):
    queue = DatabaseReportQueue(session_factory, lease_secs=60)
    message_id = queue.publish(_job())

    # First consumer claims and dies before acknowledging.
    crashed = queue.claim(now=utcnow())
    assert [m.id for m in crashed] == [message_id]

    restarted = DatabaseReportQueue(session_factory, lease_secs=60)
    received: list[ReportJob] = []
    restarted.subscribe(received.append)
    redelivered = restarted.claim(now=utcnow() + timedelta(seconds=61))

    assert [m.id for m in redelivered] == [message_id]
    assert redelivered[0].attempts == 2
    ReportWorker(restarted, settings).handle(redelivered[0])
    assert received == [_job()]
    assert _status(session_factory, message_id).status == MessageStatus.done
    # The crashed consumer's late acknowledgement no longer owns the message.
    assert queue.ack(crashed[0]) is False


def test_handler_failure_marks_message_failed_without_requeue(session_factory, settings):
    queue = DatabaseReportQueue(session_factory)

    def explode(job: ReportJob) -> None:
        raise RuntimeError("smtp down")

    queue.subscribe(explode)
    message_id = queue.publish(_job())

    ReportWorker(queue, settings).run_once()

    row = _status(session_factory, message_id)
    assert row.status == MessageStatus.failed
    assert "smtp down" in row.last_error
    assert queue.claim(now=utcnow() + timedelta(days=1)) == []


def test_malformed_message_does_not_block_later_jobs(session_factory, settings):
    with session_scope(session_factory) as session:
        session.add(
            QueuedMessage(
                queue="reports_queue",
                pattern="generate_report",
                payload="{}",
                status=MessageStatus.pending,
                available_at=utcnow() - timedelta(minutes=1),
            )
        )
        session.flush()
        bad_id = session.scalars(select(QueuedMessage.id)).one()
    queue = DatabaseReportQueue(session_factory, queue_name="reports_queue")
    received: list[ReportJob] = []
    queue.subscribe(received.append)
    good_id = queue.publish(_job())
    worker = ReportWorker(queue, settings)

    for _ in range(3):
        worker.run_once(limit=1)

    assert received == [_job()]
    bad = _status(session_factory, bad_id)
    assert bad.status == MessageStatus.failed
    assert bad.last_error.startswith("ValidationError")
    assert _status(session_factory, good_id).status == MessageStatus.done
    assert queue.pending_count() == 0


def test_consumer_loop_survives_unexpected_errors(session_factory, settings, monkeypatch):
    queue = DatabaseReportQueue(session_factory)
    queue.subscribe(lambda job: None)
    settings.worker_poll_secs = 0
    worker = ReportWorker(queue, settings)
    calls = []

    def flaky_claim(limit=1, now=None):
        calls.append(limit)
        if len(calls) == 1:
            raise RuntimeError("decoder crashed")
        worker.stop()
        return []

    monkeypatch.setattr(queue, "claim", flaky_claim)

    worker._loop()

    assert len(calls) == 2


def test_queues_are_separated_by_name(session_factory):
    reports = DatabaseReportQueue(session_factory, queue_name="reports_queue")
    other = DatabaseReportQueue(session_factory, queue_name="other_queue")
    reports.publish(_job())

    assert other.claim() == []
    assert len(reports.claim()) == 1


def test_publish_raises_when_transport_unavailable(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    queue = DatabaseReportQueue(make_session_factory(engine))

    with pytest.raises(QueueUnavailable):
        queue.publish(_job())
    engine.dispose()


def test_run_once_requires_a_handler(session_factory, settings):
    with pytest.raises(RuntimeError):
        ReportWorker(DatabaseReportQueue(session_factory), settings).run_once()


def test_log_report_delivery_logs_summary(caplog):
    with caplog.at_level("INFO", logger="report_queue"):
        log_report_delivery(_job())
    assert "email would be sent to ada@example.com" in caplog.text
    assert "Food: 80.00" in caplog.text


def test_published_rows_record_pattern(session_factory):
    queue = DatabaseReportQueue(session_factory)
    queue.publish(_job())
    with session_scope(session_factory) as session:
        row = session.scalars(select(QueuedMessage)).one()
    assert row.pattern == "generate_report"
    assert row.attempts == 0
