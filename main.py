import logging

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from report_queue import DatabaseReportQueue, QueueUnavailable
from scheduler import SchedulerManager
from schemas import ReportAck, ReportRequestIn
from services import RecurringExpenseService, ReportService, get_current_user_id


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Expense Tracker")

scheduler_manager = SchedulerManager()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_report_queue() -> DatabaseReportQueue:
    return scheduler_manager.queue


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/reports/generate", response_model=ReportAck)
def generate_report(
    payload: ReportRequestIn,
    db: Session = Depends(get_db),
    queue: DatabaseReportQueue = Depends(get_report_queue),
):
    user_id = get_current_user_id()
    logger.info(f"report_request: user_id={user_id}")
    try:
        return ReportService(db, queue).request_report(
            user_id, payload.start_date, payload.end_date, payload.format
        )
    except QueueUnavailable as exc:
        logger.error(f"report_request_failed: user_id={user_id} error={exc}")
        raise HTTPException(
            status_code=503, detail=f"Failed to generate report: {exc}"
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/recurring-expenses/run")
def run_recurring_expenses():
    report = scheduler_manager.run_materialization("manual")
    return report.summary()


@app.get("/recurring-expenses/{definition_id}/history")
def recurring_expense_history(definition_id: int, db: Session = Depends(get_db)):
    service = RecurringExpenseService(db)
    try:
        entries = service.history(definition_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        "items": [
            {
                "id": entry.id,
                "date": entry.date.isoformat(),
                "amount_cents": entry.amount_cents,
                "description": entry.description,
            }
            for entry in entries
        ]
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
