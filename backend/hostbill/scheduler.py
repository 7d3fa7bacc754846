# 📂 backend/hostbill/scheduler.py — daily background jobs (APScheduler)
# -----------------------------------------------------------------------------
# Jobs (UTC, times from settings):
#   • SCHEDULE_COST_ACCRUAL_UTC - daily electricity charges for every customer
#     (same code path as /cron/deduct-daily-cost, idempotent per day).
#   • SCHEDULE_OVERDUE_UTC      - ISSUED invoices past their due date -> OVERDUE.
#   • SCHEDULE_RECURRING_UTC    - this month's invoices from recurring templates.
#
# Each job opens its own session_scope() and never raises: a failed run is
# logged and retried on the next tick.
# -----------------------------------------------------------------------------

from __future__ import annotations

from typing import Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .config import get_settings
from .database import session_scope
from .errors import ServiceError
from .services import accrual, invoices, recurring
from .utils import get_logger

settings = get_settings()
log = get_logger("scheduler")


def parse_hhmm(value: str) -> Tuple[int, int]:
    """"00:05" -> (0, 5). Raises ValueError on anything else."""
    hour_s, _, minute_s = (value or "").strip().partition(":")
    hour, minute = int(hour_s), int(minute_s or 0)
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid schedule time: {value!r}")
    return hour, minute


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------
async def run_cost_accrual_job() -> None:
    log.info("[Scheduler] Daily cost accrual started")
    try:
        async with session_scope() as db:
            report = await accrual.run_daily_cost_accrual(db)
    except ServiceError as e:
        log.warning("[Scheduler] Daily cost accrual skipped: %s", e.message)
        return
    except Exception as e:
        log.error("[Scheduler] Daily cost accrual failed: %s", e)
        return
    await accrual.notify_accrual_report(report)
    log.info(
        "[Scheduler] Daily cost accrual done: users_processed=%d total_charged=%s",
        report.get("totalUsersProcessed", 0),
        report.get("totalCharged"),
    )


async def mark_overdue_job() -> None:
    try:
        async with session_scope() as db:
            count = await invoices.mark_overdue(db)
    except Exception as e:
        log.error("[Scheduler] Overdue marking failed: %s", e)
        return
    log.info("[Scheduler] Invoices marked overdue: %d", count)


async def recurring_invoices_job() -> None:
    try:
        async with session_scope() as db:
            summary = await recurring.run_due_templates(db)
    except Exception as e:
        log.error("[Scheduler] Recurring invoice run failed: %s", e)
        return
    log.info(
        "[Scheduler] Recurring invoices: generated=%d skipped=%d",
        len(summary.get("generated", [])),
        len(summary.get("skipped", [])),
    )


# -----------------------------------------------------------------------------
# Registration
# -----------------------------------------------------------------------------
def setup_scheduler() -> AsyncIOScheduler:
    """
    Builds an AsyncIOScheduler with the three cron jobs.
    Returns it without starting it (main.py starts it on startup).
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    hour, minute = parse_hhmm(settings.SCHEDULE_COST_ACCRUAL_UTC)
    scheduler.add_job(run_cost_accrual_job, "cron", hour=hour, minute=minute, id="cost_accrual")

    hour, minute = parse_hhmm(settings.SCHEDULE_OVERDUE_UTC)
    scheduler.add_job(mark_overdue_job, "cron", hour=hour, minute=minute, id="invoice_overdue")

    hour, minute = parse_hhmm(settings.SCHEDULE_RECURRING_UTC)
    scheduler.add_job(recurring_invoices_job, "cron", hour=hour, minute=minute, id="recurring_invoices")

    return scheduler
