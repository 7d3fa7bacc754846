# 📂 backend/hostbill/emailer.py — outbound e-mail (SMTP) and HTML templates
# -----------------------------------------------------------------------------
# Purpose:
#   • send_email(): one HTML message over SMTP (aiosmtplib). STARTTLS on 587,
#     implicit TLS when SMTP_SECURE=true. Any SMTP/network failure is raised as
#     DeliveryError so callers decide whether the failure is fatal (issue) or
#     recorded and skipped (bulk runs, cancellation notices).
#   • Templates: welcome, password reset, invoice, invoice cancellation,
#     account statement, accrual run report.
#   • build_cc_list(): relationship-manager e-mail of the customer's group
#     plus INVOICE_CC_EMAIL.
# -----------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime
from email.message import EmailMessage
from html import escape
from typing import Iterable, List, Optional, Sequence

import aiosmtplib
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .errors import DeliveryError
from .models import Group, GroupSubaccount
from .utils import get_logger, money

settings = get_settings()
log = get_logger("email")


# -----------------------------------------------------------------------------
# Transport
# -----------------------------------------------------------------------------
async def send_email(
    to: str,
    subject: str,
    html: str,
    cc: Optional[Sequence[str]] = None,
) -> None:
    if not to:
        raise DeliveryError("Recipient e-mail is missing", 400)

    msg = EmailMessage()
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to
    cc = [c for c in (cc or []) if c and c != to]
    if cc:
        msg["Cc"] = ", ".join(cc)
    msg["Subject"] = subject
    msg.set_content("This message requires an HTML capable mail client.")
    msg.add_alternative(html, subtype="html")

    try:
        await aiosmtplib.send(
            msg,
            hostname=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            use_tls=settings.SMTP_SECURE,
            start_tls=False if settings.SMTP_SECURE else None,
            timeout=settings.SMTP_TIMEOUT,
        )
    except (aiosmtplib.SMTPException, OSError) as e:
        log.error("[Email] delivery to %s failed: %s", to, e)
        raise DeliveryError(f"Failed to send email: {e}")

    log.info("[Email] sent '%s' to %s (cc=%s)", subject, to, ",".join(cc) or "-")


async def build_cc_list(db: AsyncSession, subaccount_name: Optional[str]) -> List[str]:
    """
    CC list for invoice mail: the group e-mail of the group owning the
    customer's pool sub-account (if any), then INVOICE_CC_EMAIL.
    """
    cc: List[str] = []
    if subaccount_name:
        q = await db.execute(
            select(Group.email)
            .join(GroupSubaccount, GroupSubaccount.group_id == Group.id)
            .where(GroupSubaccount.subaccount_name == subaccount_name)
            .limit(1)
        )
        group_email = q.scalar_one_or_none()
        if group_email:
            cc.append(group_email)
    if settings.INVOICE_CC_EMAIL and settings.INVOICE_CC_EMAIL not in cc:
        cc.append(settings.INVOICE_CC_EMAIL)
    return cc


# -----------------------------------------------------------------------------
# Templates
# -----------------------------------------------------------------------------
def _fmt_usd(value) -> str:
    return f"${money(value):,.2f}"


def _fmt_date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else "-"


def _layout(title: str, body: str, accent: str = "#1f6feb") -> str:
    return f"""<!DOCTYPE html>
<html>
  <head><meta charset="UTF-8" /></head>
  <body style="font-family: Arial, sans-serif; color: #333; line-height: 1.6;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px; background: #f9f9f9;">
      <div style="background: {accent}; color: #fff; padding: 20px; border-radius: 5px; text-align: center;">
        <h2 style="margin: 0;">{escape(title)}</h2>
      </div>
      <div style="background: #fff; padding: 20px; border-radius: 5px; margin-top: 20px;">
        {body}
      </div>
      <p style="font-size: 12px; color: #888; text-align: center;">{escape(settings.PROJECT_NAME)}</p>
    </div>
  </body>
</html>"""


def _table(rows: Iterable[tuple]) -> str:
    cells = "".join(
        f'<tr><td style="padding: 8px; border-bottom: 1px solid #eee;">{escape(str(k))}</td>'
        f'<td style="padding: 8px; border-bottom: 1px solid #eee; text-align: right;">{escape(str(v))}</td></tr>'
        for k, v in rows
    )
    return f'<table style="width: 100%; border-collapse: collapse;">{cells}</table>'


def welcome_email(email: str, temp_password: str) -> tuple[str, str]:
    body = (
        "<p>Your account has been created.</p>"
        + _table([("Login", email), ("Temporary password", temp_password)])
        + f'<p>Sign in at <a href="{escape(settings.PUBLIC_BASE_URL)}/login">'
        f"{escape(settings.PUBLIC_BASE_URL)}</a> and change your password.</p>"
    )
    return f"Welcome to {settings.PROJECT_NAME} - Your Account Details", _layout("Welcome", body)


def password_reset_email(email: str, temp_password: str) -> tuple[str, str]:
    body = (
        "<p>A password reset was requested for your account.</p>"
        + _table([("Login", email), ("New temporary password", temp_password)])
        + "<p>If you did not request this, contact support immediately.</p>"
    )
    return f"Password Reset Request - {settings.PROJECT_NAME}", _layout("Password reset", body)


def invoice_email(
    customer_name: str,
    invoice_number: str,
    total_miners: int,
    unit_price,
    total_amount,
    issued_date: Optional[datetime],
    due_date: Optional[datetime],
    payment_url: Optional[str] = None,
) -> tuple[str, str]:
    body = (
        f"<p>Dear {escape(customer_name or 'Customer')},</p>"
        f"<p>Please find the details of invoice <b>{escape(invoice_number)}</b> below.</p>"
        + _table([
            ("Invoice number", invoice_number),
            ("Issued", _fmt_date(issued_date)),
            ("Due date", _fmt_date(due_date)),
            ("Miners", total_miners),
            ("Unit price", _fmt_usd(unit_price)),
            ("Total amount", _fmt_usd(total_amount)),
        ])
    )
    if payment_url:
        body += (
            f'<p style="text-align: center;"><a href="{escape(payment_url)}" '
            'style="background: #1f6feb; color: #fff; padding: 10px 20px; border-radius: 5px; '
            'text-decoration: none;">Pay with crypto</a></p>'
        )
    return f"Invoice {invoice_number} from {settings.PROJECT_NAME}", _layout(f"Invoice {invoice_number}", body)


def cancellation_email(
    customer_name: str,
    invoice_number: str,
    total_amount,
    original_due_date: Optional[datetime],
) -> tuple[str, str]:
    body = (
        f"<p>Dear {escape(customer_name or 'Customer')},</p>"
        "<p>The following invoice has been cancelled. No payment is required.</p>"
        + _table([
            ("Invoice number", invoice_number),
            ("Amount", _fmt_usd(total_amount)),
            ("Original due date", _fmt_date(original_due_date)),
        ])
    )
    return (
        f"Invoice {invoice_number} Cancelled - {settings.PROJECT_NAME}",
        _layout("Invoice cancelled", body, accent="#dc3545"),
    )


def statement_email(customer_name: str, statement: dict) -> tuple[str, str]:
    rows = "".join(
        "<tr>"
        f'<td style="padding: 6px;">{escape(e["createdAt"][:10])}</td>'
        f'<td style="padding: 6px;">{escape(e["type"])}</td>'
        f'<td style="padding: 6px; text-align: right;">{_fmt_usd(e["amount"])}</td>'
        f'<td style="padding: 6px; text-align: right;">{_fmt_usd(e["runningBalance"])}</td>'
        "</tr>"
        for e in statement["entries"]
    )
    body = (
        f"<p>Dear {escape(customer_name or 'Customer')},</p>"
        + _table([
            ("Opening balance", _fmt_usd(statement["openingBalance"])),
            ("Charges", _fmt_usd(statement["totalCharges"])),
            ("Payments", _fmt_usd(statement["totalPayments"])),
            ("Closing balance", _fmt_usd(statement["closingBalance"])),
        ])
        + '<table style="width: 100%; margin-top: 16px; border-collapse: collapse;">'
        "<tr><th>Date</th><th>Type</th><th>Amount</th><th>Balance</th></tr>"
        + rows
        + "</table>"
    )
    return f"Account Statement - {settings.PROJECT_NAME}", _layout("Account statement", body)


def accrual_report_email(user_count: int, accrual_date: str) -> tuple[str, str]:
    body = f"<p>Daily electricity charges for {escape(accrual_date)} were applied to {user_count} customers.</p>"
    return f"Cron run successfully - {settings.PROJECT_NAME}", _layout("Daily accrual", body)
