from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.domain.models import SyncLog, User
from supportiq.persistence.repos import sync_logs as sync_repo
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.services import trial as trial_service


logger = logging.getLogger(__name__)

BODY_COLUMNS = ("description", "content", "body", "message")
VALID_STATUSES = ("open", "closed", "snoozed", "pending")
MAX_ROWS = 5000


class CsvFormatError(ValueError):
    """Raised when the CSV header is missing required columns."""


@dataclass
class ParsedCsv:
    rows: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped: int = 0


def _find_column(headers: list[str], *needles: str) -> str | None:
    # Substring match so "Ticket Subject" or "status_name" still resolve.
    for needle in needles:
        for header in headers:
            if needle in header:
                return header
    return None


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_ticket_csv(text: str, *, max_rows: int = MAX_ROWS) -> ParsedCsv:
    """Parse an exported ticket CSV into ticket field dicts.

    The header row must name a subject column, a body column (description,
    content, body or message) and a status column. Rows without a body are
    skipped; unknown statuses become ``open``.
    """
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    try:
        raw_headers = next(reader)
    except StopIteration as exc:
        raise CsvFormatError("CSV file is empty") from exc
    headers = [header.strip().lower() for header in raw_headers]

    subject_col = _find_column(headers, "subject", "title")
    body_col = _find_column(headers, *BODY_COLUMNS)
    status_col = _find_column(headers, "status")
    missing = [
        name
        for name, column in (("subject", subject_col), ("description", body_col), ("status", status_col))
        if column is None
    ]
    if missing:
        raise CsvFormatError(f"CSV must contain columns: {', '.join(missing)}")

    email_col = _find_column(headers, "email")
    created_col = _find_column(headers, "created")
    priority_col = _find_column(headers, "priority")
    id_col = "id" if "id" in headers else _find_column(headers, "ticket_id", "ticket id")

    parsed = ParsedCsv()
    for line_no, values in enumerate(reader, start=2):
        if not any(value.strip() for value in values):
            continue
        if len(parsed.rows) >= max_rows:
            parsed.errors.append(f"Row limit of {max_rows} reached; remaining rows ignored")
            break
        record = {headers[i]: values[i].strip() for i in range(min(len(headers), len(values)))}
        body = record.get(body_col, "")
        if not body:
            parsed.skipped += 1
            parsed.errors.append(f"Row {line_no}: missing {body_col}")
            continue
        status = record.get(status_col, "").lower()
        row: dict[str, Any] = {
            "subject": record.get(subject_col) or None,
            "content": body,
            "status": status if status in VALID_STATUSES else "open",
            "customer_email": (record.get(email_col) or None) if email_col else None,
            "priority": (record.get(priority_col) or None) if priority_col else None,
        }
        if id_col and record.get(id_col):
            row["external_id"] = record[id_col]
        created_at = _parse_timestamp(record.get(created_col)) if created_col else None
        if created_at is not None:
            row["created_at"] = created_at
        parsed.rows.append(row)
    return parsed


async def import_tickets(session: AsyncSession, user: User, parsed: ParsedCsv) -> SyncLog:
    log = await sync_repo.start_log(session, user_id=user.id, sync_type="csv")
    rows = parsed.rows
    # Trial accounts import no more rows than their monthly ticket allowance.
    allowance = await trial_service.remaining_allowance(session, user.id, "tickets_processed")
    if allowance is not None and len(rows) > allowance:
        dropped = len(rows) - allowance
        rows = rows[:allowance]
        parsed.errors.append(f"Trial ticket limit reached; {dropped} rows not imported")
        logger.warning("csv_import_capped user_id=%s allowance=%s dropped=%s", user.id, allowance, dropped)
    imported = 0
    for row in rows:
        fields = dict(row)
        external_id = fields.pop("external_id", None)
        if external_id:
            await tickets_repo.upsert_external(
                session, user_id=user.id, source="csv", external_id=external_id, fields=fields
            )
        else:
            await tickets_repo.create_ticket(session, user_id=user.id, source="csv", **fields)
        imported += 1
    await trial_service.track_usage(session, user.id, "tickets_processed", imported)
    error_message = "; ".join(parsed.errors[:10]) or None
    await sync_repo.finish_log(
        session, log, status="success", records_processed=imported, error_message=error_message
    )
    logger.info("csv_import_completed user_id=%s imported=%s skipped=%s", user.id, imported, parsed.skipped)
    return log
