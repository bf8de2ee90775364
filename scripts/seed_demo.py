from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from datetime import timedelta

from supportiq.domain.models import Ticket, utc_now
from supportiq.persistence.db import SessionLocal
from supportiq.persistence.repos import knowledge_base as kb_repo
from supportiq.persistence.repos import tickets as tickets_repo
from supportiq.persistence.repos import users as users_repo
from supportiq.services.ticket_analysis import analyze_batch


DEMO_EMAIL = "demo@example.com"
DEMO_COMPANY = "Demo Co"


@dataclass(frozen=True)
class DemoTicket:
    # Fixed content and ages keep dashboards and insights reproducible.
    external_id: str
    subject: str
    content: str
    status: str
    age_days: int
    response_time_minutes: float | None = None


@dataclass(frozen=True)
class DemoArticle:
    title: str
    content: str
    category: str
    tags: tuple[str, ...]


def build_demo_tickets() -> tuple[DemoTicket, ...]:
    return (
        DemoTicket("demo-1", "Password reset", "I forgot my password and the reset email never arrives.", "open", 0, 35.0),
        DemoTicket("demo-2", "Login loop", "Every time I log in I get sent back to the login page.", "open", 1, 80.0),
        DemoTicket("demo-3", "Double charge", "My card was charged twice for the March invoice.", "closed", 2, 120.0),
        DemoTicket("demo-4", "Refund request", "Please refund the annual plan, we switched to monthly.", "closed", 3, 45.0),
        DemoTicket("demo-5", "Export to CSV", "How do I export all of my reports to a CSV file?", "closed", 4, 15.0),
        DemoTicket("demo-6", "API error 500", "The /v1/orders endpoint returns a 500 error since this morning.", "open", 5),
        DemoTicket("demo-7", "Add teammates", "How can I invite two more teammates to our workspace?", "closed", 8, 20.0),
        DemoTicket("demo-8", "Dark mode", "It would be great to have a dark mode in the dashboard.", "snoozed", 9),
        DemoTicket("demo-9", "Invoice address", "Can you update the billing address on our invoices?", "closed", 10, 60.0),
        DemoTicket("demo-10", "Slow dashboard", "The analytics dashboard takes a minute to load.", "pending", 12, 95.0),
    )


def build_demo_articles() -> tuple[DemoArticle, ...]:
    return (
        DemoArticle(
            title="Resetting your password",
            content="Open the login page, choose Forgot password and follow the emailed link within 30 minutes.",
            category="Account",
            tags=("password", "login"),
        ),
        DemoArticle(
            title="Exporting reports",
            content="Go to Reports, select the reports you need and click Export to download a CSV file.",
            category="How-to",
            tags=("export", "csv", "reports"),
        ),
        DemoArticle(
            title="Billing and refunds",
            content="Refunds are issued to the original card within 5-7 business days after approval.",
            category="Billing",
            tags=("refund", "invoice", "billing"),
        ),
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed a demo account with tickets and articles")
    parser.add_argument("--email", default=DEMO_EMAIL, help="Demo account email")
    parser.add_argument("--skip-analysis", action="store_true", help="Leave seeded tickets unanalyzed")
    return parser


async def seed_demo(args: argparse.Namespace) -> int:
    now = utc_now()
    async with SessionLocal() as session:
        user, _created = await users_repo.get_or_create_by_email(
            session, args.email, full_name="Demo Owner", company=DEMO_COMPANY
        )
        existing = await tickets_repo.count_for_user(session, user.id)
        if existing:
            await session.commit()
            print("Demo account already seeded; skipping.")
            return 0

        tickets: list[Ticket] = []
        for item in build_demo_tickets():
            ticket, _ = await tickets_repo.upsert_external(
                session,
                user_id=user.id,
                source="manual",
                external_id=item.external_id,
                fields={
                    "subject": item.subject,
                    "content": item.content,
                    "status": item.status,
                    "response_time_minutes": item.response_time_minutes,
                    "created_at": now - timedelta(days=item.age_days),
                },
            )
            tickets.append(ticket)
        for article in build_demo_articles():
            await kb_repo.create_article(
                session,
                user_id=user.id,
                title=article.title,
                content=article.content,
                category=article.category,
                tags=list(article.tags),
            )
        analyzed = 0
        if not args.skip_analysis:
            # Heuristic analysis keeps the seed offline and deterministic.
            batch = await analyze_batch(session, tickets, llm=None)
            analyzed = len(batch.analyzed)
        await session.commit()

    print(
        f"Seeded {args.email} with {len(tickets)} tickets, "
        f"{len(build_demo_articles())} articles ({analyzed} analyzed)."
    )
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    # Surface clear failures and exit non-zero so dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo(args))
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
