"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True, server_default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("company", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        sa.Column("intercom_access_token", sa.Text(), nullable=True),
        sa.Column("intercom_workspace_id", sa.String(), nullable=True),
        sa.Column("intercom_admin_id", sa.String(), nullable=True),
        sa.Column("subscription_status", sa.String(), nullable=False, server_default="trial"),
        sa.Column("subscription_plan", sa.String(), nullable=False, server_default="free"),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("billing_cycle", sa.String(), nullable=True),
        sa.Column(
            "deflection_settings",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("onboarding_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at", server_default=True),
        _ts("updated_at", server_default=True),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_intercom_workspace_id", "users", ["intercom_workspace_id"])
    op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"])

    op.create_table(
        "api_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token_prefix", sa.String(), nullable=False),
        sa.Column("token_hash", sa.String(), nullable=False),
        _ts("expires_at"),
        _ts("last_used_at"),
        _ts("revoked_at"),
        _ts("created_at", server_default=True),
    )
    op.create_index("ix_api_sessions_user_id", "api_sessions", ["user_id"])
    op.create_index("ix_api_sessions_token_hash", "api_sessions", ["token_hash"], unique=True)

    op.create_table(
        "tickets",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("source", sa.String(), nullable=False, server_default="manual"),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("subject", sa.String(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("subcategory", sa.String(), nullable=True),
        sa.Column("sentiment", sa.String(), nullable=True),
        sa.Column("sentiment_score", sa.Float(), nullable=True),
        sa.Column("deflection_potential", sa.String(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("keywords", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("intent", sa.String(), nullable=True),
        sa.Column("tags", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("requires_human", sa.Boolean(), nullable=True),
        sa.Column("estimated_resolution_time", sa.Integer(), nullable=True),
        sa.Column("response_time_minutes", sa.Float(), nullable=True),
        sa.Column("satisfaction_score", sa.Float(), nullable=True),
        sa.Column("agent_name", sa.String(), nullable=True),
        sa.Column("embedding", postgresql.JSONB(), nullable=True),
        sa.Column(
            "similar_tickets", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")
        ),
        sa.Column("deflected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deflection_response", sa.Text(), nullable=True),
        sa.Column("deflection_confidence", sa.Float(), nullable=True),
        _ts("analyzed_at"),
        _ts("created_at", server_default=True),
        _ts("updated_at", server_default=True),
        _ts("synced_at"),
        sa.UniqueConstraint("user_id", "source", "external_id", name="uq_tickets_user_source_external"),
    )
    op.create_index("ix_tickets_user_id", "tickets", ["user_id"])
    op.create_index("ix_tickets_category", "tickets", ["category"])
    op.create_index("ix_tickets_user_created", "tickets", ["user_id", "created_at"])

    op.create_table(
        "ai_responses",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("ticket_id", sa.String(), sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("response_content", sa.Text(), nullable=False),
        sa.Column("response_type", sa.String(), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("article_ids", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("sent_to_intercom", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("intercom_message_id", sa.String(), nullable=True),
        sa.Column("customer_satisfied", sa.Boolean(), nullable=True),
        sa.Column("customer_feedback", sa.Text(), nullable=True),
        _ts("created_at", server_default=True),
    )
    op.create_index("ix_ai_responses_ticket_id", "ai_responses", ["ticket_id"])
    op.create_index("ix_ai_responses_user_id", "ai_responses", ["user_id"])

    op.create_table(
        "insights",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("impact_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("potential_savings", sa.Float(), nullable=False, server_default="0"),
        sa.Column("action_items", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("data_source", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        _ts("created_at", server_default=True),
        _ts("updated_at", server_default=True),
    )
    op.create_index("ix_insights_user_id", "insights", ["user_id"])

    op.create_table(
        "knowledge_base_articles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("tags", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", server_default=True),
        _ts("updated_at", server_default=True),
    )
    op.create_index("ix_knowledge_base_articles_user_id", "knowledge_base_articles", ["user_id"])
    op.create_index("ix_knowledge_base_articles_category", "knowledge_base_articles", ["category"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(), nullable=False),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("stripe_price_id", sa.String(), nullable=True),
        sa.Column("plan", sa.String(), nullable=False, server_default="starter"),
        sa.Column("status", sa.String(), nullable=False),
        _ts("current_period_start"),
        _ts("current_period_end"),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("canceled_at"),
        _ts("created_at", server_default=True),
        _ts("updated_at", server_default=True),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_stripe_subscription_id", "subscriptions", ["stripe_subscription_id"], unique=True
    )

    op.create_table(
        "trials",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        _ts("started_at", nullable=False, server_default=True),
        _ts("expires_at", nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("limits", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("usage", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("conversion_data", postgresql.JSONB(), nullable=True),
        _ts("created_at", server_default=True),
    )
    op.create_index("ix_trials_user_id", "trials", ["user_id"])
    op.create_index("ix_trials_expires_at", "trials", ["expires_at"])

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sync_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="in_progress"),
        sa.Column("records_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("started_at", nullable=False, server_default=True),
        _ts("completed_at"),
    )
    op.create_index("ix_sync_logs_user_id", "sync_logs", ["user_id"])

    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("event_data", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("processed_at", server_default=True),
    )
    op.create_index("ix_webhook_logs_user_id", "webhook_logs", ["user_id"])

    op.create_table(
        "oauth_states",
        sa.Column("state", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("return_url", sa.String(), nullable=True),
        _ts("expires_at", nullable=False),
        _ts("created_at", server_default=True),
    )
    op.create_index("ix_oauth_states_user_id", "oauth_states", ["user_id"])


def downgrade() -> None:
    op.drop_table("oauth_states")
    op.drop_table("webhook_logs")
    op.drop_table("sync_logs")
    op.drop_table("trials")
    op.drop_table("subscriptions")
    op.drop_table("knowledge_base_articles")
    op.drop_table("insights")
    op.drop_table("ai_responses")
    op.drop_table("tickets")
    op.drop_table("api_sessions")
    op.drop_table("users")
