"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates the report-processing tables:
- reports
- scraping_sessions
- scraped_reviews
- analysis_tasks
- themes, quotes, suggestions
- system_metrics, alert_logs, cron_execution_log
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

REPORT_STATUSES = (
    "pending",
    "scraping",
    "scraping_completed",
    "analyzing",
    "completing",
    "completed",
    "failed",
    "error",
)
SCRAPER_STATUSES = ("disabled", "pending", "running", "completed", "failed")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    # Reports
    op.create_table(
        "reports",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("app_name", sa.String(255), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*REPORT_STATUSES, name="report_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("enabled_platforms", sa.JSON, nullable=True),
        sa.Column("failure_stage", sa.String(32), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("failure_details", sa.JSON, nullable=True),
        sa.Column("analysis_started_at", sa.DateTime, nullable=True),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_reports_status", "reports", ["status", "updated_at"])

    # Scraping sessions, one per scraping run
    op.create_table(
        "scraping_sessions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "report_id",
            sa.BigInteger,
            sa.ForeignKey("reports.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("app_name", sa.String(255), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "running", "completed", "error", name="scraping_session_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("enabled_platforms", sa.JSON, nullable=True),
        sa.Column(
            "app_store_scraper_status",
            sa.Enum(*SCRAPER_STATUSES, name="scraper_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "google_play_scraper_status",
            sa.Enum(*SCRAPER_STATUSES, name="scraper_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "reddit_scraper_status",
            sa.Enum(*SCRAPER_STATUSES, name="scraper_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("app_store_reviews", sa.Integer, nullable=False, server_default="0"),
        sa.Column("google_play_reviews", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reddit_posts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_reviews_found", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_scraping_sessions_report", "scraping_sessions", ["report_id", "status"])

    # Raw reviews written by the scrapers
    op.create_table(
        "scraped_reviews",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "scraping_session_id",
            sa.BigInteger,
            sa.ForeignKey("scraping_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "platform",
            sa.Enum("app_store", "google_play", "reddit", name="review_platform_enum"),
            nullable=False,
        ),
        sa.Column("review_text", sa.Text, nullable=False),
        sa.Column("rating", sa.Integer, nullable=True),
        sa.Column("review_date", sa.DateTime, nullable=True),
        sa.Column("author_name", sa.String(255), nullable=True),
        sa.Column("source_url", sa.String(1024), nullable=True),
        sa.Column("metadata_json", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "idx_scraped_reviews_session_platform",
        "scraped_reviews",
        ["scraping_session_id", "platform"],
    )

    # Analysis tasks (retry queue)
    op.create_table(
        "analysis_tasks",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "report_id",
            sa.BigInteger,
            sa.ForeignKey("reports.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "scraping_session_id",
            sa.BigInteger,
            sa.ForeignKey("scraping_sessions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("batch_index", sa.Integer, nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("reviews_data", sa.JSON, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "processing", "completed", "failed", name="analysis_task_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("themes_data", sa.JSON, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("next_attempt_at", sa.DateTime, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("error_details", sa.JSON, nullable=True),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("processing_duration", sa.Float, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("report_id", "batch_index", name="uq_analysis_task_batch"),
    )
    op.create_index("idx_analysis_tasks_status", "analysis_tasks", ["status", "next_attempt_at"])
    op.create_index("idx_analysis_tasks_report", "analysis_tasks", ["report_id", "status"])

    # Consolidated themes
    op.create_table(
        "themes",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "report_id",
            sa.BigInteger,
            sa.ForeignKey("reports.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("rank", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_themes_report_platform", "themes", ["report_id", "platform", "rank"])

    op.create_table(
        "quotes",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "theme_id",
            sa.BigInteger,
            sa.ForeignKey("themes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("text", sa.Text, nullable=False),
        sa.Column("source", sa.String(32), nullable=True),
    )

    op.create_table(
        "suggestions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "theme_id",
            sa.BigInteger,
            sa.ForeignKey("themes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("text", sa.Text, nullable=False),
    )

    # Monitoring sink
    op.create_table(
        "system_metrics",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("metric_name", sa.String(128), nullable=False),
        sa.Column("metric_value", sa.Float, nullable=False),
        sa.Column("metric_unit", sa.String(32), nullable=True),
        sa.Column("tags", sa.JSON, nullable=True),
        sa.Column("recorded_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_system_metrics_name", "system_metrics", ["metric_name", "recorded_at"])

    op.create_table(
        "alert_logs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("alert_type", sa.String(64), nullable=False),
        sa.Column(
            "severity",
            sa.Enum("info", "warning", "error", "critical", name="alert_severity_enum"),
            nullable=False,
            server_default="warning",
        ),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_alert_logs_type", "alert_logs", ["alert_type", "created_at"])

    op.create_table(
        "cron_execution_log",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("job_name", sa.String(128), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("execution_time_ms", sa.Integer, nullable=True),
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("executed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_cron_execution_log_job", "cron_execution_log", ["job_name", "executed_at"])


def downgrade() -> None:
    op.drop_table("cron_execution_log")
    op.drop_table("alert_logs")
    op.drop_table("system_metrics")
    op.drop_table("suggestions")
    op.drop_table("quotes")
    op.drop_table("themes")
    op.drop_table("analysis_tasks")
    op.drop_table("scraped_reviews")
    op.drop_table("scraping_sessions")
    op.drop_table("reports")
