"""initial pipeline schema

Revision ID: 7a1e4c2b9d30
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, UUID

from alembic import op

revision = "7a1e4c2b9d30"
down_revision = None
branch_labels = None
depends_on = None

git_auth_type_enum = ENUM("none", "ssh_key", "http_token", name="gitauthtype", create_type=False)
git_provider_enum = ENUM("github", "gitlab", "bitbucket", "generic", name="gitprovider", create_type=False)
build_strategy_enum = ENUM("docker_build", "compose_only", "script", name="buildstrategy", create_type=False)
deployment_status_enum = ENUM(
    "pending",
    "building",
    "deploying",
    "successful",
    "failed",
    "rolled_back",
    "cancelled",
    name="deploymentstatus",
    create_type=False,
)
deployment_trigger_enum = ENUM("webhook", "manual", "scheduled", "api", name="deploymenttrigger", create_type=False)
webhook_event_status_enum = ENUM(
    "received", "ignored", "queued", "processed", "failed", name="webhookeventstatus", create_type=False
)
build_request_status_enum = ENUM(
    "requested", "queued", "running", "completed", "failed", name="buildrequeststatus", create_type=False
)

_ENUMS = (
    git_auth_type_enum,
    git_provider_enum,
    build_strategy_enum,
    deployment_status_enum,
    deployment_trigger_enum,
    webhook_event_status_enum,
    build_request_status_enum,
)


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    if is_postgres:
        for enum in _ENUMS:
            enum.create(bind, checkfirst=True)

    op.create_table(
        "git_repositories",
        sa.Column("repo_id", UUID(as_uuid=True), nullable=False),
        sa.Column("stack_id", sa.String(length=120), nullable=False),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("branch", sa.String(length=255), nullable=True),
        sa.Column("auth_type", git_auth_type_enum, nullable=True),
        sa.Column("credentials_encrypted", sa.Text(), nullable=True),
        sa.Column("webhook_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("provider", git_provider_enum, nullable=True),
        sa.Column("last_synced_commit", sa.String(length=64), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("repo_id"),
        sa.UniqueConstraint("stack_id", name="uq_git_repositories_stack_id"),
    )

    op.create_table(
        "build_configs",
        sa.Column("config_id", UUID(as_uuid=True), nullable=False),
        sa.Column("stack_id", sa.String(length=120), nullable=False),
        sa.Column("repo_id", UUID(as_uuid=True), nullable=False),
        sa.Column("strategy", build_strategy_enum, nullable=True),
        sa.Column("dockerfile_path", sa.String(length=512), nullable=True),
        sa.Column("compose_path", sa.String(length=512), nullable=True),
        sa.Column("env_file_path", sa.String(length=512), nullable=True),
        sa.Column("pre_build_commands", sa.JSON(), nullable=True),
        sa.Column("post_build_commands", sa.JSON(), nullable=True),
        sa.Column("timeout_seconds", sa.Integer(), nullable=True),
        sa.Column("auto_deploy", sa.Boolean(), nullable=True),
        sa.Column("auto_deploy_branches", sa.JSON(), nullable=True),
        sa.Column("rollback_on_failure", sa.Boolean(), nullable=True),
        sa.Column("health_check_path", sa.String(length=512), nullable=True),
        sa.Column("health_check_timeout", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["repo_id"], ["git_repositories.repo_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("config_id"),
        sa.UniqueConstraint("stack_id", name="uq_build_configs_stack_id"),
    )

    op.create_table(
        "build_args",
        sa.Column("arg_id", UUID(as_uuid=True), nullable=False),
        sa.Column("config_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["config_id"], ["build_configs.config_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("arg_id"),
        sa.UniqueConstraint("config_id", "name", name="uq_build_args_config_name"),
    )

    op.create_table(
        "build_env_vars",
        sa.Column("env_id", UUID(as_uuid=True), nullable=False),
        sa.Column("config_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("is_secret", sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(["config_id"], ["build_configs.config_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("env_id"),
        sa.UniqueConstraint("config_id", "name", name="uq_build_env_vars_config_name"),
    )

    op.create_table(
        "deployments",
        sa.Column("deployment_id", UUID(as_uuid=True), nullable=False),
        sa.Column("stack_id", sa.String(length=120), nullable=False),
        sa.Column("repo_id", UUID(as_uuid=True), nullable=False),
        sa.Column("config_id", UUID(as_uuid=True), nullable=True),
        sa.Column("build_id", sa.String(length=36), nullable=False),
        sa.Column("commit_sha", sa.String(length=64), nullable=True),
        sa.Column("commit_message", sa.Text(), nullable=True),
        sa.Column("commit_author", sa.String(length=255), nullable=True),
        sa.Column("branch", sa.String(length=255), nullable=True),
        sa.Column("tag", sa.String(length=255), nullable=True),
        sa.Column("status", deployment_status_enum, nullable=True),
        sa.Column("trigger", deployment_trigger_enum, nullable=True),
        sa.Column("triggered_by", sa.String(length=255), nullable=True),
        sa.Column("previous_deployment_id", UUID(as_uuid=True), nullable=True),
        sa.Column("build_log", sa.Text(), nullable=True),
        sa.Column("deployment_log", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("image_ref", sa.String(length=512), nullable=True),
        sa.Column("compose_snapshot", sa.Text(), nullable=True),
        sa.Column("env_snapshot_encrypted", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["repo_id"], ["git_repositories.repo_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["config_id"], ["build_configs.config_id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["previous_deployment_id"], ["deployments.deployment_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("deployment_id"),
    )
    op.create_index("ix_deployments_stack_id", "deployments", ["stack_id"])
    op.create_index("ix_deployments_repo_id", "deployments", ["repo_id"])
    op.create_index("ix_deployments_build_id", "deployments", ["build_id"])
    op.create_index("ix_deployments_status", "deployments", ["status"])
    op.create_index("ix_deployments_created_at", "deployments", ["created_at"])

    op.create_table(
        "webhook_events",
        sa.Column("event_id", UUID(as_uuid=True), nullable=False),
        sa.Column("repo_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", git_provider_enum, nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.Column("headers", sa.JSON(), nullable=True),
        sa.Column("signature", sa.String(length=255), nullable=True),
        sa.Column("branch", sa.String(length=255), nullable=True),
        sa.Column("tag", sa.String(length=255), nullable=True),
        sa.Column("commit_sha", sa.String(length=64), nullable=True),
        sa.Column("commit_message", sa.Text(), nullable=True),
        sa.Column("commit_author", sa.String(length=255), nullable=True),
        sa.Column("verified", sa.Boolean(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=True),
        sa.Column("status", webhook_event_status_enum, nullable=True),
        sa.Column("build_id", sa.String(length=36), nullable=True),
        sa.Column("deployment_id", UUID(as_uuid=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["repo_id"], ["git_repositories.repo_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["deployment_id"], ["deployments.deployment_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_webhook_events_repo_id", "webhook_events", ["repo_id"])
    op.create_index("ix_webhook_events_build_id", "webhook_events", ["build_id"])
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"])

    op.create_table(
        "build_requests",
        sa.Column("request_id", UUID(as_uuid=True), nullable=False),
        sa.Column("build_id", sa.String(length=36), nullable=False),
        sa.Column("repo_id", UUID(as_uuid=True), nullable=False),
        sa.Column("stack_id", sa.String(length=120), nullable=False),
        sa.Column("trigger", deployment_trigger_enum, nullable=True),
        sa.Column("triggered_by", sa.String(length=255), nullable=True),
        sa.Column("webhook_event_id", UUID(as_uuid=True), nullable=True),
        sa.Column("rollback_of_id", UUID(as_uuid=True), nullable=True),
        sa.Column("commit_sha", sa.String(length=64), nullable=True),
        sa.Column("commit_message", sa.Text(), nullable=True),
        sa.Column("commit_author", sa.String(length=255), nullable=True),
        sa.Column("branch", sa.String(length=255), nullable=True),
        sa.Column("tag", sa.String(length=255), nullable=True),
        sa.Column("status", build_request_status_enum, nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=True),
        sa.Column("deployment_id", UUID(as_uuid=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["repo_id"], ["git_repositories.repo_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["webhook_event_id"], ["webhook_events.event_id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["rollback_of_id"], ["deployments.deployment_id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["deployment_id"], ["deployments.deployment_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("request_id"),
        sa.UniqueConstraint("build_id", name="uq_build_requests_build_id"),
    )
    op.create_index("ix_build_requests_repo_id", "build_requests", ["repo_id"])
    op.create_index("ix_build_requests_status", "build_requests", ["status"])
    op.create_index("ix_build_requests_created_at", "build_requests", ["created_at"])


def downgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"

    op.drop_index("ix_build_requests_created_at", table_name="build_requests")
    op.drop_index("ix_build_requests_status", table_name="build_requests")
    op.drop_index("ix_build_requests_repo_id", table_name="build_requests")
    op.drop_table("build_requests")

    op.drop_index("ix_webhook_events_received_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_build_id", table_name="webhook_events")
    op.drop_index("ix_webhook_events_repo_id", table_name="webhook_events")
    op.drop_table("webhook_events")

    for name in ("created_at", "status", "build_id", "repo_id", "stack_id"):
        op.drop_index(f"ix_deployments_{name}", table_name="deployments")
    op.drop_table("deployments")

    op.drop_table("build_env_vars")
    op.drop_table("build_args")
    op.drop_table("build_configs")
    op.drop_table("git_repositories")

    if is_postgres:
        for enum in reversed(_ENUMS):
            enum.drop(bind, checkfirst=True)
