"""Initial schema with tasks table

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TASK_STATES = ("pending", "active", "retry", "archived", "completed")
TASK_QUEUES = ("critical", "default", "low")


def upgrade() -> None:
    # Create enums using raw SQL with IF NOT EXISTS
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE task_state AS ENUM ('pending', 'active', 'retry', 'archived', 'completed');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.execute("""
        DO $$ BEGIN
            CREATE TYPE task_queue AS ENUM ('critical', 'default', 'low');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.create_table(
        "tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("task_type", sa.String(255), nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column(
            "queue",
            postgresql.ENUM(*TASK_QUEUES, name="task_queue", create_type=False),
            nullable=False,
            server_default="default",
        ),
        sa.Column("max_retry", sa.Integer, nullable=False, server_default="3"),
        sa.Column("timeout_seconds", sa.Float, nullable=True),
        sa.Column(
            "state",
            postgresql.ENUM(*TASK_STATES, name="task_state", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("retried", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "available_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create indexes
    op.create_index("ix_tasks_task_type", "tasks", ["task_type"])
    op.create_index("ix_tasks_state", "tasks", ["state"])
    op.create_index("ix_tasks_queue_state", "tasks", ["queue", "state", "created_at"])

    # Create partial index for dequeue polling
    op.execute("""
        CREATE INDEX ix_tasks_dequeue_poll
        ON tasks (queue, available_at)
        WHERE state IN ('pending', 'retry')
    """)

    # Create partial index for lease expiry
    op.execute("""
        CREATE INDEX ix_tasks_lease_expiry
        ON tasks (lease_expires_at)
        WHERE state = 'active'
    """)

    # Create partial index for purging completed tasks
    op.execute("""
        CREATE INDEX ix_tasks_completed_purge
        ON tasks (completed_at)
        WHERE state = 'completed'
    """)


def downgrade() -> None:
    # Drop indexes
    op.execute("DROP INDEX IF EXISTS ix_tasks_completed_purge")
    op.execute("DROP INDEX IF EXISTS ix_tasks_lease_expiry")
    op.execute("DROP INDEX IF EXISTS ix_tasks_dequeue_poll")
    op.drop_index("ix_tasks_queue_state")
    op.drop_index("ix_tasks_state")
    op.drop_index("ix_tasks_task_type")

    # Drop table
    op.drop_table("tasks")

    # Drop enums
    op.execute("DROP TYPE IF EXISTS task_state")
    op.execute("DROP TYPE IF EXISTS task_queue")
