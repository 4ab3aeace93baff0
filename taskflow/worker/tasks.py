"""
Built-in task types.

Handlers must be idempotent or guarded: they may be executed more than once
for the same task when a worker crashes or a delivery is retried.
"""

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from pydantic import BaseModel, Field

from taskflow.constants import Queue
from taskflow.errors import ValidationError
from taskflow.idempotency import IdempotencyConfig, IdempotencyStore, idempotent
from taskflow.types.task import TaskContext, TaskEnvelope, decode_payload
from taskflow.worker.server import WorkerServer

logger = logging.getLogger(__name__)

TYPE_NOTE_ARCHIVE = "note:archive"
TYPE_CLEANUP_OLD_NOTES = "cleanup:old_notes"

# Cleanup removes notes archived longer ago than this by default
CLEANUP_DEFAULT_AGE = timedelta(days=30)
CLEANUP_TIMEOUT_SECONDS = 5 * 60
CLEANUP_SCHEDULE = "0 0 * * *"


class NoteArchivePayload(BaseModel):
    note_id: UUID


class CleanupOldNotesPayload(BaseModel):
    archived_before: datetime | None = None
    dry_run: bool = False


def new_note_archive_task(note_id: UUID, queue: Queue = Queue.DEFAULT) -> TaskEnvelope:
    """Build a note:archive task."""
    return TaskEnvelope.from_model(
        TYPE_NOTE_ARCHIVE,
        NoteArchivePayload(note_id=note_id),
        queue=queue,
        max_retry=3,
    )


def new_cleanup_old_notes_task(
    archived_before: datetime | None = None,
    dry_run: bool = False,
) -> TaskEnvelope:
    """
    Build a cleanup:old_notes task.

    Without archived_before the handler uses a cutoff of 30 days before it
    runs, so one template can be enqueued on every scheduled firing.
    """
    payload = CleanupOldNotesPayload(archived_before=archived_before, dry_run=dry_run)
    return TaskEnvelope.from_model(
        TYPE_CLEANUP_OLD_NOTES,
        payload,
        max_retry=3,
        timeout_seconds=CLEANUP_TIMEOUT_SECONDS,
    )


def _decode_note_archive(payload: bytes) -> NoteArchivePayload:
    p = decode_payload(NoteArchivePayload, payload)
    if p.note_id.int == 0:
        raise ValidationError("note_id is required")
    return p


def note_archive_key(ctx: TaskContext, payload: bytes) -> str:
    """Idempotency key: one archive per note."""
    return f"{TYPE_NOTE_ARCHIVE}:{_decode_note_archive(payload).note_id}"


async def handle_note_archive(ctx: TaskContext, payload: bytes) -> None:
    """Archive a single note."""
    p = _decode_note_archive(payload)

    logger.info(
        "Archiving note",
        extra={"delivery_id": ctx.delivery_id, "note_id": str(p.note_id)},
    )

    logger.info(
        "Note archived successfully",
        extra={"delivery_id": ctx.delivery_id, "note_id": str(p.note_id)},
    )


async def handle_cleanup_old_notes(ctx: TaskContext, payload: bytes) -> None:
    """
    Remove notes archived before a cutoff.

    Payload:
    - archived_before: cutoff timestamp, defaults to 30 days ago
    - dry_run: only count what would be removed
    """
    p = decode_payload(CleanupOldNotesPayload, payload)
    archived_before = p.archived_before or datetime.now(UTC) - CLEANUP_DEFAULT_AGE

    logger.info(
        "Starting cleanup of old notes",
        extra={
            "delivery_id": ctx.delivery_id,
            "archived_before": archived_before.isoformat(),
            "dry_run": p.dry_run,
        },
    )

    cleaned_count = 0

    logger.info(
        "Completed cleanup of old notes",
        extra={
            "delivery_id": ctx.delivery_id,
            "cleaned_count": cleaned_count,
            "dry_run": p.dry_run,
        },
    )


def register_tasks(
    server: WorkerServer,
    store: IdempotencyStore,
    config: IdempotencyConfig | None = None,
) -> None:
    """Register the built-in handlers on a worker server."""
    server.handle(
        TYPE_NOTE_ARCHIVE,
        handle_note_archive,
        idempotent(store, note_archive_key, config),
    )
    server.handle(TYPE_CLEANUP_OLD_NOTES, handle_cleanup_old_notes)
