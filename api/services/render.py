from __future__ import annotations

import uuid

from workers.tasks import execute_run_task


def enqueue_run(run_id: uuid.UUID) -> str:
    """Queue a created run for execution on a render worker."""

    result = execute_run_task.delay(str(run_id))
    return result.id
