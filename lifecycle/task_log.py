"""
TaskLogger — append-only audit trail for one issuance or renewal attempt.

Each attempt gets a generated task id, a TaskLogStatus row that starts as
"running" and is closed exactly once, and any number of free-text progress
lines.  Lines are mirrored to the Python logger so the console shows the
same story as the stored audit.
"""
from __future__ import annotations

import logging

from lifecycle.models import TaskStatus, TaskType
from lifecycle.store import LifecycleStore

logger = logging.getLogger(__name__)


class TaskLogger:
    def __init__(self, store: LifecycleStore) -> None:
        self.store = store

    def start(self, cert_id: int, task_type: TaskType, domain: str = "") -> str:
        task = self.store.create_task(cert_id, task_type)
        verb = "issuance" if task_type == TaskType.ISSUE else "renewal"
        self.info(task.task_id, f"Starting certificate {verb} for {domain or cert_id}")
        return task.task_id

    def info(self, task_id: str, message: str) -> None:
        self._append(task_id, "info", message)

    def warn(self, task_id: str, message: str) -> None:
        self._append(task_id, "warn", message)

    def error(self, task_id: str, message: str) -> None:
        self._append(task_id, "error", message)

    def finish(self, task_id: str, status: TaskStatus) -> None:
        self.store.complete_task(task_id, status)

    def _append(self, task_id: str, level: str, message: str) -> None:
        logger.log(
            {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}[level],
            "[task %s] %s",
            task_id[:8],
            message,
        )
        self.store.append_task_log(task_id, level, message)
