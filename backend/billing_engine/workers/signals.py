"""
Celery signal handlers — log task execution events with duration.

Imported by celery_app.py to register handlers on worker startup.
Handlers never raise; a logging problem must not interfere with the task.
"""
from __future__ import annotations

import logging
import time

from celery.signals import task_failure, task_postrun, task_prerun

logger = logging.getLogger(__name__)

_started: dict[str, float] = {}


def _task_name(sender: object) -> str:
    return sender.name if hasattr(sender, "name") else str(sender)


@task_prerun.connect
def on_task_prerun(sender: object = None, task_id: str = "", **kw: object) -> None:
    _started[task_id] = time.monotonic()
    logger.info("task_started: task=%s id=%s", _task_name(sender), task_id)


@task_postrun.connect
def on_task_postrun(sender: object = None, task_id: str = "", retval: object = None, state: str = "", **kw: object) -> None:
    """Loga estado final e duracao em ms."""
    started = _started.pop(task_id, None)
    duration_ms = round((time.monotonic() - started) * 1000, 2) if started is not None else 0.0
    summary = str(retval)
    logger.info(
        "task_finished: task=%s id=%s state=%s duration_ms=%.2f result=%s",
        _task_name(sender), task_id, state or "SUCCESS", duration_ms, summary[:500],
    )


@task_failure.connect
def on_task_failure(sender: object = None, task_id: str = "", exception: BaseException | None = None, **kw: object) -> None:
    _started.pop(task_id, None)
    logger.error("task_failed: task=%s id=%s error=%r", _task_name(sender), task_id, exception)
