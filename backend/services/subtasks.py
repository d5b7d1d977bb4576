"""
Subtask operations.

Subtask order within a task is dense and 1-based. New subtasks go after the
current maximum, deletes close the gap, and reorders are applied in a single
commit. Every mutation requires EDIT access on the parent task and appends
one UPDATED activity to it.
"""

import logging
from typing import List, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
import schemas
from auth.permissions import require_task_access
from errors import invalid, not_found
from services.tasks import record_activity

logger = logging.getLogger(__name__)


def _ordered_subtasks(db: Session, task_id: int) -> List[models.Subtask]:
    return (
        db.query(models.Subtask)
        .filter(models.Subtask.task_id == task_id)
        .order_by(models.Subtask.order, models.Subtask.id)
        .all()
    )


def _get_subtask(db: Session, task_id: int, subtask_id: int) -> models.Subtask:
    subtask = (
        db.query(models.Subtask)
        .filter(models.Subtask.id == subtask_id, models.Subtask.task_id == task_id)
        .first()
    )
    if subtask is None:
        logger.info(f"Subtask {subtask_id} not found on task {task_id}")
        raise not_found("Subtask not found")
    return subtask


def create_subtask(
    db: Session, user: models.User, task_id: int, data: schemas.SubtaskCreate
) -> Tuple[models.Task, models.Subtask]:
    logger.debug(f"User {user.id} adding subtask to task {task_id}")
    task = require_task_access(db, user, task_id, models.SharePermission.EDIT)

    max_order = (
        db.query(func.max(models.Subtask.order))
        .filter(models.Subtask.task_id == task.id)
        .scalar()
    )
    subtask = models.Subtask(
        task_id=task.id,
        text=data.text,
        completed=False,
        order=(max_order or 0) + 1,
    )
    db.add(subtask)
    record_activity(db, task.id, user.id, models.TaskAction.UPDATED, f'Subtask added: "{data.text}"')
    db.commit()
    db.refresh(subtask)
    db.refresh(task)

    logger.info(f"Subtask {subtask.id} created on task {task.id} at position {subtask.order}")
    return task, subtask


def update_subtask(
    db: Session, user: models.User, task_id: int, subtask_id: int, data: schemas.SubtaskUpdate
) -> Tuple[models.Task, models.Subtask]:
    logger.debug(f"User {user.id} updating subtask {subtask_id} on task {task_id}")
    task = require_task_access(db, user, task_id, models.SharePermission.EDIT)
    subtask = _get_subtask(db, task.id, subtask_id)

    changes = data.model_dump(exclude_unset=True)
    for required_field in ("text", "completed"):
        if required_field in changes and changes[required_field] is None:
            raise invalid(f"{required_field} cannot be null", field=required_field)

    parts = []
    if "text" in changes and changes["text"] != subtask.text:
        parts.append(f'text changed to "{changes["text"]}"')
    if "completed" in changes and changes["completed"] != subtask.completed:
        parts.append("marked as completed" if changes["completed"] else "marked as incomplete")

    for key, value in changes.items():
        setattr(subtask, key, value)

    record_activity(
        db,
        task.id,
        user.id,
        models.TaskAction.UPDATED,
        f"Subtask updated: {', '.join(parts) if parts else 'subtask updated'}",
    )
    db.commit()
    db.refresh(subtask)
    db.refresh(task)

    logger.info(f"Subtask {subtask.id} updated on task {task.id}")
    return task, subtask


def delete_subtask(
    db: Session, user: models.User, task_id: int, subtask_id: int
) -> Tuple[models.Task, List[models.Subtask]]:
    """
    Delete a subtask and renumber the remaining ones so orders stay dense.

    Returns:
        Tuple of (task, remaining subtasks in order)
    """
    logger.debug(f"User {user.id} deleting subtask {subtask_id} from task {task_id}")
    task = require_task_access(db, user, task_id, models.SharePermission.EDIT)
    subtask = _get_subtask(db, task.id, subtask_id)
    text = subtask.text

    db.delete(subtask)
    db.flush()

    remaining = _ordered_subtasks(db, task.id)
    for position, item in enumerate(remaining, start=1):
        item.order = position

    record_activity(db, task.id, user.id, models.TaskAction.UPDATED, f'Subtask deleted: "{text}"')
    db.commit()
    db.refresh(task)

    logger.info(f"Subtask {subtask_id} deleted from task {task.id}")
    return task, _ordered_subtasks(db, task.id)


def reorder_subtasks(
    db: Session, user: models.User, task_id: int, data: schemas.SubtaskReorder
) -> Tuple[models.Task, List[models.Subtask]]:
    """
    Reorder subtasks to follow the given ID sequence.

    The listed subtasks take positions 1..n in the given order. Subtasks not
    listed keep their relative order and follow after them. A list containing
    any ID that does not belong to the task is rejected and nothing changes.

    Returns:
        Tuple of (task, subtasks in their new order)
    """
    logger.debug(f"User {user.id} reordering subtasks of task {task_id}: {data.subtask_ids}")
    task = require_task_access(db, user, task_id, models.SharePermission.EDIT)

    current = _ordered_subtasks(db, task.id)
    by_id = {subtask.id: subtask for subtask in current}

    foreign = [subtask_id for subtask_id in data.subtask_ids if subtask_id not in by_id]
    if foreign:
        logger.info(f"Reorder of task {task.id} rejected, foreign subtask ids: {foreign}")
        raise invalid("Some subtask IDs do not belong to this task", field="subtask_ids")

    listed = set(data.subtask_ids)
    new_sequence = [by_id[subtask_id] for subtask_id in data.subtask_ids]
    new_sequence.extend(subtask for subtask in current if subtask.id not in listed)

    for position, subtask in enumerate(new_sequence, start=1):
        subtask.order = position

    record_activity(db, task.id, user.id, models.TaskAction.UPDATED, "Subtasks reordered")
    db.commit()
    db.refresh(task)

    logger.info(f"Subtasks reordered for task {task.id} by user {user.id}")
    return task, _ordered_subtasks(db, task.id)
