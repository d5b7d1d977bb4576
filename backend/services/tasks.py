"""
Task aggregate operations.

Every function takes the acting user, checks access through auth.permissions,
performs the mutation, appends a TaskActivity row, and commits. Fan-out is
left to the caller so events are only emitted after the commit succeeded.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import asc, case, desc, or_
from sqlalchemy.orm import Session, selectinload

import models
import schemas
from auth.permissions import (
    get_share,
    require_task_access,
    require_task_owner,
    visible_task_filter,
)
from errors import invalid, not_found
from time_utils import ensure_utc, local_day_bounds, utc_now

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def record_activity(
    db: Session,
    task_id: int,
    user_id: Optional[int],
    action: models.TaskAction,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> models.TaskActivity:
    """
    Append an activity row to a task's log.

    The row is flushed, not committed; it becomes durable together with the
    mutation it describes.
    """
    activity = models.TaskActivity(
        task_id=task_id,
        user_id=user_id,
        action=action.value,
        description=description,
        activity_metadata=metadata,
    )
    db.add(activity)
    db.flush()
    logger.debug(f"Activity recorded: task={task_id}, action={action.value}, user={user_id}")
    return activity


def _task_query(db: Session):
    return db.query(models.Task).options(
        selectinload(models.Task.owner),
        selectinload(models.Task.subtasks),
        selectinload(models.Task.shares).selectinload(models.TaskShare.user),
    )


# ============== Create / Read ==============

def create_task(db: Session, user: models.User, data: schemas.TaskCreate) -> models.Task:
    logger.debug(f"User {user.id} creating task: {data.title}")

    task = models.Task(
        user_id=user.id,
        title=data.title,
        description=data.description,
        priority=models.TaskPriority(data.priority.value),
        category=data.category,
        tags=list(data.tags),
        due_date=data.due_date,
        estimated_time=data.estimated_time,
        completed=False,
    )
    db.add(task)
    db.flush()

    record_activity(db, task.id, user.id, models.TaskAction.CREATED, "Task created")
    db.commit()
    db.refresh(task)

    logger.info(f"Task created: {task.title} (ID: {task.id}) by user {user.id}")
    return task


def get_task(db: Session, user: models.User, task_id: int) -> models.Task:
    """Load a task with its subtasks, shares, and activity log (VIEW access)."""
    return require_task_access(db, user, task_id, models.SharePermission.VIEW)


def list_tasks(
    db: Session, user: models.User, filters: schemas.TaskFilters
) -> Tuple[List[models.Task], int]:
    """
    List tasks visible to the user (owned or shared), filtered, sorted, and paginated.

    Returns:
        Tuple of (tasks on the requested page, total matching count)
    """
    logger.debug(f"User {user.id} listing tasks with filters: {filters.model_dump(exclude_none=True)}")

    if filters.start_date and filters.end_date and filters.start_date > filters.end_date:
        raise invalid("start_date must not be after end_date", field="start_date")

    query = _task_query(db).filter(visible_task_filter(user))

    if filters.completed is not None:
        query = query.filter(models.Task.completed == filters.completed)
    if filters.priority:
        query = query.filter(models.Task.priority == models.TaskPriority(filters.priority.value))
    if filters.category:
        query = query.filter(models.Task.category == filters.category)
    if filters.search and filters.search.strip():
        pattern = f"%{filters.search.strip()}%"
        query = query.filter(
            or_(models.Task.title.ilike(pattern), models.Task.description.ilike(pattern))
        )
    if filters.start_date:
        query = query.filter(models.Task.due_date >= filters.start_date)
    if filters.end_date:
        query = query.filter(models.Task.due_date <= filters.end_date)

    total = query.count()

    direction = asc if filters.sort_order == schemas.SortOrder.asc else desc
    sort_by = filters.sort_by
    if sort_by == schemas.TaskSortField.priority:
        rank = case(
            {priority: position for priority, position in models.PRIORITY_RANK.items()},
            value=models.Task.priority,
        )
        order_clauses = [direction(rank)]
    elif sort_by == schemas.TaskSortField.due_date:
        # Tasks without a due date always sort last
        order_clauses = [models.Task.due_date.is_(None), direction(models.Task.due_date)]
    else:
        order_clauses = [direction(getattr(models.Task, sort_by.value))]
    # Task id as tiebreaker for deterministic pagination
    order_clauses.append(direction(models.Task.id))

    offset = (filters.page - 1) * filters.limit
    tasks = query.order_by(*order_clauses).offset(offset).limit(filters.limit).all()

    logger.info(f"User {user.id} retrieved {len(tasks)} of {total} tasks (page {filters.page})")
    return tasks, total


def task_stats(db: Session, user: models.User, now=None) -> Dict[str, int]:
    """
    Aggregate counts over every task visible to the user.

    "Today" is the server's local calendar day (see time_utils.local_day_bounds).
    """
    start_of_today, start_of_tomorrow = local_day_bounds(now)
    base = db.query(models.Task).filter(visible_task_filter(user))

    total = base.count()
    completed = base.filter(models.Task.completed.is_(True)).count()
    overdue = base.filter(
        models.Task.completed.is_(False),
        models.Task.due_date.isnot(None),
        models.Task.due_date < start_of_today,
    ).count()
    due_today = base.filter(
        models.Task.due_date >= start_of_today,
        models.Task.due_date < start_of_tomorrow,
    ).count()
    urgent = base.filter(
        models.Task.completed.is_(False),
        models.Task.priority == models.TaskPriority.URGENT,
    ).count()

    stats = {
        "total": total,
        "completed": completed,
        "pending": total - completed,
        "overdue": overdue,
        "due_today": due_today,
        "urgent": urgent,
    }
    logger.debug(f"Task stats for user {user.id}: {stats}")
    return stats


# ============== Update / Delete ==============

def _describe_changes(task: models.Task, changes: Dict[str, Any]) -> str:
    parts = []
    if "title" in changes and changes["title"] != task.title:
        parts.append(f'title changed to "{changes["title"]}"')
    if "completed" in changes and changes["completed"] != task.completed:
        parts.append("marked as completed" if changes["completed"] else "marked as incomplete")
    if "priority" in changes and changes["priority"] is not None:
        if models.TaskPriority(changes["priority"]) != models.TaskPriority(task.priority):
            parts.append(f"priority changed to {models.TaskPriority(changes['priority']).value}")
    if "due_date" in changes and ensure_utc(changes["due_date"]) != ensure_utc(task.due_date):
        parts.append("due date cleared" if changes["due_date"] is None else "due date changed")
    if "category" in changes and changes["category"] != task.category:
        parts.append("category cleared" if changes["category"] is None else f'category changed to "{changes["category"]}"')
    return ", ".join(parts) if parts else "Task updated"


def update_task(
    db: Session, user: models.User, task_id: int, data: schemas.TaskUpdate
) -> models.Task:
    """
    Apply a partial update (EDIT access).

    Only fields present in the request change. Completing a task stamps
    completed_at; reopening it clears completed_at.
    """
    logger.debug(f"User {user.id} updating task {task_id}")
    task = require_task_access(db, user, task_id, models.SharePermission.EDIT)

    changes = data.model_dump(exclude_unset=True)
    for required_field in ("title", "completed", "priority"):
        if required_field in changes and changes[required_field] is None:
            raise invalid(f"{required_field} cannot be null", field=required_field)

    description = _describe_changes(task, changes)
    was_completed = task.completed

    for key, value in changes.items():
        if key == "priority":
            value = models.TaskPriority(value)
        elif key == "tags":
            value = list(value) if value is not None else []
        setattr(task, key, value)

    if "completed" in changes:
        if changes["completed"] and not was_completed:
            task.completed_at = utc_now()
        elif not changes["completed"] and was_completed:
            task.completed_at = None

    record_activity(
        db,
        task.id,
        user.id,
        models.TaskAction.UPDATED,
        description,
        {"fields": sorted(changes.keys())},
    )
    db.commit()
    db.refresh(task)

    logger.info(f"Task updated: {task.id} by user {user.id} ({description})")
    return task


def delete_task(db: Session, user: models.User, task_id: int) -> List[int]:
    """
    Delete a task (owner only). Subtasks, shares, and activity cascade.

    Returns:
        User IDs that had access before deletion
    """
    logger.debug(f"User {user.id} deleting task {task_id}")
    task = require_task_owner(db, user, task_id, "delete")

    audience = [task.user_id] + [share.user_id for share in task.shares if share.user_id != task.user_id]

    db.delete(task)
    db.commit()

    logger.info(f"Task deleted: {task_id} by user {user.id}")
    return audience


# ============== Sharing ==============

def share_task(
    db: Session, user: models.User, task_id: int, request: schemas.TaskShareRequest
) -> Tuple[models.Task, List[models.TaskShare], List[models.User]]:
    """
    Grant one permission to a set of users (owner only).

    All targets must exist and be active, or nothing is shared. An existing
    share for a target has its permission updated in place.

    Returns:
        Tuple of (task, share rows for the targets, target users)
    """
    logger.debug(f"User {user.id} sharing task {task_id} with {request.user_ids} ({request.permission.value})")
    task = require_task_owner(db, user, task_id, "share")

    target_ids = list(dict.fromkeys(request.user_ids))
    if task.user_id in target_ids:
        raise invalid("You cannot share a task with its owner", field="user_ids")

    targets = (
        db.query(models.User)
        .filter(models.User.id.in_(target_ids), models.User.is_active.is_(True))
        .all()
    )
    if len(targets) != len(target_ids):
        found = {target.id for target in targets}
        missing = [target_id for target_id in target_ids if target_id not in found]
        logger.info(f"Share of task {task_id} rejected, unknown or inactive users: {missing}")
        raise invalid("One or more users not found", field="user_ids")

    permission = models.SharePermission(request.permission.value)
    targets.sort(key=lambda target: target_ids.index(target.id))

    shares = []
    for target in targets:
        share = get_share(db, task.id, target.id)
        if share is None:
            share = models.TaskShare(
                task_id=task.id,
                user_id=target.id,
                permission=permission,
                shared_by=user.id,
            )
            db.add(share)
        else:
            share.permission = permission
        shares.append(share)

    record_activity(
        db,
        task.id,
        user.id,
        models.TaskAction.SHARED,
        f"Task shared with {len(targets)} user(s)",
        {"shared_with": target_ids, "permission": permission.value},
    )
    db.commit()
    for share in shares:
        db.refresh(share)
    db.refresh(task)

    logger.info(f"Task shared: {task.id} by user {user.id} with {len(targets)} users")
    return task, shares, targets


def unshare_task(db: Session, user: models.User, task_id: int, target_user_id: int) -> models.Task:
    """Revoke one user's share (owner only)."""
    logger.debug(f"User {user.id} revoking access to task {task_id} from user {target_user_id}")
    task = require_task_owner(db, user, task_id, "unshare")

    share = get_share(db, task.id, target_user_id)
    if share is None:
        raise not_found("Share not found")

    db.delete(share)
    record_activity(
        db,
        task.id,
        user.id,
        models.TaskAction.UNSHARED,
        "Task access revoked",
        {"revoked_from": target_user_id},
    )
    db.commit()
    db.refresh(task)

    logger.info(f"Task unshared: {task.id} by user {user.id} from user {target_user_id}")
    return task


def list_activities(
    db: Session, user: models.User, task_id: int, limit: int = 50
) -> Tuple[List[models.TaskActivity], int]:
    """Newest-first activity log of a task (VIEW access)."""
    require_task_access(db, user, task_id, models.SharePermission.VIEW)

    query = db.query(models.TaskActivity).filter(models.TaskActivity.task_id == task_id)
    total = query.count()
    activities = (
        query.options(selectinload(models.TaskActivity.user))
        .order_by(desc(models.TaskActivity.id))
        .limit(limit)
        .all()
    )
    return activities, total
