from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime
import logging

from config import ALLOWED_ORIGINS, API_HOST, API_PORT, DB_CREATE_TABLES, LOG_LEVEL
from database import get_db, engine, Base
from errors import ErrorKind, ServiceError
import models
import schemas
from auth.routes import router as auth_router
from auth.dependencies import get_current_user
from realtime.fanout import Notifier, get_notifier, task_audience, team_audience
from realtime.socket import router as socket_router
from services import subtasks as subtask_service
from services import tasks as task_service
from services import teams as team_service
from services.email import EmailService, get_email_service

# Configure logging
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Todo App API",
    description="A collaborative todo list with task sharing, teams, and real-time updates",
    version="1.0.0"
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(socket_router)


@app.on_event("startup")
def create_tables():
    """Create missing tables when DB_CREATE_TABLES is set (local development)."""
    if DB_CREATE_TABLES:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)


# ============== Error Handling ==============

STATUS_BY_KIND = {
    ErrorKind.validation_error: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.forbidden: status.HTTP_403_FORBIDDEN,
    ErrorKind.conflict: status.HTTP_409_CONFLICT,
    ErrorKind.unauthenticated: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.delivery_failed: status.HTTP_502_BAD_GATEWAY,
}


def error_payload(kind: str, detail: str, fields: Optional[list] = None) -> dict:
    return {"error": kind, "detail": detail, "fields": fields or []}


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    status_code = STATUS_BY_KIND[exc.kind]
    headers = {"WWW-Authenticate": "Bearer"} if exc.kind == ErrorKind.unauthenticated else None
    logger.debug(f"{request.method} {request.url.path} -> {status_code} {exc.kind.value}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content=error_payload(exc.kind.value, exc.message, exc.fields),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields.append({"field": ".".join(location) or None, "message": error.get("msg", "Invalid value")})
    logger.info(f"{request.method} {request.url.path} -> 422 validation_error: {fields}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_payload(ErrorKind.validation_error.value, "Request validation failed", fields),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_payload("internal_error", "Internal server error"),
    )


@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Event payloads ==============

def task_payload(task: models.Task) -> dict:
    return schemas.Task.model_validate(task).model_dump(mode="json")


def subtask_payload(subtask: models.Subtask) -> dict:
    return schemas.Subtask.model_validate(subtask).model_dump(mode="json")


def user_payload(user: models.User) -> dict:
    return schemas.UserSummary.model_validate(user).model_dump(mode="json")


def team_payload(team: models.Team) -> dict:
    return schemas.Team.model_validate(team).model_dump(mode="json")


def member_payload(member: models.TeamMember) -> dict:
    return schemas.TeamMember.model_validate(member).model_dump(mode="json")


# ============== Tasks ==============

@app.get("/api/tasks", response_model=schemas.TaskList)
def list_tasks(
    completed: Optional[bool] = Query(None),
    priority: Optional[schemas.TaskPriority] = Query(None),
    category: Optional[str] = Query(None, max_length=100),
    search: Optional[str] = Query(None, max_length=255, description="Case-insensitive match on title or description"),
    start_date: Optional[datetime] = Query(None, description="Only tasks due at or after this instant"),
    end_date: Optional[datetime] = Query(None, description="Only tasks due at or before this instant"),
    sort_by: schemas.TaskSortField = Query(schemas.TaskSortField.created_at),
    sort_order: schemas.SortOrder = Query(schemas.SortOrder.desc),
    page: int = Query(1, ge=1),
    limit: int = Query(task_service.DEFAULT_PAGE_SIZE, ge=1, le=task_service.MAX_PAGE_SIZE),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List tasks the user owns or that are shared with them."""
    filters = schemas.TaskFilters(
        completed=completed,
        priority=priority,
        category=category,
        search=search,
        start_date=start_date,
        end_date=end_date,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    tasks, total = task_service.list_tasks(db, current_user, filters)
    total_pages = (total + limit - 1) // limit
    return {
        "tasks": tasks,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


@app.post("/api/tasks", response_model=schemas.Task, status_code=status.HTTP_201_CREATED)
async def create_task(
    task: schemas.TaskCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    db_task = await run_in_threadpool(task_service.create_task, db, current_user, task)

    await notifier.notify_user(current_user.id, "task:created", task_payload(db_task))
    return db_task


@app.get("/api/tasks/stats", response_model=schemas.TaskStats)
def get_task_stats(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Counts over every task visible to the user; "today" is the server's local day."""
    return task_service.task_stats(db, current_user)


@app.get("/api/tasks/{task_id}", response_model=schemas.TaskDetail)
def get_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return task_service.get_task(db, current_user, task_id)


@app.put("/api/tasks/{task_id}", response_model=schemas.Task)
async def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    """Partially update a task (owner or EDIT share)."""
    db_task = await run_in_threadpool(task_service.update_task, db, current_user, task_id, task_update)

    await notifier.notify_users(task_audience(db_task), "task:updated", task_payload(db_task))
    return db_task


@app.delete("/api/tasks/{task_id}", response_model=schemas.MessageResponse)
async def delete_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    """Delete a task (owner only). Everyone who had access is notified."""
    audience = await run_in_threadpool(task_service.delete_task, db, current_user, task_id)

    await notifier.notify_users(audience, "task:deleted", {"task_id": task_id})
    return {"message": "Task deleted successfully"}


@app.post("/api/tasks/{task_id}/share", response_model=schemas.TaskShareResult)
async def share_task(
    task_id: int,
    share_request: schemas.TaskShareRequest,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    email_service: EmailService = Depends(get_email_service)
):
    """Share a task with users (owner only); existing shares get the new permission."""
    db_task, shares, targets = await run_in_threadpool(
        task_service.share_task, db, current_user, task_id, share_request
    )

    sharer_name = current_user.first_name or current_user.username
    permission = share_request.permission.value
    for target in targets:
        await email_service.send_task_shared_email(
            target.email, sharer_name, db_task.title, permission, share_request.message
        )

    await notifier.notify_users(
        [target.id for target in targets],
        "task:shared",
        {
            "task": task_payload(db_task),
            "permission": permission,
            "shared_by": user_payload(current_user),
        },
    )
    return {"message": "Task shared successfully", "shares": shares}


@app.delete("/api/tasks/{task_id}/share/{user_id}", response_model=schemas.MessageResponse)
async def unshare_task(
    task_id: int,
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    await run_in_threadpool(task_service.unshare_task, db, current_user, task_id, user_id)
    await notifier.notify_user(user_id, "task:unshared", {"task_id": task_id})
    return {"message": "Task access revoked successfully"}


@app.get("/api/tasks/{task_id}/activities", response_model=schemas.TaskActivityList)
def list_task_activities(
    task_id: int,
    limit: int = Query(50, ge=1, le=200),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    activities, total = task_service.list_activities(db, current_user, task_id, limit)
    return {"activities": activities, "total_count": total}


# ============== Subtasks ==============

@app.post("/api/tasks/{task_id}/subtasks", response_model=schemas.Subtask, status_code=status.HTTP_201_CREATED)
async def create_subtask(
    task_id: int,
    subtask: schemas.SubtaskCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    db_task, db_subtask = await run_in_threadpool(
        subtask_service.create_subtask, db, current_user, task_id, subtask
    )
    await notifier.notify_users(
        task_audience(db_task),
        "subtask:created",
        {"task_id": task_id, "subtask": subtask_payload(db_subtask), "created_by": user_payload(current_user)},
    )
    return db_subtask


@app.post("/api/tasks/{task_id}/subtasks/reorder", response_model=schemas.SubtaskList)
async def reorder_subtasks(
    task_id: int,
    reorder: schemas.SubtaskReorder,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    db_task, ordered = await run_in_threadpool(
        subtask_service.reorder_subtasks, db, current_user, task_id, reorder
    )
    await notifier.notify_users(
        task_audience(db_task),
        "subtasks:reordered",
        {
            "task_id": task_id,
            "subtasks": [subtask_payload(item) for item in ordered],
            "reordered_by": user_payload(current_user),
        },
    )
    return {"task_id": task_id, "subtasks": ordered}


@app.put("/api/tasks/{task_id}/subtasks/{subtask_id}", response_model=schemas.Subtask)
async def update_subtask(
    task_id: int,
    subtask_id: int,
    subtask_update: schemas.SubtaskUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    db_task, db_subtask = await run_in_threadpool(
        subtask_service.update_subtask, db, current_user, task_id, subtask_id, subtask_update
    )
    await notifier.notify_users(
        task_audience(db_task),
        "subtask:updated",
        {"task_id": task_id, "subtask": subtask_payload(db_subtask), "updated_by": user_payload(current_user)},
    )
    return db_subtask


@app.delete("/api/tasks/{task_id}/subtasks/{subtask_id}", response_model=schemas.MessageResponse)
async def delete_subtask(
    task_id: int,
    subtask_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    db_task, _ = await run_in_threadpool(
        subtask_service.delete_subtask, db, current_user, task_id, subtask_id
    )
    await notifier.notify_users(
        task_audience(db_task),
        "subtask:deleted",
        {"task_id": task_id, "subtask_id": subtask_id, "deleted_by": user_payload(current_user)},
    )
    return {"message": "Subtask deleted successfully"}


# ============== Teams ==============

@app.get("/api/teams", response_model=List[schemas.Team])
def list_teams(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List all teams the current user is a member of."""
    return team_service.list_teams(db, current_user)


@app.post("/api/teams", response_model=schemas.Team, status_code=status.HTTP_201_CREATED)
def create_team(
    team: schemas.TeamCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a new team with the creator as its OWNER."""
    return team_service.create_team(db, current_user, team)


@app.post("/api/teams/join", response_model=schemas.Team)
async def join_team(
    join_request: schemas.TeamJoin,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    team, member = await run_in_threadpool(
        team_service.join_team, db, current_user, join_request.invite_code
    )
    await notifier.notify_users(
        team_audience(team),
        "team:member-joined",
        {"team_id": team.id, "member": member_payload(member)},
    )
    return team


@app.get("/api/teams/{team_id}", response_model=schemas.Team)
def get_team(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get team details with members (requires membership)."""
    return team_service.get_team(db, current_user, team_id)


@app.put("/api/teams/{team_id}", response_model=schemas.Team)
async def update_team(
    team_id: int,
    team_update: schemas.TeamUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    """Update team details (OWNER or ADMIN)."""
    team = await run_in_threadpool(team_service.update_team, db, current_user, team_id, team_update)

    await notifier.notify_users(
        team_audience(team),
        "team:updated",
        {"team": team_payload(team), "updated_by": user_payload(current_user)},
    )
    return team


@app.delete("/api/teams/{team_id}", response_model=schemas.MessageResponse)
async def delete_team(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    """Delete a team (OWNER only)."""
    audience = await run_in_threadpool(team_service.delete_team, db, current_user, team_id)

    await notifier.notify_users(
        audience,
        "team:deleted",
        {"team_id": team_id, "deleted_by": user_payload(current_user)},
    )
    return {"message": "Team deleted successfully"}


@app.post("/api/teams/{team_id}/members", response_model=schemas.TeamMember, status_code=status.HTTP_201_CREATED)
async def add_team_member(
    team_id: int,
    member: schemas.TeamMemberCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    """Add a member to a team (OWNER or ADMIN)."""
    team, db_member = await run_in_threadpool(team_service.add_member, db, current_user, team_id, member)

    await notifier.notify_users(
        team_audience(team),
        "team:member-added",
        {"team_id": team.id, "member": member_payload(db_member), "added_by": user_payload(current_user)},
    )
    return db_member


@app.put("/api/teams/{team_id}/members/{user_id}", response_model=schemas.TeamMember)
async def update_team_member(
    team_id: int,
    user_id: int,
    member_update: schemas.TeamMemberUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    """Change a member's role. Only an OWNER can grant or revoke OWNER."""
    team, db_member = await run_in_threadpool(
        team_service.update_member_role, db, current_user, team_id, user_id, member_update
    )
    await notifier.notify_users(
        team_audience(team),
        "team:member-updated",
        {"team_id": team.id, "member": member_payload(db_member), "updated_by": user_payload(current_user)},
    )
    return db_member


@app.delete("/api/teams/{team_id}/members/{user_id}", response_model=schemas.MessageResponse)
async def remove_team_member(
    team_id: int,
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    """Remove a member. The removed user is told about it as well."""
    team, remaining = await run_in_threadpool(team_service.remove_member, db, current_user, team_id, user_id)

    await notifier.notify_users(
        remaining + [user_id],
        "team:member-removed",
        {"team_id": team.id, "user_id": user_id, "removed_by": user_payload(current_user)},
    )
    return {"message": "Team member removed successfully"}


@app.post("/api/teams/{team_id}/leave", response_model=schemas.MessageResponse)
async def leave_team(
    team_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier)
):
    team, remaining = await run_in_threadpool(team_service.leave_team, db, current_user, team_id)

    await notifier.notify_users(
        remaining,
        "team:member-left",
        {"team_id": team.id, "user": user_payload(current_user)},
    )
    return {"message": "Left team successfully"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
