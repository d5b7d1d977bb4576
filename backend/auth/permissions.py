"""
Task and team permission checking utilities.

The can_* functions are plain boolean predicates. The require_* helpers
load the target entity, run the matching predicate, and raise ServiceError
when it fails:

- Read-path denials on tasks and teams raise not_found, so callers without
  access cannot tell a hidden resource from a missing one.
- Write-path denials where the caller can already see the resource raise
  forbidden.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from errors import forbidden, not_found
from models import (
    SharePermission,
    Task,
    TaskShare,
    Team,
    TeamMember,
    TeamRole,
    User,
)

logger = logging.getLogger(__name__)

# EDIT implies VIEW
PERMISSION_LEVEL = {SharePermission.VIEW: 1, SharePermission.EDIT: 2}

MANAGER_ROLES = {TeamRole.OWNER, TeamRole.ADMIN}


# ============== Lookups ==============

def get_share(db: Session, task_id: int, user_id: int) -> Optional[TaskShare]:
    return (
        db.query(TaskShare)
        .filter(TaskShare.task_id == task_id, TaskShare.user_id == user_id)
        .first()
    )


def get_membership(db: Session, team_id: int, user_id: int) -> Optional[TeamMember]:
    return (
        db.query(TeamMember)
        .filter(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
        .first()
    )


def count_owners(db: Session, team_id: int) -> int:
    return (
        db.query(TeamMember)
        .filter(TeamMember.team_id == team_id, TeamMember.role == TeamRole.OWNER)
        .count()
    )


def visible_task_filter(user: User):
    """SQL condition matching tasks the user owns or has any share on."""
    shared_ids = select(TaskShare.task_id).where(TaskShare.user_id == user.id)
    return or_(Task.user_id == user.id, Task.id.in_(shared_ids))


# ============== Task predicates ==============

def can_access_task(
    user: User,
    task: Task,
    required: SharePermission,
    db: Optional[Session] = None,
    share: Optional[TaskShare] = None,
) -> bool:
    """
    Check whether a user may read (VIEW) or modify (EDIT) a task.

    The owner always has full access. Anyone else needs a share whose
    permission is at least the required one.

    Args:
        user: Principal to check
        task: Target task
        required: Minimum permission (VIEW or EDIT)
        db: Session used to look up the share when one is not passed in
        share: Already-loaded share of this user on this task, if any

    Returns:
        True if access is granted, False otherwise
    """
    if task.user_id == user.id:
        return True

    if share is None and db is not None:
        share = get_share(db, task.id, user.id)
    if share is None:
        return False

    return PERMISSION_LEVEL[SharePermission(share.permission)] >= PERMISSION_LEVEL[SharePermission(required)]


def can_delete_task(user: User, task: Task) -> bool:
    return task.user_id == user.id


def can_share_task(user: User, task: Task) -> bool:
    # Shares never grant re-share or revoke rights
    return task.user_id == user.id


# ============== Team predicates ==============

def can_manage_team(membership: Optional[TeamMember]) -> bool:
    """OWNER and ADMIN members can manage a team."""
    return membership is not None and TeamRole(membership.role) in MANAGER_ROLES


def can_assign_role(
    actor_role: TeamRole,
    current_role: TeamRole,
    new_role: TeamRole,
    is_self: bool = False,
) -> bool:
    """
    Check whether an actor may move a member from current_role to new_role.

    - Only OWNER and ADMIN can change roles at all.
    - Only OWNER can grant or revoke the OWNER role.
    - An OWNER can never demote themselves; ownership has to be handed
      to someone else first.
    """
    actor_role = TeamRole(actor_role)
    current_role = TeamRole(current_role)
    new_role = TeamRole(new_role)

    if actor_role not in MANAGER_ROLES:
        return False
    if is_self and current_role == TeamRole.OWNER and new_role != TeamRole.OWNER:
        return False
    if TeamRole.OWNER in (current_role, new_role):
        return actor_role == TeamRole.OWNER
    return True


def can_remove_member(actor: TeamMember, target: TeamMember) -> bool:
    """
    Check whether actor may remove target from the team.

    Members may always remove themselves. Otherwise the actor must be OWNER
    or ADMIN. The last-owner rule is checked separately with count_owners.
    """
    if actor.user_id == target.user_id:
        return True
    return can_manage_team(actor)


def is_last_owner(db: Session, member: TeamMember) -> bool:
    """True if member is an OWNER and no other OWNER exists on the team."""
    return TeamRole(member.role) == TeamRole.OWNER and count_owners(db, member.team_id) <= 1


# ============== Enforcing helpers ==============

def require_task_access(
    db: Session, user: User, task_id: int, required: SharePermission = SharePermission.VIEW
) -> Task:
    """
    Load a task the user may access, or raise.

    Raises:
        ServiceError(not_found): task missing or user has no VIEW access
        ServiceError(forbidden): user can view but EDIT is required
    """
    task = db.query(Task).filter(Task.id == task_id).first()
    if task is None:
        logger.info(f"Task {task_id} not found")
        raise not_found("Task not found")

    share = None if task.user_id == user.id else get_share(db, task.id, user.id)
    if not can_access_task(user, task, SharePermission.VIEW, share=share):
        logger.info(f"User {user.id} has no access to task {task_id}, returning 404")
        raise not_found("Task not found")

    if not can_access_task(user, task, required, share=share):
        logger.info(f"User {user.id} lacks {SharePermission(required).value} permission on task {task_id}")
        raise forbidden("You do not have permission to modify this task")

    return task


def require_task_owner(db: Session, user: User, task_id: int, action: str) -> Task:
    """
    Load a task only its owner may act on (delete, share, unshare).

    Raises:
        ServiceError(not_found): task missing or not visible to the user
        ServiceError(forbidden): user can see the task but does not own it
    """
    task = require_task_access(db, user, task_id, SharePermission.VIEW)
    if not can_delete_task(user, task):
        logger.info(f"User {user.id} is not the owner of task {task_id}, cannot {action}")
        raise forbidden(f"Only the task owner can {action} this task")
    return task


def require_team_member(db: Session, user: User, team_id: int) -> Tuple[Team, TeamMember]:
    """
    Load a team and the user's membership, or raise not_found for non-members.
    """
    team = db.query(Team).filter(Team.id == team_id).first()
    membership = get_membership(db, team_id, user.id) if team else None
    if team is None or membership is None:
        logger.info(f"User {user.id} is not a member of team {team_id}, returning 404")
        raise not_found("Team not found")
    return team, membership


def require_team_manager(db: Session, user: User, team_id: int) -> Tuple[Team, TeamMember]:
    """
    Load a team the user can manage (OWNER or ADMIN).

    Raises:
        ServiceError(not_found): team missing or user is not a member
        ServiceError(forbidden): user is a member without a managing role
    """
    team, membership = require_team_member(db, user, team_id)
    if not can_manage_team(membership):
        logger.info(f"User {user.id} has role {membership.role} in team {team_id}, management denied")
        raise forbidden("Only team owners and admins can perform this action")
    return team, membership
