"""
Team membership operations.

Every team has at least one OWNER at all times. Removals, departures, and
role changes that would leave a team without an OWNER fail with a conflict
and change nothing. Team.owner_id mirrors one of the OWNER members and is
moved to another OWNER when its holder steps down or leaves.
"""

import logging
import secrets
from typing import List, Tuple

from sqlalchemy.orm import Session

import models
import schemas
from auth.permissions import (
    can_assign_role,
    can_remove_member,
    get_membership,
    is_last_owner,
    require_team_manager,
    require_team_member,
)
from errors import conflict, forbidden, not_found

logger = logging.getLogger(__name__)

LAST_OWNER_MESSAGE = "Cannot remove the last owner. Transfer ownership first."


def generate_invite_code(db: Session) -> str:
    """128-bit random hex code, re-drawn in the unlikely case it is taken."""
    while True:
        code = secrets.token_hex(16)
        if not db.query(models.Team.id).filter(models.Team.invite_code == code).first():
            return code


def _sync_owner(db: Session, team: models.Team) -> None:
    """Point team.owner_id at an OWNER member if its current holder is no longer one."""
    db.flush()
    owners = (
        db.query(models.TeamMember)
        .filter(models.TeamMember.team_id == team.id, models.TeamMember.role == models.TeamRole.OWNER)
        .order_by(models.TeamMember.id)
        .all()
    )
    owner_ids = [owner.user_id for owner in owners]
    if owner_ids and team.owner_id not in owner_ids:
        logger.info(f"Team {team.id} owner_id moved from {team.owner_id} to {owner_ids[0]}")
        team.owner_id = owner_ids[0]


def _get_target_member(db: Session, team_id: int, user_id: int) -> models.TeamMember:
    member = get_membership(db, team_id, user_id)
    if member is None:
        raise not_found("Team member not found")
    return member


# ============== Teams ==============

def create_team(db: Session, user: models.User, data: schemas.TeamCreate) -> models.Team:
    logger.debug(f"User {user.id} creating team: {data.name}")

    team = models.Team(
        name=data.name,
        description=data.description,
        owner_id=user.id,
        invite_code=generate_invite_code(db),
        settings={},
    )
    db.add(team)
    db.flush()

    db.add(models.TeamMember(team_id=team.id, user_id=user.id, role=models.TeamRole.OWNER))
    db.commit()
    db.refresh(team)

    logger.info(f"Team created: {team.name} (ID: {team.id}) by user {user.id}")
    return team


def list_teams(db: Session, user: models.User) -> List[models.Team]:
    teams = (
        db.query(models.Team)
        .join(models.TeamMember, models.TeamMember.team_id == models.Team.id)
        .filter(models.TeamMember.user_id == user.id)
        .order_by(models.Team.id)
        .all()
    )
    logger.info(f"User {user.id} retrieved {len(teams)} teams")
    return teams


def get_team(db: Session, user: models.User, team_id: int) -> models.Team:
    team, _ = require_team_member(db, user, team_id)
    return team


def update_team(db: Session, user: models.User, team_id: int, data: schemas.TeamUpdate) -> models.Team:
    logger.debug(f"User {user.id} updating team {team_id}")
    team, _ = require_team_manager(db, user, team_id)

    for key, value in data.model_dump(exclude_unset=True).items():
        if key == "name" and value is None:
            continue
        setattr(team, key, value)

    db.commit()
    db.refresh(team)

    logger.info(f"Team updated: {team.name} (ID: {team_id}) by user {user.id}")
    return team


def delete_team(db: Session, user: models.User, team_id: int) -> List[int]:
    """
    Delete a team (OWNER only).

    Returns:
        User IDs of the members at the time of deletion
    """
    logger.debug(f"User {user.id} deleting team {team_id}")
    team, membership = require_team_member(db, user, team_id)
    if models.TeamRole(membership.role) != models.TeamRole.OWNER:
        logger.info(f"User {user.id} has role {membership.role} in team {team_id}, cannot delete")
        raise forbidden("Only team owners can delete the team")

    audience = [member.user_id for member in team.members]
    db.delete(team)
    db.commit()

    logger.info(f"Team deleted: {team_id} by user {user.id}")
    return audience


# ============== Membership ==============

def join_team(db: Session, user: models.User, invite_code: str) -> Tuple[models.Team, models.TeamMember]:
    logger.debug(f"User {user.id} joining team by invite code")

    team = db.query(models.Team).filter(models.Team.invite_code == invite_code.strip()).first()
    if team is None:
        logger.info(f"User {user.id} used an invalid invite code")
        raise not_found("Invalid invite code")

    if get_membership(db, team.id, user.id) is not None:
        raise conflict("You are already a member of this team")

    member = models.TeamMember(team_id=team.id, user_id=user.id, role=models.TeamRole.MEMBER)
    db.add(member)
    db.commit()
    db.refresh(member)
    db.refresh(team)

    logger.info(f"User {user.id} joined team {team.id}")
    return team, member


def add_member(
    db: Session, user: models.User, team_id: int, data: schemas.TeamMemberCreate
) -> Tuple[models.Team, models.TeamMember]:
    logger.debug(f"User {user.id} adding member {data.user_id} to team {team_id}")
    team, _ = require_team_manager(db, user, team_id)

    target = (
        db.query(models.User)
        .filter(models.User.id == data.user_id, models.User.is_active.is_(True))
        .first()
    )
    if target is None:
        raise not_found("User not found")

    if get_membership(db, team.id, target.id) is not None:
        raise conflict("User is already a member of this team")

    member = models.TeamMember(team_id=team.id, user_id=target.id, role=models.TeamRole(data.role.value))
    db.add(member)
    db.commit()
    db.refresh(member)
    db.refresh(team)

    logger.info(f"User {target.id} added to team {team.id} with role {member.role.value}")
    return team, member


def update_member_role(
    db: Session,
    user: models.User,
    team_id: int,
    target_user_id: int,
    data: schemas.TeamMemberUpdate,
) -> Tuple[models.Team, models.TeamMember]:
    logger.debug(f"User {user.id} setting role of {target_user_id} in team {team_id} to {data.role.value}")
    team, actor = require_team_manager(db, user, team_id)
    member = _get_target_member(db, team.id, target_user_id)

    current_role = models.TeamRole(member.role)
    new_role = models.TeamRole(data.role.value)
    is_self = member.user_id == user.id

    if not can_assign_role(actor.role, current_role, new_role, is_self=is_self):
        if is_self and current_role == models.TeamRole.OWNER:
            raise forbidden("Team owners cannot change their own role. Transfer ownership first.")
        raise forbidden("Only team owners can assign or revoke the owner role")

    if current_role == models.TeamRole.OWNER and new_role != models.TeamRole.OWNER and is_last_owner(db, member):
        logger.warning(f"User {user.id} attempted to demote the last owner of team {team_id}")
        raise conflict(LAST_OWNER_MESSAGE)

    member.role = new_role
    _sync_owner(db, team)
    db.commit()
    db.refresh(member)
    db.refresh(team)

    logger.info(f"Member {target_user_id} in team {team_id} updated from {current_role.value} to {new_role.value}")
    return team, member


def remove_member(
    db: Session, user: models.User, team_id: int, target_user_id: int
) -> Tuple[models.Team, List[int]]:
    """
    Remove a member (self-removal or OWNER/ADMIN).

    Returns:
        Tuple of (team, remaining member IDs)
    """
    logger.debug(f"User {user.id} removing member {target_user_id} from team {team_id}")
    team, actor = require_team_member(db, user, team_id)
    member = _get_target_member(db, team.id, target_user_id)

    if not can_remove_member(actor, member):
        logger.info(f"User {user.id} ({actor.role}) may not remove {target_user_id} from team {team_id}")
        raise forbidden("You do not have permission to remove this team member")

    if is_last_owner(db, member):
        logger.warning(f"User {user.id} attempted to remove the last owner of team {team_id}")
        raise conflict(LAST_OWNER_MESSAGE)

    db.delete(member)
    _sync_owner(db, team)
    db.commit()
    db.refresh(team)

    logger.info(f"Member {target_user_id} removed from team {team_id} by user {user.id}")
    return team, [remaining.user_id for remaining in team.members]


def leave_team(db: Session, user: models.User, team_id: int) -> Tuple[models.Team, List[int]]:
    """
    Leave a team. The last OWNER cannot leave.

    Returns:
        Tuple of (team, remaining member IDs)
    """
    logger.debug(f"User {user.id} leaving team {team_id}")
    team, membership = require_team_member(db, user, team_id)

    if is_last_owner(db, membership):
        logger.warning(f"User {user.id} attempted to leave team {team_id} as its last owner")
        raise conflict(LAST_OWNER_MESSAGE)

    db.delete(membership)
    _sync_owner(db, team)
    db.commit()
    db.refresh(team)

    logger.info(f"User {user.id} left team {team_id}")
    return team, [remaining.user_id for remaining in team.members]
