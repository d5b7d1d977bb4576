"""
Audience computation and event delivery for committed mutations.

Handlers call the Notifier only after db.commit() so no client ever hears
about state that was rolled back. Each event goes to the personal room of
every user in the audience. Delivery is best-effort: disconnected users
reconcile on their next read.
"""

import logging
from typing import Any, Dict, Iterable, List

from fastapi import Depends

from models import Task, Team
from realtime.registry import ChannelRegistry, get_channel_registry, user_room

logger = logging.getLogger(__name__)


def task_audience(task: Task) -> List[int]:
    """The task owner plus every current share grantee."""
    audience = [task.user_id]
    for share in task.shares:
        if share.user_id not in audience:
            audience.append(share.user_id)
    return audience


def team_audience(team: Team) -> List[int]:
    """All current members of the team."""
    return [member.user_id for member in team.members]


class Notifier:
    def __init__(self, registry: ChannelRegistry):
        self.registry = registry

    async def notify_users(self, user_ids: Iterable[int], event: str, data: Dict[str, Any]) -> None:
        seen = set()
        for user_id in user_ids:
            if user_id in seen:
                continue
            seen.add(user_id)
            await self.registry.broadcast(user_room(user_id), event, data)
        logger.debug(f"Event {event} fanned out to users {sorted(seen)}")

    async def notify_user(self, user_id: int, event: str, data: Dict[str, Any]) -> None:
        await self.notify_users([user_id], event, data)


def get_notifier(registry: ChannelRegistry = Depends(get_channel_registry)) -> Notifier:
    return Notifier(registry)
