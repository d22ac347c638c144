"""Discord and Redis implementations of the post-commit collaborators"""

import json
from typing import Any, Dict, List, Optional

import discord
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from rankwarden.db.database import session_scope
from rankwarden.db.repository import EmployeeRepository
from rankwarden.services.sync import (AnnouncementKind, AnnouncementSink,
                                      ExternalSyncFacade, NotificationKind,
                                      NotificationSink, SyncOutcome,
                                      format_nickname)
from rankwarden.utils.clock import Clock, SystemClock
from rankwarden.utils.constants import (CACHE_SETTINGS, RANK_SETTINGS,
                                        SYSTEM_MESSAGES)
from rankwarden.utils.logger import get_logger

logger = get_logger('discord_sync')

# Discord rejects longer nicknames
MAX_NICKNAME_LENGTH = 32

ANNOUNCEMENT_TEMPLATES = {
    AnnouncementKind.PROMOTION: 'PROMOTION_ANNOUNCEMENT',
    AnnouncementKind.DEMOTION: 'DEMOTION_ANNOUNCEMENT',
    AnnouncementKind.ACADEMY_GRADUATION: 'ACADEMY_ANNOUNCEMENT',
}


class DiscordSyncFacade(ExternalSyncFacade):
    """Mirrors rank changes onto guild members: badge nickname and rank role"""

    def __init__(self, bot: discord.Client, guild_id: int, session_factory: async_sessionmaker):
        self.bot = bot
        self.guild_id = guild_id
        self.session_factory = session_factory

    async def _resolve_member(self, employee_id: str):
        async with session_scope(self.session_factory) as s:
            employee = await EmployeeRepository(s).get(employee_id)
        if employee is None or not employee.discord_id:
            return None, None

        guild = self.bot.get_guild(self.guild_id)
        if guild is None:
            return employee, None

        member = guild.get_member(int(employee.discord_id))
        if member is None:
            try:
                member = await guild.fetch_member(int(employee.discord_id))
            except discord.NotFound:
                member = None
        return employee, member

    async def sync_rank_change(self,
                               employee_id: str,
                               old_rank: str,
                               new_rank: str,
                               new_badge_number: Optional[str] = None) -> SyncOutcome:
        outcome = SyncOutcome()
        employee, member = await self._resolve_member(employee_id)
        if member is None:
            outcome.errors.append(f"No guild member linked to employee {employee_id}")
            return outcome

        audit_reason = f"Rank change {old_rank} -> {new_rank}"

        if new_badge_number:
            nickname = format_nickname(employee.display_name or member.display_name, new_badge_number)
            try:
                await member.edit(nick=nickname[:MAX_NICKNAME_LENGTH], reason=audit_reason)
                outcome.nickname_updated = True
            except discord.HTTPException as e:
                outcome.errors.append(f"nickname: {e}")

        if old_rank != new_rank:
            guild = member.guild
            new_role = discord.utils.get(guild.roles, name=new_rank)
            if new_role is None:
                outcome.errors.append(f"roles: no role named {new_rank}")
            else:
                try:
                    old_role = discord.utils.get(guild.roles, name=old_rank)
                    if old_role is not None and old_role in member.roles:
                        await member.remove_roles(old_role, reason=audit_reason)
                    await member.add_roles(new_role, reason=audit_reason)
                    outcome.roles_updated = True
                except discord.HTTPException as e:
                    outcome.errors.append(f"roles: {e}")

        return outcome


class DiscordAnnouncementSink(AnnouncementSink):
    """Posts rank announcements to the promotion and demotion channels"""

    def __init__(self,
                 bot: discord.Client,
                 promotion_channel_id: Optional[int] = None,
                 demotion_channel_id: Optional[int] = None):
        self.bot = bot
        self.promotion_channel_id = promotion_channel_id
        self.demotion_channel_id = demotion_channel_id

    @staticmethod
    def format_announcement(kind: AnnouncementKind, payload: Dict[str, Any]) -> str:
        promoted_by = payload.get('promoted_by') or 'Unknown'
        reason = payload.get('reason') or 'No reason given'
        return SYSTEM_MESSAGES[ANNOUNCEMENT_TEMPLATES[kind]].format(
            employee=payload.get('employee_name') or payload.get('employee_id'),
            old_rank=payload.get('old_rank') or 'None',
            new_rank=payload.get('new_rank'),
            badge=payload.get('badge_number') or 'None',
            promoted_by=promoted_by,
            reason=reason,
            trained_by=payload.get('trained_by') or promoted_by,
            notes=payload.get('notes') or reason,
        ).strip()

    async def announce(self, kind: AnnouncementKind, payload: Dict[str, Any]) -> bool:
        channel_id = (self.demotion_channel_id if kind is AnnouncementKind.DEMOTION
                      else self.promotion_channel_id)
        if not channel_id:
            logger.debug(f"No channel configured for {kind.value} announcements")
            return False

        channel = self.bot.get_channel(channel_id)
        if channel is None:
            logger.warning(f"Announcement channel {channel_id} not found")
            return False

        try:
            await channel.send(self.format_announcement(kind, payload))
            return True
        except discord.HTTPException as e:
            logger.error(f"Error posting {kind.value} announcement: {e}")
            return False


class RedisNotificationSink(NotificationSink):
    """Per-employee notification lists plus a guild-wide rank change feed"""

    def __init__(self,
                 redis_client: redis.Redis,
                 guild_id: int,
                 feed_size: int = RANK_SETTINGS['RANK_FEED_SIZE'],
                 list_size: int = CACHE_SETTINGS['NOTIFICATION_LIST_SIZE'],
                 clock: Optional[Clock] = None):
        self.redis = redis_client
        self.guild_id = guild_id
        self.feed_size = feed_size
        self.list_size = list_size
        self.clock = clock or SystemClock()

    @property
    def feed_key(self) -> str:
        return f'rank_changes:{self.guild_id}'

    @staticmethod
    def notifications_key(employee_id: str) -> str:
        return f'notifications:{employee_id}'

    async def notify(self, employee_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        entry = json.dumps({
            'kind': kind.value,
            'employee_id': employee_id,
            'created_at': self.clock.now().isoformat(),
            **payload,
        }, default=str)

        key = self.notifications_key(employee_id)
        await self.redis.lpush(key, entry)
        await self.redis.ltrim(key, 0, self.list_size - 1)

        if kind is not NotificationKind.BADGE_CHANGE:
            await self.redis.lpush(self.feed_key, entry)
            await self.redis.ltrim(self.feed_key, 0, self.feed_size - 1)

    async def notifications_for(self, employee_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        raw = await self.redis.lrange(self.notifications_key(employee_id), 0, limit - 1)
        return [json.loads(item) for item in raw]

    async def recent_changes(self, limit: int = 10) -> List[Dict[str, Any]]:
        raw = await self.redis.lrange(self.feed_key, 0, limit - 1)
        return [json.loads(item) for item in raw]
