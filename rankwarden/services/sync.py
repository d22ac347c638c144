"""Collaborator interfaces the rank engine calls after a committed transition.

All of these are best-effort echoes of the committed rank change: the engine
logs their failures and never rolls anything back because of them.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from rankwarden.utils.constants import SYSTEM_MESSAGES
from rankwarden.utils.logger import get_logger

logger = get_logger('sync')

_BADGE_TAG = re.compile(r'^\[[A-Z]+-\d+\]\s*')


class NotificationKind(str, Enum):
    PROMOTION = 'PROMOTION'
    DEMOTION = 'DEMOTION'
    BADGE_CHANGE = 'BADGE_CHANGE'


class AnnouncementKind(str, Enum):
    PROMOTION = 'PROMOTION'
    DEMOTION = 'DEMOTION'
    ACADEMY_GRADUATION = 'ACADEMY_GRADUATION'


@dataclass
class SyncOutcome:
    nickname_updated: bool = False
    roles_updated: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def strip_badge_tag(name: Optional[str]) -> Optional[str]:
    """``'[G-03] Jack Ripper'`` -> ``'Jack Ripper'``"""
    if not name:
        return None
    return _BADGE_TAG.sub('', name).strip() or None


def format_nickname(name: str, badge_number: Optional[str]) -> str:
    pure_name = strip_badge_tag(name) or name
    if not badge_number:
        return pure_name
    return SYSTEM_MESSAGES['NICKNAME'].format(badge=badge_number, name=pure_name)


class ExternalSyncFacade(ABC):
    @abstractmethod
    async def sync_rank_change(self,
                               employee_id: str,
                               old_rank: str,
                               new_rank: str,
                               new_badge_number: Optional[str] = None) -> SyncOutcome:
        """Mirror a committed rank change to the chat platform (nickname, rank roles)"""


class NotificationSink(ABC):
    @abstractmethod
    async def notify(self, employee_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        """Fire-and-forget notice to the affected employee"""


class AnnouncementSink(ABC):
    @abstractmethod
    async def announce(self, kind: AnnouncementKind, payload: Dict[str, Any]) -> bool:
        """Public announcement. Returns False when it could not be delivered."""


class NullSyncFacade(ExternalSyncFacade):
    async def sync_rank_change(self, employee_id, old_rank, new_rank, new_badge_number=None) -> SyncOutcome:
        logger.debug(f"No sync facade configured, skipping sync for {employee_id}")
        return SyncOutcome()


class NullNotificationSink(NotificationSink):
    async def notify(self, employee_id, kind, payload) -> None:
        logger.debug(f"No notification sink configured, dropping {kind.value} for {employee_id}")


class NullAnnouncementSink(AnnouncementSink):
    async def announce(self, kind, payload) -> bool:
        logger.debug(f"No announcement sink configured, dropping {kind.value}")
        return True
