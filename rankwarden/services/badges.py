"""Badge number allocation and validation

Badge numbers look like ``S-41``: the team's prefix, a dash, and a
zero-padded number from the team's range. Allocation hands out the lowest
free number and must run inside the transaction that writes it; the partial
unique index on active badges is the final guard.
"""

import re
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from rankwarden.db.models import Employee
from rankwarden.db.repository import EmployeeRepository
from rankwarden.exceptions import (BadgePoolExhaustedError, BadgeTakenError,
                                   InvalidBadgeError)
from rankwarden.ranks.catalog import RankCatalog, TeamDefinition
from rankwarden.utils.logger import get_logger

logger = get_logger('badges')

BADGE_PATTERN = re.compile(r'^([A-Z]+)-(\d+)$')


def parse_badge_number(badge_number: str) -> Optional[Tuple[str, int]]:
    """Split ``'S-41'`` into ``('S', 41)``; None if it is not a badge number"""
    match = BADGE_PATTERN.match(badge_number or '')
    if not match:
        return None
    return match.group(1), int(match.group(2))


def format_badge_number(prefix: str, number: int, width: int = 2) -> str:
    return f"{prefix}-{number:0{width}d}"


class BadgeAllocator:
    """Finds free badge numbers inside a team's pool"""

    def __init__(self, catalog: RankCatalog):
        self.catalog = catalog

    async def allocate(self,
                       session: AsyncSession,
                       team: TeamDefinition,
                       exclude_employee_id: Optional[str] = None) -> str:
        """Lowest unused badge number of ``team``.

        Raises BadgePoolExhaustedError when every number in range is taken by
        an active employee.
        """
        held = await EmployeeRepository(session).active_badges_with_prefix(
            team.badge_prefix, exclude_employee_id
        )

        taken = set()
        for badge in held:
            parsed = parse_badge_number(badge)
            if parsed and parsed[0] == team.badge_prefix and team.in_range(parsed[1]):
                taken.add(parsed[1])

        for number in range(team.badge_range_min, team.badge_range_max + 1):
            if number not in taken:
                badge = format_badge_number(team.badge_prefix, number, team.badge_width)
                logger.debug(f"Allocated {badge} in {team.display_name}")
                return badge

        logger.warning(f"Badge pool exhausted for {team.display_name} ({team.capacity} numbers in use)")
        raise BadgePoolExhaustedError(team.team.value)

    async def validate_assignment(self,
                                  session: AsyncSession,
                                  employee: Employee,
                                  badge_number: str) -> str:
        """Check a hand-picked badge against the employee's team pool. Returns it normalised."""
        parsed = parse_badge_number(badge_number.strip().upper())
        if not parsed:
            raise InvalidBadgeError(f"Badge number {badge_number} must look like PREFIX-NN", badge_number)

        prefix, number = parsed
        team = self.catalog.team_for_level(employee.rank_level)
        if prefix != team.badge_prefix or not team.in_range(number):
            low = format_badge_number(team.badge_prefix, team.badge_range_min, team.badge_width)
            high = format_badge_number(team.badge_prefix, team.badge_range_max, team.badge_width)
            raise InvalidBadgeError(
                f"Badge number for {team.display_name} must be between {low} and {high}",
                badge_number,
            )

        normalised = format_badge_number(prefix, number, team.badge_width)
        holder = await EmployeeRepository(session).active_badge_holder(normalised, employee.id)
        if holder is not None:
            raise BadgeTakenError(normalised)
        return normalised
