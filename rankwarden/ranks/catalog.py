"""Team/Rank catalog

Static mapping from rank level to rank name, team, badge pool and cooldown.
The catalog is validated when built and never mutated afterwards; swapping it
requires ``reload_catalog()``.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from rankwarden.exceptions import CatalogError, UnknownRankError
from rankwarden.utils.constants import DEFAULT_CATALOG, LOGGER_NAME, RANK_SETTINGS

logger = logging.getLogger(LOGGER_NAME)


class Team(str, Enum):
    GREEN = 'Green'
    SILVER = 'Silver'
    GOLD = 'Gold'
    RED = 'Red'

    @property
    def display_name(self) -> str:
        return f"Team {self.value}"


@dataclass(frozen=True)
class RankDefinition:
    level: int
    name: str
    team: Team


@dataclass(frozen=True)
class TeamDefinition:
    team: Team
    badge_prefix: str
    badge_range_min: int
    badge_range_max: int
    lock_weeks: int

    @property
    def display_name(self) -> str:
        return self.team.display_name

    @property
    def badge_width(self) -> int:
        return max(len(str(self.badge_range_max)), RANK_SETTINGS['MIN_BADGE_WIDTH'])

    @property
    def capacity(self) -> int:
        return self.badge_range_max - self.badge_range_min + 1

    def in_range(self, number: int) -> bool:
        return self.badge_range_min <= number <= self.badge_range_max


class RankCatalog:
    """Immutable, versioned lookup of ranks and teams"""

    def __init__(self,
                 ranks: Iterable[RankDefinition],
                 teams: Iterable[TeamDefinition],
                 version: str = "1"):
        self._ranks: Tuple[RankDefinition, ...] = tuple(sorted(ranks, key=lambda r: r.level))
        self._teams: Dict[Team, TeamDefinition] = {}
        for team_def in teams:
            if team_def.team in self._teams:
                raise CatalogError(f"Team {team_def.team.value} defined twice")
            self._teams[team_def.team] = team_def
        self.version = version

        self._by_level = {rank.level: rank for rank in self._ranks}
        self._by_name = {rank.name: rank for rank in self._ranks}
        self._by_prefix = {team.badge_prefix: team for team in self._teams.values()}
        self._validate()

    def _validate(self) -> None:
        if not self._ranks:
            raise CatalogError("Catalog defines no ranks")

        levels = [rank.level for rank in self._ranks]
        if levels != list(range(1, len(levels) + 1)):
            raise CatalogError(f"Rank levels must be contiguous from 1, got {levels}")

        if len(self._by_name) != len(self._ranks):
            raise CatalogError("Rank names must be unique")

        if len(self._by_prefix) != len(self._teams):
            raise CatalogError("Badge prefixes must be unique per team")

        for rank in self._ranks:
            if rank.team not in self._teams:
                raise CatalogError(f"Rank {rank.name} belongs to undefined team {rank.team.value}")

        # Each team owns one contiguous band of levels
        seen = []
        for rank in self._ranks:
            if not seen or seen[-1] != rank.team:
                if rank.team in seen:
                    raise CatalogError(f"Team {rank.team.value} levels are not contiguous")
                seen.append(rank.team)

        for team in self._teams.values():
            if team.badge_range_min < 0 or team.badge_range_min > team.badge_range_max:
                raise CatalogError(f"Invalid badge range for {team.display_name}")
            if team.lock_weeks < 0:
                raise CatalogError(f"Negative lock weeks for {team.display_name}")
            if not team.badge_prefix.isalpha() or not team.badge_prefix.isupper():
                raise CatalogError(f"Badge prefix for {team.display_name} must be upper-case letters")

        pools = sorted(self._teams.values(), key=lambda t: t.badge_range_min)
        for lower, upper in zip(pools, pools[1:]):
            if upper.badge_range_min <= lower.badge_range_max:
                raise CatalogError(
                    f"Badge ranges of {lower.display_name} and {upper.display_name} overlap"
                )

    @property
    def ranks(self) -> Tuple[RankDefinition, ...]:
        return self._ranks

    @property
    def teams(self) -> Tuple[TeamDefinition, ...]:
        return tuple(self._teams.values())

    @property
    def min_level(self) -> int:
        return self._ranks[0].level

    @property
    def max_level(self) -> int:
        return self._ranks[-1].level

    def rank_for_level(self, level: int) -> RankDefinition:
        try:
            return self._by_level[level]
        except KeyError:
            raise UnknownRankError(level) from None

    def team_for_level(self, level: int) -> TeamDefinition:
        return self._teams[self.rank_for_level(level).team]

    def level_for_rank_name(self, name: str) -> int:
        try:
            return self._by_name[name].level
        except KeyError:
            raise UnknownRankError(name) from None

    def rank_by_name(self, name: str) -> RankDefinition:
        return self.rank_for_level(self.level_for_rank_name(name))

    def has_rank(self, name: str) -> bool:
        return name in self._by_name

    def team_definition(self, team: Team) -> TeamDefinition:
        return self._teams[Team(team)]

    def team_for_badge_prefix(self, prefix: str) -> Optional[TeamDefinition]:
        return self._by_prefix.get(prefix)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'RankCatalog':
        """Build a catalog from a plain dict (constants or parsed JSON)"""
        try:
            ranks = [
                RankDefinition(level=int(r['level']), name=str(r['name']), team=Team(r['team']))
                for r in config['ranks']
            ]
            teams = [
                TeamDefinition(
                    team=Team(t['team']),
                    badge_prefix=str(t['badge_prefix']),
                    badge_range_min=int(t['badge_range_min']),
                    badge_range_max=int(t['badge_range_max']),
                    lock_weeks=int(t.get('lock_weeks', 0)),
                )
                for t in config['teams']
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise CatalogError(f"Malformed catalog configuration: {e}") from e

        return cls(ranks, teams, version=str(config.get('version', '1')))

    @classmethod
    def from_file(cls, path: Path) -> 'RankCatalog':
        try:
            with open(path, encoding='utf-8') as fh:
                config = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise CatalogError(f"Could not read catalog file {path}: {e}") from e
        return cls.from_config(config)


_catalog: Optional[RankCatalog] = None


def load_catalog(path: Optional[Path] = None) -> RankCatalog:
    if path:
        catalog = RankCatalog.from_file(path)
        logger.info(f"Loaded rank catalog v{catalog.version} from {path}")
    else:
        catalog = RankCatalog.from_config(DEFAULT_CATALOG)
        logger.info(f"Loaded default rank catalog v{catalog.version}")
    return catalog


def get_catalog(path: Optional[Path] = None) -> RankCatalog:
    """Process-wide catalog, loaded on first use"""
    global _catalog
    if _catalog is None:
        _catalog = load_catalog(path)
    return _catalog


def reload_catalog(path: Optional[Path] = None) -> RankCatalog:
    """Replace the process-wide catalog. Services built earlier keep theirs."""
    global _catalog
    _catalog = load_catalog(path)
    return _catalog
