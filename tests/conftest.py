"""Shared fixtures: a throwaway SQLite database, a frozen clock, the default
catalog and recording stand-ins for the chat-platform collaborators."""

import itertools
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from rankwarden.db.database import (create_session_factory,
                                    create_sqlalchemy_engine, init_schema,
                                    session_scope)
from rankwarden.db.models import Employee, PromotionArchive, UprankLock
from rankwarden.ranks.catalog import RankCatalog
from rankwarden.services.archive import PromotionArchiveService
from rankwarden.services.badges import BadgeAllocator
from rankwarden.services.identity import (ADMIN_FULL, RANK_APPROVE,
                                          RANK_CHANGE, RANK_REQUEST,
                                          RANK_VIEW, ActingUser)
from rankwarden.services.locks import LockManager
from rankwarden.services.sync import (AnnouncementSink, ExternalSyncFacade,
                                      NotificationSink, SyncOutcome)
from rankwarden.services.transitions import RankTransitionEngine
from rankwarden.services.uprank_requests import UprankRequestWorkflow
from rankwarden.utils.clock import FixedClock
from rankwarden.utils.constants import DEFAULT_CATALOG

NOW = datetime(2024, 2, 23, 12, 0, tzinfo=timezone.utc)


class RecordingSync(ExternalSyncFacade):
    def __init__(self):
        self.calls = []
        self.fail = False

    async def sync_rank_change(self, employee_id, old_rank, new_rank, new_badge_number=None):
        self.calls.append((employee_id, old_rank, new_rank, new_badge_number))
        if self.fail:
            raise RuntimeError("guild unavailable")
        return SyncOutcome(nickname_updated=new_badge_number is not None, roles_updated=True)


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.calls = []

    async def notify(self, employee_id, kind, payload):
        self.calls.append((employee_id, kind, payload))


class RecordingAnnouncer(AnnouncementSink):
    def __init__(self):
        self.calls = []
        self.delivered = True

    async def announce(self, kind, payload):
        self.calls.append((kind, payload))
        return self.delivered


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def catalog():
    return RankCatalog.from_config(DEFAULT_CATALOG)


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_sqlalchemy_engine(f"sqlite+aiosqlite:///{tmp_path / 'rankwarden.db'}")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def make_employee(session_factory, catalog):
    counter = itertools.count(1)

    async def _make(level=1, badge=None, status='ACTIVE', name=None):
        n = next(counter)
        employee = Employee(
            discord_id=str(100000 + n),
            display_name=name or f"Officer {n}",
            rank=catalog.rank_for_level(level).name,
            rank_level=level,
            badge_number=badge,
            status=status,
        )
        async with session_scope(session_factory) as s:
            s.add(employee)
        return employee

    return _make


@pytest.fixture
def fill_team(make_employee, catalog):
    """Give every badge number of a team to an active employee"""
    async def _fill(team):
        team_def = catalog.team_definition(team)
        level = next(r.level for r in catalog.ranks if r.team == team_def.team)
        for number in range(team_def.badge_range_min, team_def.badge_range_max + 1):
            await make_employee(level=level, badge=f"{team_def.badge_prefix}-{number:02d}")

    return _fill


@pytest.fixture
def load(session_factory):
    async def _load(model, record_id):
        async with session_scope(session_factory) as s:
            return await s.get(model, record_id)

    return _load


@pytest.fixture
def count_rows(session_factory):
    async def _count(model, *conditions):
        query = select(func.count()).select_from(model)
        if conditions:
            query = query.where(*conditions)
        async with session_scope(session_factory) as s:
            return (await s.execute(query)).scalar_one()

    return _count


@pytest.fixture
def archive_count(count_rows):
    async def _count(employee_id):
        return await count_rows(PromotionArchive, PromotionArchive.employee_id == employee_id)

    return _count


@pytest.fixture
def active_lock_count(count_rows):
    async def _count(employee_id):
        return await count_rows(
            UprankLock, UprankLock.employee_id == employee_id, UprankLock.is_active.is_(True)
        )

    return _count


@pytest.fixture
def sync():
    return RecordingSync()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def announcer():
    return RecordingAnnouncer()


@pytest.fixture
def lock_manager(session_factory, clock):
    return LockManager(session_factory, clock)


@pytest.fixture
def archive(session_factory):
    return PromotionArchiveService(session_factory)


@pytest.fixture
def build_engine(session_factory, catalog, lock_manager, archive, sync, notifier, announcer, clock):
    def _build(**overrides):
        options = dict(
            lock_manager=lock_manager,
            archive=archive,
            allocator=BadgeAllocator(catalog),
            sync=sync,
            notifier=notifier,
            announcer=announcer,
            clock=clock,
        )
        options.update(overrides)
        return RankTransitionEngine(session_factory, catalog, **options)

    return _build


@pytest.fixture
def engine(build_engine):
    return build_engine()


@pytest.fixture
def workflow(session_factory, engine, lock_manager, catalog, clock):
    return UprankRequestWorkflow(session_factory, engine, lock_manager, catalog, clock)


@pytest.fixture
def manager():
    return ActingUser('mgr-1', 'Captain Price', frozenset({RANK_VIEW, RANK_CHANGE, RANK_APPROVE}))


@pytest.fixture
def requester():
    return ActingUser('sgt-1', 'Sergeant Ortiz', frozenset({RANK_VIEW, RANK_REQUEST}))


@pytest.fixture
def admin():
    return ActingUser('admin-1', 'Chief Warden', frozenset({ADMIN_FULL}))


@pytest.fixture
def now(clock):
    """The frozen start time; stays put when the clock is advanced"""
    return clock.now()
