from datetime import timedelta

import pytest
from sqlalchemy.orm.exc import StaleDataError

from rankwarden.db.database import session_scope
from rankwarden.db.models import Employee, PromotionArchive, UprankLock
from rankwarden.exceptions import (BadgeConflictError, BadgePoolExhaustedError,
                                   BadgeTakenError, BoundaryViolationError,
                                   ConcurrencyConflictError,
                                   EmployeeNotFoundError,
                                   ImmutableRecordError, InvalidBadgeError,
                                   InvalidStateError, LockedError,
                                   UnknownRankError)
from rankwarden.ranks.catalog import Team
from rankwarden.services.badges import BadgeAllocator
from rankwarden.services.locks import LockManager
from rankwarden.services.sync import AnnouncementKind, NotificationKind
from rankwarden.services.transitions import TransitionDirection


async def test_promotion_across_team_boundary(engine, manager, make_employee, load,
                                              archive_count, active_lock_count, now):
    await make_employee(level=6, badge='S-40')
    employee = await make_employee(level=5, badge='G-03')

    result = await engine.promote(employee.id, manager, 'Outstanding patrol record')

    assert result.direction is TransitionDirection.PROMOTION
    assert (result.old_rank, result.new_rank) == ('Senior Officer', 'Corporal')
    assert (result.old_level, result.new_level) == (5, 6)
    assert result.team_changed
    assert (result.old_team, result.new_team) == (Team.GREEN, Team.SILVER)
    assert (result.old_badge_number, result.new_badge_number) == ('G-03', 'S-41')
    assert result.locked_until == now + timedelta(weeks=2)

    stored = await load(Employee, employee.id)
    assert stored.rank == 'Corporal'
    assert stored.rank_level == 6
    assert stored.badge_number == 'S-41'

    assert await archive_count(employee.id) == 1
    entry = await load(PromotionArchive, result.archive_id)
    assert (entry.old_rank_level, entry.new_rank_level) == (5, 6)
    assert (entry.old_badge_number, entry.new_badge_number) == ('G-03', 'S-41')
    assert entry.promoted_by == 'mgr-1'
    assert entry.reason == 'Outstanding patrol record'
    assert entry.promoted_at == now

    assert await active_lock_count(employee.id) == 1


async def test_promotion_within_team_keeps_badge(engine, manager, make_employee, load, now):
    employee = await make_employee(level=2, badge='G-07')

    result = await engine.promote(employee.id, manager)

    assert not result.team_changed
    assert result.new_badge_number is None
    assert result.badge_number == 'G-07'
    assert result.locked_until == now + timedelta(weeks=1)
    assert (await load(Employee, employee.id)).badge_number == 'G-07'


async def test_locked_employee_cannot_be_promoted_again(engine, manager, clock, make_employee,
                                                        load, archive_count):
    employee = await make_employee(level=5, badge='G-03')
    first = await engine.promote(employee.id, manager)

    clock.advance(days=2)
    with pytest.raises(LockedError) as exc_info:
        await engine.promote(employee.id, manager)

    assert exc_info.value.locked_until == first.locked_until
    assert exc_info.value.user_message() == f"Employee is locked until {first.locked_until:%Y-%m-%d}"
    stored = await load(Employee, employee.id)
    assert stored.rank_level == 6
    assert await archive_count(employee.id) == 1


async def test_promotion_allowed_after_lock_expires(engine, manager, clock, make_employee):
    employee = await make_employee(level=6, badge='S-40')
    await engine.promote(employee.id, manager)

    clock.advance(weeks=2)
    result = await engine.promote(employee.id, manager)

    assert result.new_level == 8


async def test_promotion_into_team_without_cooldown(engine, manager, make_employee, count_rows):
    employee = await make_employee(level=12, badge='GD-60')

    result = await engine.promote(employee.id, manager)

    assert result.new_team is Team.RED
    assert result.new_badge_number == 'R-75'
    assert result.locked_until is None
    assert await count_rows(UprankLock) == 0


async def test_boundaries(engine, manager, make_employee):
    chief = await make_employee(level=15, badge='R-75')
    recruit = await make_employee(level=1, badge='G-01')

    with pytest.raises(BoundaryViolationError):
        await engine.promote(chief.id, manager)
    with pytest.raises(BoundaryViolationError):
        await engine.demote(recruit.id, manager)


async def test_missing_and_inactive_employees(engine, manager, make_employee):
    suspended = await make_employee(level=3, badge='G-02', status='SUSPENDED')

    with pytest.raises(EmployeeNotFoundError):
        await engine.promote('missing', manager)
    with pytest.raises(InvalidStateError) as exc_info:
        await engine.promote(suspended.id, manager)
    assert exc_info.value.status == 'SUSPENDED'


async def test_demotion_reassigns_badge_without_lock(engine, manager, make_employee, load,
                                                     active_lock_count, announcer, notifier):
    await make_employee(level=1, badge='G-01')
    employee = await make_employee(level=6, badge='S-40')

    result = await engine.demote(employee.id, manager, 'Conduct')

    assert result.direction is TransitionDirection.DEMOTION
    assert (result.old_level, result.new_level) == (6, 5)
    assert result.new_badge_number == 'G-02'
    assert result.locked_until is None
    assert await active_lock_count(employee.id) == 0
    assert (await load(Employee, employee.id)).badge_number == 'G-02'

    assert announcer.calls[-1][0] is AnnouncementKind.DEMOTION
    assert notifier.calls[-1][1] is NotificationKind.DEMOTION


async def test_exhausted_pool_leaves_employee_untouched(engine, manager, make_employee, fill_team,
                                                        load, archive_count, sync):
    await fill_team(Team.SILVER)
    employee = await make_employee(level=5, badge='G-03')

    with pytest.raises(BadgePoolExhaustedError):
        await engine.promote(employee.id, manager)

    stored = await load(Employee, employee.id)
    assert (stored.rank_level, stored.badge_number) == (5, 'G-03')
    assert await archive_count(employee.id) == 0
    assert sync.calls == []


async def test_sync_failure_does_not_undo_promotion(engine, manager, make_employee, load,
                                                    sync, notifier, announcer):
    sync.fail = True
    employee = await make_employee(level=3, badge='G-05', name='Jack Ripper')

    result = await engine.promote(employee.id, manager, 'Solid work')

    assert (await load(Employee, employee.id)).rank_level == 4
    assert result.new_level == 4
    assert len(sync.calls) == 1

    employee_id, kind, payload = notifier.calls[0]
    assert (employee_id, kind) == (employee.id, NotificationKind.PROMOTION)
    assert payload['employee_name'] == 'Jack Ripper'
    assert payload['promoted_by'] == 'Captain Price'

    assert announcer.calls[0][0] is AnnouncementKind.PROMOTION


async def test_failed_announcement_is_not_an_error(engine, manager, make_employee, announcer):
    announcer.delivered = False
    employee = await make_employee(level=3, badge='G-05')

    result = await engine.promote(employee.id, manager)

    assert result.new_level == 4


async def test_cooldown_failure_does_not_undo_promotion(build_engine, session_factory, clock,
                                                        manager, make_employee, load):
    class BrokenLocks(LockManager):
        async def create_cooldown(self, *args, **kwargs):
            raise RuntimeError("lock store unavailable")

    engine = build_engine(lock_manager=BrokenLocks(session_factory, clock))
    employee = await make_employee(level=3, badge='G-05')

    result = await engine.promote(employee.id, manager)

    assert result.locked_until is None
    assert (await load(Employee, employee.id)).rank_level == 4


async def test_apply_target_rank_jumps_levels(engine, manager, make_employee, load, now):
    employee = await make_employee(level=3, badge='G-05')

    result = await engine.apply_target_rank(employee.id, 'Sergeant I', manager, 'Approved request')

    assert (result.old_level, result.new_level) == (3, 7)
    assert result.new_badge_number == 'S-40'
    assert result.locked_until == now + timedelta(weeks=2)
    entry = await load(PromotionArchive, result.archive_id)
    assert (entry.old_rank, entry.new_rank) == ('Officer II', 'Sergeant I')


async def test_apply_target_rank_rejects_stale_target(engine, manager, make_employee, archive_count):
    employee = await make_employee(level=7, badge='S-40')

    with pytest.raises(BoundaryViolationError) as exc_info:
        await engine.apply_target_rank(employee.id, 'Corporal', manager)
    assert exc_info.value.current_level == 7
    assert exc_info.value.requested_level == 6

    with pytest.raises(BoundaryViolationError):
        await engine.apply_target_rank(employee.id, 'Sergeant I', manager)
    with pytest.raises(UnknownRankError):
        await engine.apply_target_rank(employee.id, 'Admiral', manager)

    assert await archive_count(employee.id) == 0


async def test_in_transaction_hook_failure_rolls_back(engine, manager, make_employee, load,
                                                      archive_count, sync):
    employee = await make_employee(level=3, badge='G-05')

    async def refuse(session, result):
        raise RuntimeError("request no longer pending")

    with pytest.raises(RuntimeError):
        await engine.apply_target_rank(employee.id, 'Officer III', manager, in_transaction=refuse)

    assert (await load(Employee, employee.id)).rank_level == 3
    assert await archive_count(employee.id) == 0
    assert sync.calls == []


class StaleAllocator(BadgeAllocator):
    """Hands out an already taken badge for the first ``stale_times`` calls"""

    def __init__(self, catalog, stale_badge, stale_times):
        super().__init__(catalog)
        self.stale_badge = stale_badge
        self.stale_times = stale_times
        self.calls = 0

    async def allocate(self, session, team, exclude_employee_id=None):
        self.calls += 1
        if self.calls <= self.stale_times:
            return self.stale_badge
        return await super().allocate(session, team, exclude_employee_id)


async def test_badge_collision_is_retried(build_engine, catalog, manager, make_employee, load):
    await make_employee(level=6, badge='S-40')
    employee = await make_employee(level=5, badge='G-03')
    allocator = StaleAllocator(catalog, 'S-40', stale_times=1)
    engine = build_engine(allocator=allocator)

    result = await engine.promote(employee.id, manager)

    assert allocator.calls == 2
    assert result.new_badge_number == 'S-41'
    assert (await load(Employee, employee.id)).badge_number == 'S-41'


async def test_badge_collision_gives_up_after_retry(build_engine, catalog, manager, make_employee,
                                                    load, archive_count):
    await make_employee(level=6, badge='S-40')
    employee = await make_employee(level=5, badge='G-03')
    allocator = StaleAllocator(catalog, 'S-40', stale_times=2)
    engine = build_engine(allocator=allocator)

    with pytest.raises(BadgeConflictError) as exc_info:
        await engine.promote(employee.id, manager)

    assert exc_info.value.team == 'Silver'
    assert allocator.calls == 2
    stored = await load(Employee, employee.id)
    assert (stored.rank_level, stored.badge_number) == (5, 'G-03')
    assert await archive_count(employee.id) == 0


async def test_concurrent_modification_is_rejected(build_engine, catalog, session_factory, manager,
                                                   make_employee, load, archive_count):
    employee = await make_employee(level=5, badge='G-03')

    class InterleavingAllocator(BadgeAllocator):
        async def allocate(self, session, team, exclude_employee_id=None):
            # another writer commits between our read and our write
            async with session_scope(session_factory) as other:
                row = await other.get(Employee, employee.id)
                row.display_name = 'Renamed'
            return await super().allocate(session, team, exclude_employee_id)

    engine = build_engine(allocator=InterleavingAllocator(catalog))

    with pytest.raises(ConcurrencyConflictError):
        await engine.promote(employee.id, manager)

    stored = await load(Employee, employee.id)
    assert stored.rank_level == 5
    assert stored.display_name == 'Renamed'
    assert await archive_count(employee.id) == 0


async def test_stale_employee_row_cannot_be_written(session_factory, make_employee):
    employee = await make_employee(level=2, badge='G-04')

    async with session_factory() as first, session_factory() as second:
        a = await first.get(Employee, employee.id)
        b = await second.get(Employee, employee.id)

        a.rank_level = 3
        await first.commit()

        b.rank_level = 4
        with pytest.raises(StaleDataError):
            await second.commit()


async def test_archive_rows_are_immutable(engine, manager, session_factory, make_employee):
    employee = await make_employee(level=2, badge='G-04')
    result = await engine.promote(employee.id, manager)

    with pytest.raises(ImmutableRecordError):
        async with session_scope(session_factory) as s:
            entry = await s.get(PromotionArchive, result.archive_id)
            entry.reason = 'rewritten'

    with pytest.raises(ImmutableRecordError):
        async with session_scope(session_factory) as s:
            entry = await s.get(PromotionArchive, result.archive_id)
            await s.delete(entry)


async def test_history(engine, archive, manager, clock, make_employee):
    employee = await make_employee(level=1, badge='G-01')
    await engine.promote(employee.id, manager, 'first')
    clock.advance(weeks=1)
    await engine.promote(employee.id, manager, 'second')
    clock.advance(weeks=1)
    await engine.demote(employee.id, manager, 'third')

    history = await archive.history(employee.id)
    assert [entry.reason for entry in history] == ['third', 'second', 'first']
    assert [entry.new_rank_level for entry in history] == [2, 3, 2]

    recent = await archive.recent(limit=2)
    assert [entry.reason for entry in recent] == ['third', 'second']


async def test_assign_badge(engine, manager, make_employee, load, archive_count, notifier, sync):
    await make_employee(level=6, badge='S-40')
    employee = await make_employee(level=7, badge='S-41')

    updated = await engine.assign_badge(employee.id, 's-52', manager)

    assert updated.badge_number == 'S-52'
    assert (await load(Employee, employee.id)).badge_number == 'S-52'
    assert await archive_count(employee.id) == 0
    assert sync.calls[-1] == (employee.id, 'Sergeant I', 'Sergeant I', 'S-52')
    assert notifier.calls[-1][1] is NotificationKind.BADGE_CHANGE

    with pytest.raises(BadgeTakenError):
        await engine.assign_badge(employee.id, 'S-40', manager)
    with pytest.raises(InvalidBadgeError):
        await engine.assign_badge(employee.id, 'G-10', manager)


async def test_result_serialises(engine, manager, make_employee):
    employee = await make_employee(level=5, badge='G-03')

    data = (await engine.promote(employee.id, manager)).to_dict()

    assert data['direction'] == 'PROMOTION'
    assert data['old_team'] == 'Green'
    assert data['new_team'] == 'Silver'
    assert data['team_changed'] is True
    assert data['locked_until'].startswith('2024-03-08')
