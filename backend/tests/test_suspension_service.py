"""Tests for the suspension state machine."""

from datetime import datetime
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from abuse_control.models import (
    AuditLog, CapType, Notification, NotificationPriority, NotificationType, Project, ProjectStatus,
    Suspension, SuspensionType,
)
from abuse_control.schemas.quota import SuspensionReason
from abuse_control.services.errors import NotFoundError, ProjectSuspendedError
from abuse_control.services.quota_service import QuotaManager
from abuse_control.services.suspension_service import SuspensionManager

NOW = datetime(2026, 1, 15, 12, 0, 0)

REASON = SuspensionReason(
    cap_type=CapType.DB_QUERIES_PER_DAY,
    current_value=15_000,
    limit_exceeded=10_000,
    details="Exceeded db_queries_per_day limit: 15000 / 10000",
)


@pytest.fixture
def suspensions(db, settings):
    return SuspensionManager(db, settings=settings, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_suspend_records_history_audit_and_notification(db, suspensions, project_factory):
    project = await project_factory(name="checkout", organization_name="Acme")

    suspension = await suspensions.suspend(project.id, REASON, notes="hard cap")

    assert suspension is not None
    assert project.status == ProjectStatus.SUSPENDED
    assert suspension.cap_exceeded == CapType.DB_QUERIES_PER_DAY
    assert suspension.suspension_type == SuspensionType.AUTOMATIC
    assert suspension.reason["current_value"] == 15_000

    history = await suspensions.get_history(project.id)
    assert [h.action for h in history] == ["suspended"]

    audit = (await db.execute(select(AuditLog).where(AuditLog.action == "project_suspended"))).scalars().all()
    assert len(audit) == 1
    assert audit[0].actor_id == "system"

    notifications = (await db.execute(select(Notification))).scalars().all()
    assert len(notifications) == 1
    assert notifications[0].notification_type == NotificationType.PROJECT_SUSPENDED
    assert notifications[0].priority == NotificationPriority.CRITICAL
    assert notifications[0].subject == '[URGENT] Project "checkout" Suspended - Acme'


@pytest.mark.asyncio
async def test_suspending_twice_keeps_one_open_record(suspensions, project_factory):
    project = await project_factory()

    first = await suspensions.suspend(project.id, REASON)
    second = await suspensions.suspend(project.id, REASON)

    assert first is not None
    assert second is None
    assert len(await suspensions.get_all_active()) == 1
    assert len(await suspensions.get_history(project.id)) == 1


@pytest.mark.asyncio
async def test_unsuspend_resolves_open_record(suspensions, project_factory):
    project = await project_factory()
    await suspensions.suspend(project.id, REASON)

    resolved = await suspensions.unsuspend(project.id, notes="customer upgraded", performed_by="admin-1")

    assert resolved is not None
    assert resolved.resolved_at == NOW
    assert "customer upgraded" in resolved.notes
    assert project.status == ProjectStatus.ACTIVE
    assert await suspensions.get_status(project.id) is None
    assert not await suspensions.is_suspended(project.id)

    history = await suspensions.get_history(project.id)
    assert sorted(h.action for h in history) == ["suspended", "unsuspended"]


@pytest.mark.asyncio
async def test_unsuspending_an_active_project_is_a_no_op(suspensions, project_factory):
    project = await project_factory()

    assert await suspensions.unsuspend(project.id) is None
    assert await suspensions.get_history(project.id) == []
    assert project.status == ProjectStatus.ACTIVE


@pytest.mark.asyncio
async def test_ensure_active(suspensions, project_factory):
    project = await project_factory()
    await suspensions.ensure_active(project.id)

    await suspensions.suspend_for_cap_violation(project.id, CapType.FUNCTION_INVOCATIONS_PER_DAY, 6000, 5000)

    with pytest.raises(ProjectSuspendedError) as exc:
        await suspensions.ensure_active(project.id)
    assert exc.value.reason["cap_type"] == "function_invocations_per_day"
    assert "support@example.com" in str(exc.value)


@pytest.mark.asyncio
async def test_unknown_project(suspensions):
    with pytest.raises(NotFoundError):
        await suspensions.suspend(uuid4(), REASON)


@pytest.mark.asyncio
async def test_notification_failure_does_not_block_suspension(db, settings, project_factory):
    class BrokenNotifier:
        async def notify_project_suspended(self, project, suspension):
            raise RuntimeError("mail relay down")

    project = await project_factory()
    suspensions = SuspensionManager(db, notifier=BrokenNotifier(), settings=settings, clock=lambda: NOW)

    suspension = await suspensions.suspend(project.id, REASON.model_dump())

    assert suspension is not None
    records = (await db.execute(select(Suspension))).scalars().all()
    assert len(records) == 1
    assert project.status == ProjectStatus.SUSPENDED


@pytest.mark.asyncio
async def test_audit_trail_filters(suspensions, project_factory):
    project = await project_factory()
    await suspensions.suspend(project.id, REASON)
    await suspensions.unsuspend(project.id, performed_by="admin-1")

    events = await suspensions.audit.get_events(target_type="project", target_id=project.id)
    assert {e.action for e in events} == {"project_suspended", "project_unsuspended"}

    unsuspended = await suspensions.audit.get_events(action="project_unsuspended")
    assert len(unsuspended) == 1
    assert unsuspended[0].actor_id == "admin-1"
    assert unsuspended[0].details["suspension_id"] is not None


@pytest.mark.asyncio
async def test_cap_violation_sweep(db, settings, suspensions, project_factory):
    over = await project_factory(name="over")
    under = await project_factory(name="under")
    sandbox = await project_factory(name="sandbox", environment="development")
    quotas = QuotaManager(db, settings=settings, clock=lambda: NOW)
    for project, usage in ((over, 2000), (under, 10), (sandbox, 5000)):
        await quotas.update_quota(project.id, CapType.STORAGE_UPLOADS_PER_DAY, 1000)
        await quotas.record(project.id, CapType.STORAGE_UPLOADS_PER_DAY, usage)

    suspended = await suspensions.check_all_projects_for_cap_violations()

    assert [s.project_id for s in suspended] == [over.id]
    assert suspended[0].cap_exceeded == CapType.STORAGE_UPLOADS_PER_DAY
    assert under.status == ProjectStatus.ACTIVE
    assert sandbox.status == ProjectStatus.ACTIVE
    assert await suspensions.check_all_projects_for_cap_violations() == []


# ---------------------------------------------------------------------------
# Two sessions racing on one project
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_suspend_from_two_sessions_keeps_one_open_record(db, session_maker, settings, project_factory):
    project = await project_factory()
    await db.commit()

    async with session_maker() as first, session_maker() as second:
        # Both workers saw the project as active before either acted
        assert (await first.get(Project, project.id)).status == ProjectStatus.ACTIVE
        assert (await second.get(Project, project.id)).status == ProjectStatus.ACTIVE

        winner = await SuspensionManager(first, settings=settings, clock=lambda: NOW).suspend(project.id, REASON)
        await first.commit()
        loser = await SuspensionManager(second, settings=settings, clock=lambda: NOW).suspend(project.id, REASON)
        await second.commit()

    assert winner is not None
    assert loser is None

    async with session_maker() as check:
        records = (await check.execute(select(Suspension).where(Suspension.project_id == project.id))).scalars().all()
        assert len(records) == 1
        assert records[0].resolved_at is None


@pytest.mark.asyncio
async def test_unsuspend_from_two_sessions_resolves_once(db, session_maker, settings, project_factory):
    project = await project_factory()
    await SuspensionManager(db, settings=settings, clock=lambda: NOW).suspend(project.id, REASON)
    await db.commit()

    async with session_maker() as first, session_maker() as second:
        assert (await first.get(Project, project.id)).status == ProjectStatus.SUSPENDED
        assert (await second.get(Project, project.id)).status == ProjectStatus.SUSPENDED

        resolved = await SuspensionManager(first, settings=settings, clock=lambda: NOW).unsuspend(
            project.id, performed_by="admin-1"
        )
        await first.commit()
        repeated = await SuspensionManager(second, settings=settings, clock=lambda: NOW).unsuspend(
            project.id, performed_by="admin-2"
        )
        await second.commit()

    assert resolved is not None
    assert repeated is None

    async with session_maker() as check:
        history = await SuspensionManager(check, settings=settings).get_history(project.id)
        assert sorted(h.action for h in history) == ["suspended", "unsuspended"]
        assert [h.performed_by for h in history if h.action == "unsuspended"] == ["admin-1"]


@pytest.mark.asyncio
async def test_second_open_suspension_is_rejected_by_the_database(db, project_factory):
    project = await project_factory()
    db.add(Suspension(project_id=project.id, reason={}, cap_exceeded=CapType.DB_QUERIES_PER_DAY, resolved_at=NOW))
    db.add(Suspension(project_id=project.id, reason={}, cap_exceeded=CapType.DB_QUERIES_PER_DAY))
    await db.flush()

    db.add(Suspension(project_id=project.id, reason={}, cap_exceeded=CapType.REALTIME_CONNECTIONS))
    with pytest.raises(IntegrityError):
        await db.flush()
