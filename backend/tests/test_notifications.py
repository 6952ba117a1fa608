"""Tests for notification preferences, queueing and delivery retries."""

from datetime import datetime, timedelta
from uuid import uuid4

import httpx
import pytest

from abuse_control.models import (
    NotificationChannel, NotificationStatus, NotificationType,
)
from abuse_control.schemas.notification import DeliveryResult, NotificationPreferenceInput
from abuse_control.services.delivery import (
    DeliveryTransport, HttpEmailTransport, WebhookTransport, build_default_transports,
    calculate_backoff_ms, is_permanent_error,
)
from abuse_control.services.errors import DeliveryError
from abuse_control.services.notification_service import (
    NotificationDispatcher, NotificationPreferenceService,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)


class RecordingTransport(DeliveryTransport):
    channel = NotificationChannel.EMAIL

    def __init__(self, error=None):
        self.error = error
        self.sent = []

    async def send(self, to, subject, body):
        self.sent.append((to, subject))
        if self.error:
            return DeliveryResult(success=False, error=self.error)
        return DeliveryResult(success=True, message_id="msg-1")


class MutableClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

class TestBackoff:
    def test_doubles_per_attempt_without_jitter(self):
        no_jitter = lambda: 0.5  # noqa: E731
        assert [calculate_backoff_ms(n, 1000, 60000, no_jitter) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]

    def test_never_exceeds_max(self):
        assert calculate_backoff_ms(20, 1000, 60000, lambda: 1.0) == 60000

    def test_jitter_is_bounded(self):
        assert calculate_backoff_ms(3, 1000, 60000, lambda: 0.0) == 3000
        assert calculate_backoff_ms(3, 1000, 60000, lambda: 1.0) == 5000

    def test_permanent_markers(self):
        assert is_permanent_error("Recipient is UNSUBSCRIBED")
        assert is_permanent_error("sms delivery not implemented")
        assert not is_permanent_error("connection reset")
        assert not is_permanent_error(None)


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_preference_resolution_order(db):
    preferences = NotificationPreferenceService(db)
    user_id, project_id = uuid4(), uuid4()

    default = await preferences.get_effective_preference(user_id, project_id, NotificationType.QUOTA_WARNING)
    assert default.source == "default"
    assert default.channels == [NotificationChannel.EMAIL]

    await preferences.upsert_preference(
        user_id,
        NotificationPreferenceInput(notification_type=NotificationType.QUOTA_WARNING, enabled=False),
    )
    general = await preferences.get_effective_preference(user_id, project_id, NotificationType.QUOTA_WARNING)
    assert general.source == "global"
    assert not general.enabled

    await preferences.upsert_preference(
        user_id,
        NotificationPreferenceInput(
            notification_type=NotificationType.QUOTA_WARNING,
            channels=[NotificationChannel.IN_APP],
        ),
        project_id=project_id,
    )
    specific = await preferences.get_effective_preference(user_id, project_id, NotificationType.QUOTA_WARNING)
    assert specific.source == "project"
    assert specific.enabled
    assert specific.channels == [NotificationChannel.IN_APP]

    # Upserting again updates in place
    await preferences.upsert_preference(
        user_id,
        NotificationPreferenceInput(notification_type=NotificationType.QUOTA_WARNING, enabled=True),
    )
    assert len(await preferences.get_preferences(user_id)) == 1


@pytest.mark.asyncio
async def test_disabled_preference_suppresses_notification(db, settings, project_factory):
    project = await project_factory()
    await NotificationPreferenceService(db).upsert_preference(
        project.owner_id,
        NotificationPreferenceInput(notification_type=NotificationType.QUOTA_WARNING, enabled=False),
    )
    dispatcher = NotificationDispatcher(db, settings=settings, clock=lambda: NOW)

    assert await dispatcher.notify_quota_warning(project, "db_queries_per_day", 85, 100, 80) == []


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_successful_delivery(db, settings, project_factory):
    project = await project_factory()
    transport = RecordingTransport()
    dispatcher = NotificationDispatcher(
        db, transports={NotificationChannel.EMAIL: transport}, settings=settings, clock=lambda: NOW
    )
    [notification] = await dispatcher.notify_quota_warning(project, "db_queries_per_day", 92, 100, 90)

    counts = await dispatcher.process_pending()

    assert counts == {"processed": 1, "delivered": 1, "retrying": 0, "failed": 0}
    assert notification.status == NotificationStatus.DELIVERED
    assert notification.delivered_at == NOW
    assert transport.sent == [("owner@acme.test", notification.subject)]


@pytest.mark.asyncio
async def test_transient_failures_retry_then_fail(db, settings, project_factory):
    project = await project_factory()
    clock = MutableClock(NOW)
    dispatcher = NotificationDispatcher(
        db,
        transports={NotificationChannel.EMAIL: RecordingTransport(error="connection reset")},
        settings=settings,
        clock=clock,
        rng=lambda: 0.5,
    )
    [notification] = await dispatcher.notify_detection(
        project, NotificationType.ERROR_RATE_DETECTED, "High error rate detected", "60% errors", "critical", "investigate"
    )

    assert await dispatcher.deliver(notification) == NotificationStatus.RETRYING
    assert notification.next_attempt_at == NOW + timedelta(milliseconds=1000)

    # Not due yet
    assert (await dispatcher.process_pending())["processed"] == 0

    clock.now = NOW + timedelta(seconds=1)
    assert (await dispatcher.process_pending())["retrying"] == 1
    assert notification.next_attempt_at == clock.now + timedelta(milliseconds=2000)

    clock.now = NOW + timedelta(seconds=10)
    assert (await dispatcher.process_pending())["failed"] == 1
    assert notification.status == NotificationStatus.FAILED
    assert notification.attempts == 3
    assert "connection reset" in notification.error_message


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(db, settings, project_factory):
    project = await project_factory()
    dispatcher = NotificationDispatcher(
        db,
        transports={NotificationChannel.EMAIL: RecordingTransport(error="Invalid recipient address")},
        settings=settings,
        clock=lambda: NOW,
    )
    [notification] = await dispatcher.notify_project_unsuspended(project, "restored")

    assert await dispatcher.deliver(notification) == NotificationStatus.FAILED
    assert notification.attempts == 1


@pytest.mark.asyncio
async def test_missing_transport_is_permanent(db, settings, project_factory):
    project = await project_factory()
    await NotificationPreferenceService(db).upsert_preference(
        project.owner_id,
        NotificationPreferenceInput(
            notification_type=NotificationType.QUOTA_WARNING,
            channels=[NotificationChannel.IN_APP, NotificationChannel.SMS],
        ),
    )
    dispatcher = NotificationDispatcher(db, settings=settings, clock=lambda: NOW)
    [notification] = await dispatcher.notify_quota_warning(project, "db_queries_per_day", 85, 100, 80)

    assert await dispatcher.deliver(notification) == NotificationStatus.FAILED
    assert notification.delivered_channels == ["in_app"]
    assert "not implemented" in notification.error_message


# ---------------------------------------------------------------------------
# HTTP email relay
# ---------------------------------------------------------------------------

def _relay(status_code, body=None):
    def handler(request):
        return httpx.Response(status_code, json=body) if body is not None else httpx.Response(status_code)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_email_relay_success():
    transport = HttpEmailTransport("https://relay.test/send", api_key="k", from_address="a@x.test", client=_relay(200, {"id": "abc"}))
    result = await transport.send("owner@acme.test", "subject", "body")
    assert result.success
    assert result.message_id == "abc"


@pytest.mark.asyncio
async def test_email_relay_errors():
    rejected = HttpEmailTransport("https://relay.test/send", from_address="a@x.test", client=_relay(422, {"error": "bad"}))
    with pytest.raises(DeliveryError) as exc:
        await rejected.send("owner@acme.test", "subject", "body")
    assert exc.value.permanent

    unavailable = HttpEmailTransport("https://relay.test/send", from_address="a@x.test", client=_relay(503))
    with pytest.raises(DeliveryError) as exc:
        await unavailable.send("owner@acme.test", "subject", "body")
    assert not exc.value.permanent


@pytest.mark.asyncio
async def test_email_relay_accepts_plain_text_body():
    relay = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="Queued")))
    transport = HttpEmailTransport("https://relay.test/send", from_address="a@x.test", client=relay)

    result = await transport.send("owner@acme.test", "subject", "body")

    assert result.success
    assert result.message_id is None


@pytest.mark.asyncio
async def test_plain_text_relay_response_is_sent_once(db, settings, project_factory):
    posts = []

    def handler(request):
        posts.append(request)
        return httpx.Response(200, text="Queued")

    project = await project_factory()
    email = HttpEmailTransport(
        "https://relay.test/send",
        from_address="a@x.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    clock = MutableClock(NOW)
    dispatcher = NotificationDispatcher(
        db, transports={NotificationChannel.EMAIL: email}, settings=settings, clock=clock
    )
    [notification] = await dispatcher.notify_quota_warning(project, "db_queries_per_day", 92, 100, 90)

    for minute in range(5):
        clock.now = NOW + timedelta(minutes=minute)
        await dispatcher.process_pending()

    assert notification.status == NotificationStatus.DELIVERED
    assert notification.attempts == 1
    assert len(posts) == 1


class ExplodingTransport(DeliveryTransport):
    channel = NotificationChannel.EMAIL

    def __init__(self):
        self.calls = 0

    async def send(self, to, subject, body):
        self.calls += 1
        raise RuntimeError("relay client bug")


@pytest.mark.asyncio
async def test_unexpected_transport_error_still_counts_attempts(db, settings, project_factory):
    project = await project_factory()
    transport = ExplodingTransport()
    clock = MutableClock(NOW)
    dispatcher = NotificationDispatcher(
        db, transports={NotificationChannel.EMAIL: transport}, settings=settings, clock=clock, rng=lambda: 0.5
    )
    [notification] = await dispatcher.notify_quota_warning(project, "db_queries_per_day", 92, 100, 90)

    first = await dispatcher.process_pending()
    assert first == {"processed": 1, "delivered": 0, "retrying": 1, "failed": 0}
    assert notification.attempts == 1
    assert "relay client bug" in notification.error_message

    for minute in range(1, 10):
        clock.now = NOW + timedelta(minutes=minute)
        await dispatcher.process_pending()

    assert notification.status == NotificationStatus.FAILED
    assert notification.attempts == settings.NOTIFICATION_MAX_ATTEMPTS
    assert transport.calls == settings.NOTIFICATION_MAX_ATTEMPTS


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_webhook_posts_json_payload():
    received = []

    def handler(request):
        received.append(request)
        return httpx.Response(204)

    transport = WebhookTransport(
        "https://hooks.acme.test/abuse", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    result = await transport.send("owner@acme.test", "Quota warning", "92% used")

    assert result.success
    assert received[0].url == "https://hooks.acme.test/abuse"
    assert b'"subject":"Quota warning"' in received[0].content.replace(b" ", b"")


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, permanent", [(410, True), (404, True), (502, False)])
async def test_webhook_errors(status_code, permanent):
    transport = WebhookTransport(
        "https://hooks.acme.test/abuse",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status_code))),
    )
    with pytest.raises(DeliveryError) as exc:
        await transport.send("owner@acme.test", "subject", "body")
    assert exc.value.permanent is permanent


def test_webhook_transport_comes_from_settings(settings):
    assert NotificationChannel.WEBHOOK not in build_default_transports(settings)

    configured = settings.model_copy(update={"WEBHOOK_URL": "https://hooks.acme.test/abuse"})
    transports = build_default_transports(configured)

    assert isinstance(transports[NotificationChannel.WEBHOOK], WebhookTransport)
    assert transports[NotificationChannel.WEBHOOK].url == "https://hooks.acme.test/abuse"
