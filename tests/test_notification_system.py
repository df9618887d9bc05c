import asyncio
import json

import httpx
import pytest

from photoqr.modules.database_manager import decode_json
from photoqr.modules.notification_system import (
    WhatsAppNotifier, WhatsAppSettings, OrderSummary, normalize_phone_number, MISSING_PHONE_ERROR
)
from photoqr.modules.retry import RetryExecutor, RetryPolicy


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeProvider:
    """Scripted WhatsApp Cloud API responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        status, body = response
        return httpx.Response(status, json=body)


SETTINGS = WhatsAppSettings(enabled=True, token='test-token', phone_number_id='123456')


def _notifier(db, provider, sleep=None, max_attempts=3):
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    executor = RetryExecutor(RetryPolicy(max_attempts=max_attempts, base_delay=2.0),
                             sleep=sleep or RecordingSleep())
    return WhatsAppNotifier(db, SETTINGS, client=client, executor=executor)


def _order(event_id, order_id='order-1'):
    return OrderSummary(
        order_id=order_id,
        order_source='orders',
        event_id=event_id,
        total_value=15250.5,
        currency='ARS',
        customer_name='Laura Diaz',
        customer_email='laura@example.com',
        items_description='3 items'
    )


def _attempts(db, notification_id):
    return db.execute_query(
        """SELECT attempt_number, status, error_message, request_payload
           FROM whatsapp_notification_attempts WHERE notification_id = ?
           ORDER BY attempt_number""",
        (notification_id,)
    )


def _notification(db, notification_id):
    return db.execute_query("SELECT * FROM whatsapp_notifications WHERE id = ?",
                            (notification_id,), fetch_all=False)


@pytest.mark.parametrize('raw, expected', [
    ('11 5555-0000', '+541155550000'),
    ('011 5555 0000', '+541155550000'),
    ('+54 9 11 5555-0000', '+5491155550000'),
    ('0054 11 5555 0000', '+541155550000'),
    ('', None),
    (None, None),
])
def test_normalize_phone_number(raw, expected):
    assert normalize_phone_number(raw) == expected


def test_normalize_phone_number_with_other_country():
    assert normalize_phone_number('(555) 010-9999', default_country='1') == '+15550109999'


def test_disabled_automation_skips(db, seeded):
    provider = FakeProvider((200, {}))
    notifier = WhatsAppNotifier(db, WhatsAppSettings(enabled=False, token='t', phone_number_id='p'),
                                client=httpx.AsyncClient(transport=httpx.MockTransport(provider)))

    outcome = asyncio.run(notifier.handle_order_paid(_order(seeded.event_id)))

    assert outcome.status == 'disabled'
    assert provider.requests == []


def test_successful_delivery(db, seeded):
    provider = FakeProvider((200, {'messages': [{'id': 'wamid.ABC'}]}))
    notifier = _notifier(db, provider)

    outcome = asyncio.run(notifier.handle_order_paid(_order(seeded.event_id)))

    assert outcome.status == 'sent'
    assert outcome.provider_message_id == 'wamid.ABC'
    assert outcome.attempts == 1

    request = provider.requests[0]
    assert str(request.url) == 'https://graph.facebook.com/v20.0/123456/messages'
    assert request.headers['Authorization'] == 'Bearer test-token'
    body = json.loads(request.content)
    assert body['messaging_product'] == 'whatsapp'
    assert body['to'] == '+541155550000'
    assert body['type'] == 'text'
    assert 'Ana Pereyra' in body['text']['body']
    assert 'ARS 15,250.50' in body['text']['body']

    row = _notification(db, outcome.notification_id)
    assert row['status'] == 'sent'
    assert row['attempt_count'] == 1
    assert row['provider_message_id'] == 'wamid.ABC'
    assert decode_json(row['message_payload'])['customer_name'] == 'Laura Diaz'
    assert [a['status'] for a in _attempts(db, outcome.notification_id)] == ['sent']


def test_retries_with_backoff_then_succeeds(db, seeded):
    provider = FakeProvider(
        (500, {'error': {'message': 'temporarily unavailable'}}),
        (200, {'messages': [{'id': 'wamid.XYZ'}]})
    )
    sleep = RecordingSleep()
    notifier = _notifier(db, provider, sleep=sleep)

    outcome = asyncio.run(notifier.handle_order_paid(_order(seeded.event_id)))

    assert outcome.status == 'sent'
    assert outcome.attempts == 2
    assert sleep.delays == [2.0]

    attempts = _attempts(db, outcome.notification_id)
    assert [(a['attempt_number'], a['status']) for a in attempts] == [(1, 'failed'), (2, 'sent')]
    assert attempts[0]['error_message'] == 'temporarily unavailable'

    row = _notification(db, outcome.notification_id)
    assert row['next_retry_at'] is None
    assert row['last_error'] is None


def test_exhausted_retries_mark_notification_failed(db, seeded):
    provider = FakeProvider((503, {}))
    sleep = RecordingSleep()
    notifier = _notifier(db, provider, sleep=sleep)

    outcome = asyncio.run(notifier.handle_order_paid(_order(seeded.event_id)))

    assert outcome.status == 'failed'
    assert outcome.attempts == 3
    assert len(provider.requests) == 3
    assert sleep.delays == [2.0, 4.0]

    row = _notification(db, outcome.notification_id)
    assert row['status'] == 'failed'
    assert row['attempt_count'] == 3
    assert row['last_error'] == 'HTTP 503 Service Unavailable'
    assert row['next_retry_at'] is None
    assert len(_attempts(db, outcome.notification_id)) == 3

    again = asyncio.run(notifier.handle_order_paid(_order(seeded.event_id)))
    assert again.status == 'failed'
    assert again.error == 'max_attempts_exhausted'
    assert len(provider.requests) == 3


def test_network_errors_are_retried(db, seeded):
    provider = FakeProvider(
        httpx.ConnectError('connection refused'),
        (200, {'messages': [{'id': 'wamid.NET'}]})
    )
    notifier = _notifier(db, provider)

    outcome = asyncio.run(notifier.handle_order_paid(_order(seeded.event_id)))

    assert outcome.status == 'sent'
    attempts = _attempts(db, outcome.notification_id)
    assert attempts[0]['error_message'] == 'connection refused'


def test_sent_notification_is_not_resent(db, seeded):
    provider = FakeProvider((200, {'messages': [{'id': 'wamid.ONCE'}]}))
    notifier = _notifier(db, provider)

    first = asyncio.run(notifier.handle_order_paid(_order(seeded.event_id)))
    second = asyncio.run(notifier.handle_order_paid(_order(seeded.event_id)))

    assert second.status == 'already_sent'
    assert second.notification_id == first.notification_id
    assert len(provider.requests) == 1


def test_missing_photographer_phone(db, seeded):
    provider = FakeProvider((200, {}))
    notifier = _notifier(db, provider)

    outcome = asyncio.run(notifier.handle_order_paid(_order(seeded.other_event_id)))

    assert outcome.status == 'failed'
    assert outcome.error == MISSING_PHONE_ERROR
    assert provider.requests == []
    row = _notification(db, outcome.notification_id)
    assert row['status'] == 'failed'
    assert row['last_error'] == MISSING_PHONE_ERROR


def test_delivery_resumes_from_stored_attempt_count(db, seeded):
    db.execute_update(
        """INSERT INTO whatsapp_notifications (id, order_id, order_source, event_id, status, attempt_count)
           VALUES ('n-1', 'order-9', 'orders', ?, 'pending', 2)""",
        (seeded.event_id,)
    )
    provider = FakeProvider((502, {'error': {'message': 'bad gateway'}}))
    notifier = _notifier(db, provider)

    outcome = asyncio.run(notifier.handle_order_paid(_order(seeded.event_id, order_id='order-9')))

    assert outcome.status == 'failed'
    assert outcome.notification_id == 'n-1'
    assert [a['attempt_number'] for a in _attempts(db, 'n-1')] == [3]
    assert _notification(db, 'n-1')['status'] == 'failed'


def test_order_without_event_is_skipped(db, seeded):
    notifier = _notifier(db, FakeProvider((200, {})))
    outcome = asyncio.run(notifier.handle_order_paid(_order(None)))
    assert outcome.status == 'skipped'
