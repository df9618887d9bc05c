"""
Notification System Module - School Photo QR Pipeline

This module tells photographers about paid orders over WhatsApp.
Every notification is a database row, and every delivery attempt is stored
next to it, so a retried or resumed delivery can always be audited.

Features:
- WhatsApp Business Cloud API text messages over httpx
- Jinja2 message template
- Exponential backoff with persisted attempts
- Resume from the stored attempt count; a sent notification is never resent
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

import httpx
from jinja2 import Template

from photoqr.modules.database_manager import DatabaseManager, new_id, encode_json
from photoqr.modules.retry import RetryExecutor, RetryPolicy
from photoqr.modules.errors import ExternalServiceError, RetryExhaustedError

STATUS_PENDING = 'pending'
STATUS_SENT = 'sent'
STATUS_FAILED = 'failed'

MISSING_PHONE_ERROR = 'missing_photographer_phone'

MESSAGE_TEMPLATE = """Hi {{ photographer_name or 'photographer' }}!
A new order was confirmed for {{ event_name or 'an unnamed event' }}.

- Order: {{ order.order_code }}
- Customer: {{ order.customer_name or 'Unnamed customer' }}
- Total: {{ formatted_total }}
- Items: {{ order.items_description }}

Contact: {{ order.customer_email or '-' }} / {{ order.customer_phone or '-' }}

Open the dashboard for more details. Thanks!"""


@dataclass
class WhatsAppSettings:
    """Provider credentials and delivery limits."""
    enabled: bool = False
    token: str = ''
    phone_number_id: str = ''
    api_base: str = 'https://graph.facebook.com'
    api_version: str = 'v20.0'
    default_country_code: str = '54'
    max_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_backoff_factor: float = 2.0
    request_timeout: float = 10.0

    @property
    def is_configured(self) -> bool:
        return bool(self.enabled and self.token and self.phone_number_id)

    @property
    def endpoint(self) -> str:
        return f"{self.api_base.rstrip('/')}/{self.api_version}/{self.phone_number_id}/messages"

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> 'WhatsAppSettings':
        """Read WHATSAPP_* keys from a Flask config or any mapping."""
        return cls(
            enabled=bool(config.get('WHATSAPP_AUTOMATION_ENABLED', False)),
            token=config.get('WHATSAPP_TOKEN') or '',
            phone_number_id=config.get('WHATSAPP_PHONE_NUMBER_ID') or '',
            api_base=config.get('WHATSAPP_API_BASE', cls.api_base),
            api_version=config.get('WHATSAPP_API_VERSION', cls.api_version),
            default_country_code=config.get('WHATSAPP_DEFAULT_COUNTRY_CODE', cls.default_country_code),
            max_attempts=int(config.get('WHATSAPP_MAX_ATTEMPTS', cls.max_attempts)),
            retry_base_delay=float(config.get('WHATSAPP_RETRY_BASE_DELAY', cls.retry_base_delay)),
            retry_backoff_factor=float(config.get('WHATSAPP_RETRY_BACKOFF_FACTOR', cls.retry_backoff_factor)),
            request_timeout=float(config.get('WHATSAPP_REQUEST_TIMEOUT', cls.request_timeout)),
        )


@dataclass
class OrderSummary:
    """The part of a paid order a notification needs."""
    order_id: str
    order_source: str
    event_id: Optional[str]
    total_value: float = 0.0
    currency: str = 'ARS'
    order_code: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    items_description: str = 'No item details'
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.order_code:
            self.order_code = self.order_id


@dataclass
class NotificationOutcome:
    status: str
    notification_id: Optional[str] = None
    attempts: int = 0
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


def normalize_phone_number(raw: Optional[str], default_country: str = '54') -> Optional[str]:
    """
    Normalize a phone number to E.164-like '+<digits>'.

    Args:
        raw (str): Phone number as typed
        default_country (str): Country code prefixed to numbers without one

    Returns:
        str or None when there is nothing to normalize
    """
    if not raw:
        return None

    digits = ''.join(ch for ch in raw if ch.isdigit() or ch == '+')
    if digits.startswith('00'):
        digits = '+' + digits[2:]
    if digits.startswith('+'):
        return digits if len(digits) > 1 else None

    country = ''.join(ch for ch in (default_country or '') if ch.isdigit())
    trimmed = digits.lstrip('0')
    if not trimmed:
        return None
    return f"+{country}{trimmed}"


def format_currency(value: float, currency: str) -> str:
    return f"{currency or 'ARS'} {value:,.2f}"


class WhatsAppNotifier:
    """
    Sends paid-order notifications to the photographer of the event.
    """

    def __init__(self, database_manager: DatabaseManager, settings: WhatsAppSettings,
                 client: Optional[httpx.AsyncClient] = None,
                 executor: Optional[RetryExecutor] = None):
        self.db = database_manager
        self.settings = settings
        self.client = client
        self.executor = executor or RetryExecutor(RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.retry_base_delay,
            backoff_factor=settings.retry_backoff_factor
        ))
        self.template = Template(MESSAGE_TEMPLATE)
        self.logger = logging.getLogger(__name__)

    @property
    def max_attempts(self) -> int:
        return self.executor.policy.max_attempts

    def build_message_body(self, order: OrderSummary, event: Dict[str, Any]) -> str:
        return self.template.render(
            order=order,
            photographer_name=event.get('photographer_name'),
            event_name=event.get('name'),
            formatted_total=format_currency(order.total_value, order.currency)
        )

    @staticmethod
    def build_provider_payload(phone: str, message: str) -> Dict[str, Any]:
        return {
            'messaging_product': 'whatsapp',
            'to': phone,
            'type': 'text',
            'text': {'body': message},
        }

    async def handle_order_paid(self, order: OrderSummary) -> NotificationOutcome:
        """
        Notify the event photographer about a paid order.

        Args:
            order (OrderSummary): Paid order

        Returns:
            NotificationOutcome: What happened to the notification
        """
        log_prefix = f"[order {order.order_id}/{order.order_source}]"

        if not self.settings.is_configured:
            self.logger.info(f"{log_prefix} WhatsApp automation disabled, skipping")
            return NotificationOutcome(status='disabled')

        if not order.event_id:
            self.logger.warning(f"{log_prefix} Order has no event, skipping")
            return NotificationOutcome(status='skipped', error='missing_event')

        event = await self.db.fetch_one(
            """SELECT id, name, photographer_name, photographer_email, photographer_phone
               FROM events WHERE id = ?""",
            (order.event_id,)
        )
        if not event:
            self.logger.warning(f"{log_prefix} Event {order.event_id} not found, skipping")
            return NotificationOutcome(status='skipped', error='event_not_found')

        phone = normalize_phone_number(event['photographer_phone'], self.settings.default_country_code)
        message_body = self.build_message_body(order, event)
        message_payload = {
            'order_id': order.order_id,
            'order_code': order.order_code,
            'order_source': order.order_source,
            'event_id': event['id'],
            'event_name': event['name'],
            'total_value': order.total_value,
            'currency': order.currency,
            'customer_name': order.customer_name,
            'customer_email': order.customer_email,
            'customer_phone': order.customer_phone,
            'items_description': order.items_description,
            'metadata': order.metadata,
        }

        existing = await self.db.fetch_one(
            """SELECT id, status, attempt_count FROM whatsapp_notifications
               WHERE order_id = ? AND order_source = ?
               ORDER BY created_at DESC LIMIT 1""",
            (order.order_id, order.order_source)
        )

        if existing and existing['status'] == STATUS_SENT:
            self.logger.info(f"{log_prefix} Notification {existing['id']} already sent")
            return NotificationOutcome(status='already_sent', notification_id=existing['id'],
                                       attempts=existing['attempt_count'])

        if not phone:
            notification_id = await self._save_notification(
                order, event, None, message_body, message_payload, existing,
                status=STATUS_FAILED, last_error=MISSING_PHONE_ERROR
            )
            self.logger.warning(f"{log_prefix} Photographer phone missing, notification {notification_id} failed")
            return NotificationOutcome(status=STATUS_FAILED, notification_id=notification_id,
                                       error=MISSING_PHONE_ERROR)

        start_attempt = (existing['attempt_count'] if existing else 0) + 1
        if start_attempt > self.max_attempts:
            self.logger.warning(f"{log_prefix} Notification {existing['id']} has no attempts left")
            return NotificationOutcome(status=STATUS_FAILED, notification_id=existing['id'],
                                       attempts=existing['attempt_count'], error='max_attempts_exhausted')

        notification_id = await self._save_notification(
            order, event, phone, message_body, message_payload, existing, status=STATUS_PENDING
        )

        payload = self.build_provider_payload(phone, message_body)

        async def _send(attempt: int) -> Optional[str]:
            return await self._attempt_delivery(notification_id, attempt, payload)

        async def _on_failure(attempt: int, error: Exception, next_delay: Optional[float]) -> None:
            now = datetime.now()
            next_retry = now + timedelta(seconds=next_delay) if next_delay is not None else None
            await self.db.execute(
                """UPDATE whatsapp_notifications
                   SET status = ?, attempt_count = ?, last_error = ?, last_attempt_at = ?, next_retry_at = ?
                   WHERE id = ?""",
                (STATUS_PENDING if next_retry else STATUS_FAILED, attempt, str(error), now.isoformat(),
                 next_retry.isoformat() if next_retry else None, notification_id)
            )

        try:
            provider_message_id, attempts = await self.executor.run(
                _send, on_failure=_on_failure, start_attempt=start_attempt
            )
        except RetryExhaustedError as e:
            self.logger.error(f"{log_prefix} Notification {notification_id} failed after "
                              f"{e.attempts} attempt(s): {e.last_error}")
            return NotificationOutcome(status=STATUS_FAILED, notification_id=notification_id,
                                       attempts=e.attempts, error=str(e.last_error))

        self.logger.info(f"{log_prefix} Notification {notification_id} sent on attempt {attempts} "
                         f"(provider id {provider_message_id})")
        return NotificationOutcome(status=STATUS_SENT, notification_id=notification_id,
                                   attempts=attempts, provider_message_id=provider_message_id)

    async def _attempt_delivery(self, notification_id: str, attempt: int, payload: Dict[str, Any]):
        """
        Make one provider call and persist it.

        Returns:
            tuple: (provider message id, attempt number)

        Raises:
            ExternalServiceError: The provider call failed
        """
        response_body = None
        try:
            response = await self._call_provider(payload)
            try:
                response_body = response.json()
            except ValueError:
                response_body = {}

            if response.is_success:
                messages = response_body.get('messages') if isinstance(response_body, dict) else None
                if isinstance(messages, list) and messages:
                    provider_message_id = messages[0].get('id')
                elif isinstance(messages, dict):
                    provider_message_id = messages.get('id')
                else:
                    provider_message_id = None

                now = datetime.now().isoformat()
                await self._persist_attempt(notification_id, attempt, STATUS_SENT, payload, response_body)
                await self.db.execute(
                    """UPDATE whatsapp_notifications
                       SET status = ?, attempt_count = ?, provider_message_id = ?, last_error = NULL,
                           last_attempt_at = ?, next_retry_at = NULL
                       WHERE id = ?""",
                    (STATUS_SENT, attempt, provider_message_id, now, notification_id)
                )
                return provider_message_id, attempt

            error = response_body.get('error') if isinstance(response_body, dict) else None
            message = (error or {}).get('message') if isinstance(error, dict) else None
            error_message = message or f"HTTP {response.status_code} {response.reason_phrase}".strip()

        except httpx.HTTPError as e:
            error_message = str(e) or e.__class__.__name__

        await self._persist_attempt(notification_id, attempt, STATUS_FAILED, payload, response_body, error_message)
        raise ExternalServiceError(error_message)

    async def _call_provider(self, payload: Dict[str, Any]) -> httpx.Response:
        headers = {
            'Authorization': f"Bearer {self.settings.token}",
            'Content-Type': 'application/json',
        }
        if self.client is not None:
            return await self.client.post(self.settings.endpoint, json=payload, headers=headers)

        async with httpx.AsyncClient(timeout=self.settings.request_timeout) as client:
            return await client.post(self.settings.endpoint, json=payload, headers=headers)

    async def _persist_attempt(self, notification_id: str, attempt: int, status: str,
                               request_payload: Dict[str, Any], response_payload: Any,
                               error_message: Optional[str] = None) -> None:
        await self.db.execute(
            """INSERT INTO whatsapp_notification_attempts
               (id, notification_id, attempt_number, status, request_payload, response_payload, error_message)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (new_id(), notification_id, attempt, status, encode_json(request_payload),
             encode_json(response_payload), error_message)
        )

    async def _save_notification(self, order: OrderSummary, event: Dict[str, Any], phone: Optional[str],
                                 message_body: str, message_payload: Dict[str, Any],
                                 existing: Optional[Dict[str, Any]], status: str,
                                 last_error: Optional[str] = None) -> str:
        """Insert the notification row, or refresh the existing one for this order."""
        if existing:
            await self.db.execute(
                """UPDATE whatsapp_notifications
                   SET event_id = ?, photographer_phone = ?, photographer_name = ?, photographer_email = ?,
                       message_body = ?, message_payload = ?, status = ?, last_error = ?
                   WHERE id = ?""",
                (event['id'], phone, event['photographer_name'], event['photographer_email'],
                 message_body, encode_json(message_payload), status, last_error, existing['id'])
            )
            return existing['id']

        notification_id = new_id()
        await self.db.execute(
            """INSERT INTO whatsapp_notifications
               (id, order_id, order_source, event_id, photographer_phone, photographer_name,
                photographer_email, status, message_body, message_payload, last_error)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (notification_id, order.order_id, order.order_source, event['id'], phone,
             event['photographer_name'], event['photographer_email'], status, message_body,
             encode_json(message_payload), last_error)
        )
        return notification_id
