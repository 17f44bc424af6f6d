"""
Webhook Dispatcher

Signs and POSTs submission events to owner-configured endpoints.

- URL safety gate before every send (no private or loopback targets)
- HMAC-SHA256 signature over the exact request body
- Fixed timeout, no redirects, fixed User-Agent
- At-most-once: no retry, every attempt is logged as a WebhookDelivery
"""

from typing import Any, Dict, Optional, Union
from urllib.parse import urlsplit
import hashlib
import hmac
import ipaddress
import json
import logging
import socket
import time

import requests
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone

from .models import WebhookDelivery, WebhookEvent

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'X-Webhook-Signature'
SIGNATURE_PREFIX = 'sha256='

BLOCKED_HOSTNAMES = {'localhost', '127.0.0.1', '::1'}

BLOCKED_NETWORKS = [
    ipaddress.ip_network(network) for network in (
        '0.0.0.0/8',
        '10.0.0.0/8',
        '172.16.0.0/12',
        '192.168.0.0/16',
        '127.0.0.0/8',
        '169.254.0.0/16',
        '::1/128',
        'fe80::/10',
        'fc00::/7',
    )
]


class UnsafeWebhookURLError(ValueError):
    """Raised when a webhook URL targets a disallowed destination"""
    pass


# ============================================================================
# URL safety gate
# ============================================================================

def _is_blocked_address(address) -> bool:
    # IPv4-mapped IPv6 (::ffff:10.0.0.1) is judged by its IPv4 address
    mapped = getattr(address, 'ipv4_mapped', None)
    if mapped is not None:
        address = mapped
    return any(address in network for network in BLOCKED_NETWORKS if network.version == address.version)


def _literal_address(hostname: str):
    """
    Parse a host as an IP literal, including the shorthand IPv4 forms the
    system resolver accepts (127.1, 2130706433, 0x7f000001).
    """
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        pass
    if ':' in hostname:
        return None
    try:
        return ipaddress.IPv4Address(socket.inet_aton(hostname))
    except (OSError, ValueError):
        return None


def _resolve(hostname: str, port: int):
    infos = socket.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)
    addresses = set()
    for info in infos:
        try:
            addresses.add(ipaddress.ip_address(info[4][0]))
        except ValueError:
            continue
    return addresses


def check_webhook_url(url: str, resolve: Optional[bool] = None) -> str:
    """
    Validate an outbound webhook URL.

    Literal IP hosts are checked against the blocked ranges. Hostnames are
    only resolved when `resolve` (default: WEBHOOK_RESOLVE_HOSTNAMES) is on,
    in which case every resolved address must be allowed.

    Returns the URL unchanged, or raises UnsafeWebhookURLError.
    """
    try:
        parts = urlsplit(str(url or '').strip())
        hostname = (parts.hostname or '').lower().rstrip('.')
        port = parts.port
    except ValueError as e:
        raise UnsafeWebhookURLError(f'Malformed webhook URL: {e}') from e

    if parts.scheme.lower() not in ('http', 'https'):
        raise UnsafeWebhookURLError('Webhook URL must use http or https')
    if not hostname:
        raise UnsafeWebhookURLError('Webhook URL must include a host')
    if hostname in BLOCKED_HOSTNAMES:
        raise UnsafeWebhookURLError(f'Webhook host {hostname} is not allowed')

    address = _literal_address(hostname)
    if address is not None:
        if _is_blocked_address(address):
            raise UnsafeWebhookURLError(f'Webhook host {hostname} is in a private range')
        return url

    if resolve is None:
        resolve = settings.WEBHOOK_RESOLVE_HOSTNAMES
    if resolve:
        try:
            addresses = _resolve(hostname, port or (443 if parts.scheme.lower() == 'https' else 80))
        except OSError as e:
            raise UnsafeWebhookURLError(f'Webhook host {hostname} could not be resolved') from e
        if not addresses:
            raise UnsafeWebhookURLError(f'Webhook host {hostname} could not be resolved')
        if any(_is_blocked_address(a) for a in addresses):
            raise UnsafeWebhookURLError(f'Webhook host {hostname} resolves to a private address')

    return url


def is_safe_webhook_url(url: str, resolve: Optional[bool] = None) -> bool:
    try:
        check_webhook_url(url, resolve=resolve)
    except UnsafeWebhookURLError:
        return False
    return True


# ============================================================================
# Signing
# ============================================================================

def serialize_payload(payload: Union[Dict[str, Any], str, bytes]) -> bytes:
    """Canonical JSON body; the signature covers exactly these bytes."""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode('utf-8')
    return json.dumps(
        payload, separators=(',', ':'), ensure_ascii=False, cls=DjangoJSONEncoder
    ).encode('utf-8')


def generate_signature(payload: Union[Dict[str, Any], str, bytes], secret: str) -> str:
    """Hex HMAC-SHA256 of the serialized payload"""
    return hmac.new(
        secret.encode('utf-8'), serialize_payload(payload), hashlib.sha256
    ).hexdigest()


def verify_signature(payload: Union[Dict[str, Any], str, bytes], signature: str, secret: str) -> bool:
    """
    Constant-time check of a signature, with or without the `sha256=` prefix.
    """
    if not signature or not secret:
        return False
    signature = str(signature)
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    expected = generate_signature(payload, secret)
    return hmac.compare_digest(expected.encode('utf-8'), signature.encode('utf-8'))


# ============================================================================
# Payloads
# ============================================================================

def build_payload(
    event: str,
    form_id: Any,
    form_slug: str,
    submission_id: Any = None,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Wire shape of a submission event"""
    payload = {
        'event': str(event),
        'timestamp': timezone.now().isoformat(),
        'formId': str(form_id),
        'formSlug': form_slug,
    }
    if submission_id is not None:
        payload['submissionId'] = str(submission_id)
    if data is not None:
        payload['data'] = data
    return payload


# ============================================================================
# Dispatcher
# ============================================================================

class WebhookDispatcher:
    """
    Sends webhook events over HTTP.

    Usage:
        dispatcher = WebhookDispatcher()
        delivered = dispatcher.send(url, payload, secret)
    """

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()
        self.timeout = settings.WEBHOOK_TIMEOUT_SECONDS
        self.user_agent = settings.WEBHOOK_USER_AGENT

    def send(self, url: str, payload: Dict[str, Any], secret: Optional[str] = None, form=None) -> bool:
        """
        POST a payload; True only for a 2xx response.

        Never raises: unsafe URLs, network errors, timeouts and non-2xx
        responses are logged and reported as False.
        """
        event = payload.get('event', '')
        submission_id = payload.get('submissionId') or ''

        try:
            check_webhook_url(url)
        except UnsafeWebhookURLError as e:
            logger.warning(f"Blocked webhook to unsafe URL {url}: {e}")
            self._record(form, event, url, submission_id, error=str(e))
            return False

        body = serialize_payload(payload)
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': self.user_agent,
        }
        if secret:
            headers[SIGNATURE_HEADER] = SIGNATURE_PREFIX + generate_signature(body, secret)

        started = time.monotonic()
        try:
            response = self.session.post(
                url,
                data=body,
                headers=headers,
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"Failed to send webhook to {url}: {e}")
            self._record(form, event, url, submission_id, error=str(e), duration_ms=duration_ms)
            return False

        duration_ms = int((time.monotonic() - started) * 1000)
        delivered = 200 <= response.status_code < 300

        if delivered:
            logger.info(f"Webhook {event} delivered to {url} ({response.status_code})")
        else:
            logger.warning(f"Webhook returned non-2xx status {response.status_code} for {url}")

        self._record(
            form, event, url, submission_id,
            success=delivered,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        return delivered

    def notify_submission_created(self, form, submission_id, data) -> bool:
        return self._notify(form, WebhookEvent.SUBMISSION_CREATED, submission_id, data)

    def notify_submission_updated(self, form, submission_id, data) -> bool:
        return self._notify(form, WebhookEvent.SUBMISSION_UPDATED, submission_id, data)

    def notify_submission_deleted(self, form, submission_id) -> bool:
        return self._notify(form, WebhookEvent.SUBMISSION_DELETED, submission_id)

    def test_webhook(self, url: str, secret: Optional[str] = None, form=None) -> bool:
        """Send a fixed test payload; the URL gate applies as for real events"""
        payload = build_payload(
            WebhookEvent.SUBMISSION_CREATED,
            'test-form-id',
            'test-form',
            'test-submission-id',
            {'test': True, 'message': 'This is a test webhook from Forms Platform'},
        )
        return self.send(url, payload, secret, form=form)

    def _notify(self, form, event, submission_id, data=None) -> bool:
        if not (form.webhook_enabled and form.webhook_url):
            return False
        try:
            secret = form.webhook_secret
        except ValueError as e:
            logger.error(f"Webhook {event} for form {form.id} not sent: {e}")
            self._record(form, event, form.webhook_url, submission_id or '', error=str(e))
            return False
        payload = build_payload(event, form.id, form.slug, submission_id, data)
        return self.send(form.webhook_url, payload, secret, form=form)

    @staticmethod
    def _record(form, event, url, submission_id, success=False, status_code=None, error='', duration_ms=None):
        WebhookDelivery.objects.create(
            form=form,
            event=str(event),
            url=url[:1000],
            submission_id=str(submission_id)[:64],
            success=success,
            status_code=status_code,
            error=error,
            duration_ms=duration_ms,
        )
