"""
Tests for webhook delivery

URL safety gate, HMAC signing, the HTTP dispatcher and its tasks.
"""

from datetime import timedelta
import hashlib
import hmac
import json
import socket
import uuid

import pytest
import requests
from cryptography.fernet import Fernet
from django.contrib.auth import get_user_model
from django.utils import timezone

from formbuilder.models import Form, FormStatus
from .dispatcher import (
    SIGNATURE_HEADER,
    UnsafeWebhookURLError,
    WebhookDispatcher,
    build_payload,
    check_webhook_url,
    generate_signature,
    is_safe_webhook_url,
    serialize_payload,
    verify_signature,
)
from .models import WebhookDelivery, WebhookEvent
from .tasks import deliver_webhook, prune_webhook_deliveries

HOOK_URL = 'https://hooks.example.com/forms'


def addrinfo(*addresses):
    return [(socket.AF_INET, socket.SOCK_STREAM, 6, '', (address, 443)) for address in addresses]


@pytest.fixture
def form(db):
    owner = get_user_model().objects.create_user(username='owner', password='pass')
    form = Form.objects.create(
        owner=owner, title='Survey', slug='survey', status=FormStatus.PUBLISHED,
        webhook_enabled=True, webhook_url=HOOK_URL,
    )
    form.webhook_secret = 'top-secret'
    form.save()
    return form


@pytest.fixture
def session(mocker):
    session = mocker.Mock(spec=requests.Session)
    session.post.return_value = mocker.Mock(status_code=200)
    return session


class TestURLSafety:

    @pytest.mark.parametrize('url', [
        'https://hooks.example.com/forms',
        'http://203.0.113.10:8080/hook',
        'http://172.32.0.1/hook',
        'https://[2001:db8::1]/hook',
    ])
    def test_allowed(self, url):
        assert is_safe_webhook_url(url) is True

    @pytest.mark.parametrize('url', [
        'http://localhost/hook',
        'http://LOCALHOST:8000/hook',
        'http://127.0.0.1/hook',
        'http://127.8.8.8/hook',
        'http://10.1.2.3/hook',
        'http://172.16.0.1/hook',
        'http://172.31.255.255/hook',
        'http://192.168.1.1/hook',
        'http://169.254.169.254/latest/meta-data',
        'http://[::1]/hook',
        'http://[fe80::1]/hook',
        'http://[fd00::1]/hook',
        'http://[::ffff:10.0.0.1]/hook',
        'http://127.1/hook',
        'http://2130706433/hook',
        'http://0x7f000001/hook',
        'http://0177.0.0.1/hook',
        'http://10.1/hook',
        'http://0.0.0.0:8000/hook',
        'http://127.0.0.1./hook',
        'http://localhost./hook',
    ])
    def test_private_targets_blocked(self, url):
        assert is_safe_webhook_url(url) is False

    @pytest.mark.parametrize('url', ['', None, 'not a url', 'ftp://example.com/x', 'file:///etc/passwd', 'https://'])
    def test_malformed_blocked(self, url):
        assert is_safe_webhook_url(url) is False

    def test_check_raises(self):
        with pytest.raises(UnsafeWebhookURLError):
            check_webhook_url('http://10.0.0.1/')
        assert check_webhook_url(HOOK_URL) == HOOK_URL

    def test_shorthand_ipv4_is_judged_without_dns(self, mocker):
        getaddrinfo = mocker.patch('socket.getaddrinfo')

        assert is_safe_webhook_url('http://127.1/hook') is False
        assert is_safe_webhook_url('http://3405803786/hook') is True  # 203.0.113.10
        getaddrinfo.assert_not_called()

    def test_hostnames_are_not_resolved_by_default(self, mocker):
        getaddrinfo = mocker.patch('socket.getaddrinfo')

        assert is_safe_webhook_url('https://internal.example.com/hook') is True
        getaddrinfo.assert_not_called()

    def test_resolved_private_address_blocked(self, mocker):
        mocker.patch('socket.getaddrinfo', return_value=addrinfo('93.184.216.34', '10.0.0.7'))
        assert is_safe_webhook_url('https://internal.example.com/hook', resolve=True) is False

    def test_resolved_public_address_allowed(self, mocker):
        mocker.patch('socket.getaddrinfo', return_value=addrinfo('93.184.216.34'))
        assert is_safe_webhook_url('https://hooks.example.com/hook', resolve=True) is True

    def test_unresolvable_host_blocked(self, mocker):
        mocker.patch('socket.getaddrinfo', side_effect=socket.gaierror('no such host'))
        assert is_safe_webhook_url('https://nowhere.invalid/hook', resolve=True) is False

    def test_resolution_follows_setting(self, settings, mocker):
        settings.WEBHOOK_RESOLVE_HOSTNAMES = True
        mocker.patch('socket.getaddrinfo', return_value=addrinfo('192.168.0.10'))

        assert is_safe_webhook_url('https://hooks.example.com/hook') is False


class TestSignature:

    def test_signature_is_hmac_of_body(self):
        payload = {'event': 'form.submission.created', 'formId': 'f1'}
        body = serialize_payload(payload)

        expected = hmac.new(b'key', body, hashlib.sha256).hexdigest()
        assert generate_signature(payload, 'key') == expected
        assert generate_signature(body, 'key') == expected

    def test_serialized_body_is_compact(self):
        body = serialize_payload({'a': 1, 'name': 'Ünïcode', 'id': uuid.UUID(int=1)})

        assert body == '{"a":1,"name":"Ünïcode","id":"00000000-0000-0000-0000-000000000001"}'.encode('utf-8')

    def test_verify(self):
        payload = {'event': 'x', 'data': {'q': 'a'}}
        signature = generate_signature(payload, 'key')

        assert verify_signature(payload, signature, 'key') is True
        assert verify_signature(payload, 'sha256=' + signature, 'key') is True
        assert verify_signature(serialize_payload(payload), signature, 'key') is True

    def test_verify_rejects_mutations(self):
        payload = {'event': 'x', 'data': {'q': 'a'}}
        signature = generate_signature(payload, 'key')

        assert verify_signature({'event': 'x', 'data': {'q': 'b'}}, signature, 'key') is False
        assert verify_signature(payload, signature, 'other-key') is False
        tampered = signature[:-1] + ('1' if signature[-1] == '0' else '0')
        assert verify_signature(payload, tampered, 'key') is False
        assert verify_signature(payload, '', 'key') is False
        assert verify_signature(payload, signature, '') is False


class TestBuildPayload:

    def test_created_payload(self):
        payload = build_payload(WebhookEvent.SUBMISSION_CREATED, uuid.UUID(int=5), 'survey', 'sub-1', {'q': 1})

        assert payload['event'] == 'form.submission.created'
        assert payload['formId'] == str(uuid.UUID(int=5))
        assert payload['formSlug'] == 'survey'
        assert payload['submissionId'] == 'sub-1'
        assert payload['data'] == {'q': 1}
        assert payload['timestamp']

    def test_deleted_payload_has_no_data(self):
        payload = build_payload(WebhookEvent.SUBMISSION_DELETED, 'f1', 'survey', 'sub-1')
        assert 'data' not in payload


@pytest.mark.django_db
class TestWebhookDispatcher:

    def test_send_signs_and_posts(self, session, settings):
        payload = build_payload('form.submission.created', 'f1', 'survey', 'sub-1', {'q': 'a'})

        assert WebhookDispatcher(session=session).send(HOOK_URL, payload, 'key') is True

        args, kwargs = session.post.call_args
        assert args == (HOOK_URL,)
        assert kwargs['data'] == serialize_payload(payload)
        assert kwargs['timeout'] == settings.WEBHOOK_TIMEOUT_SECONDS
        assert kwargs['allow_redirects'] is False
        assert kwargs['headers']['Content-Type'] == 'application/json'
        assert kwargs['headers']['User-Agent'] == settings.WEBHOOK_USER_AGENT
        assert kwargs['headers'][SIGNATURE_HEADER] == 'sha256=' + generate_signature(payload, 'key')

    def test_send_without_secret_is_unsigned(self, session):
        WebhookDispatcher(session=session).send(HOOK_URL, {'event': 'x'})

        assert SIGNATURE_HEADER not in session.post.call_args.kwargs['headers']

    @pytest.mark.parametrize('status_code, delivered', [(200, True), (204, True), (302, False), (404, False), (500, False)])
    def test_only_2xx_counts_as_delivered(self, session, mocker, status_code, delivered):
        session.post.return_value = mocker.Mock(status_code=status_code)

        assert WebhookDispatcher(session=session).send(HOOK_URL, {'event': 'x'}) is delivered

        record = WebhookDelivery.objects.get()
        assert record.success is delivered
        assert record.status_code == status_code

    def test_network_error_is_reported_not_raised(self, session):
        session.post.side_effect = requests.Timeout('timed out')

        assert WebhookDispatcher(session=session).send(HOOK_URL, {'event': 'x', 'submissionId': 's1'}) is False

        record = WebhookDelivery.objects.get()
        assert record.success is False
        assert record.status_code is None
        assert record.submission_id == 's1'
        assert 'timed out' in record.error

    def test_unsafe_url_is_never_contacted(self, session):
        assert WebhookDispatcher(session=session).send('http://192.168.0.1/hook', {'event': 'x'}) is False

        session.post.assert_not_called()
        assert 'private' in WebhookDelivery.objects.get().error

    def test_notify_created(self, form, session):
        assert WebhookDispatcher(session=session).notify_submission_created(form, 'sub-1', {'q': 'a'}) is True

        kwargs = session.post.call_args.kwargs
        body = json.loads(kwargs['data'])
        assert body['event'] == 'form.submission.created'
        assert body['formSlug'] == 'survey'
        assert verify_signature(kwargs['data'], kwargs['headers'][SIGNATURE_HEADER], 'top-secret')
        assert WebhookDelivery.objects.for_form(form).count() == 1

    def test_notify_updated(self, form, session):
        WebhookDispatcher(session=session).notify_submission_updated(form, 'sub-1', {'q': 'b'})

        body = json.loads(session.post.call_args.kwargs['data'])
        assert body['event'] == 'form.submission.updated'
        assert body['data'] == {'q': 'b'}

    def test_undecryptable_secret_is_recorded_as_failure(self, form, settings, session):
        settings.FIELD_ENCRYPTION_KEY = Fernet.generate_key().decode()

        assert WebhookDispatcher(session=session).notify_submission_created(form, 'sub-1', {'q': 'a'}) is False

        session.post.assert_not_called()
        record = WebhookDelivery.objects.get()
        assert record.success is False
        assert record.submission_id == 'sub-1'
        assert 'decrypted' in record.error

    def test_notify_skipped_when_disabled(self, form, session):
        form.webhook_enabled = False

        assert WebhookDispatcher(session=session).notify_submission_deleted(form, 'sub-1') is False
        session.post.assert_not_called()

    def test_test_webhook_payload(self, session):
        WebhookDispatcher(session=session).test_webhook(HOOK_URL, 'key')

        body = json.loads(session.post.call_args.kwargs['data'])
        assert body['formId'] == 'test-form-id'
        assert body['formSlug'] == 'test-form'
        assert body['submissionId'] == 'test-submission-id'
        assert body['data']['test'] is True

    def test_test_webhook_respects_gate(self, session):
        assert WebhookDispatcher(session=session).test_webhook('http://127.0.0.1:9000/') is False
        session.post.assert_not_called()


@pytest.mark.django_db
class TestWebhookTasks:

    def test_deliver_created(self, form, mocker):
        post = mocker.patch('requests.Session.post', return_value=mocker.Mock(status_code=200))

        result = deliver_webhook(str(form.id), WebhookEvent.SUBMISSION_CREATED.value, 'sub-1', {'q': 'a'})

        assert result == {'delivered': True}
        assert json.loads(post.call_args.kwargs['data'])['data'] == {'q': 'a'}

    def test_deliver_deleted(self, form, mocker):
        post = mocker.patch('requests.Session.post', return_value=mocker.Mock(status_code=200))

        deliver_webhook(str(form.id), WebhookEvent.SUBMISSION_DELETED.value, 'sub-1')

        body = json.loads(post.call_args.kwargs['data'])
        assert body['event'] == 'form.submission.deleted'
        assert 'data' not in body

    def test_deliver_for_missing_form(self, db, mocker):
        post = mocker.patch('requests.Session.post')

        assert deliver_webhook(str(uuid.uuid4()), 'form.submission.created', 'sub-1') == {'delivered': False}
        post.assert_not_called()

    def test_deliver_failure_is_not_raised(self, form, mocker):
        mocker.patch('requests.Session.post', side_effect=requests.ConnectionError('refused'))

        result = deliver_webhook.delay(str(form.id), 'form.submission.created', 'sub-1', {})

        assert result.successful()
        assert WebhookDelivery.objects.failed().count() == 1

    def test_prune(self, form):
        old = WebhookDelivery.objects.create(form=form, event='form.submission.created', url=HOOK_URL)
        recent = WebhookDelivery.objects.create(form=form, event='form.submission.created', url=HOOK_URL)
        WebhookDelivery.objects.filter(pk=old.pk).update(created_at=timezone.now() - timedelta(days=45))

        result = prune_webhook_deliveries(days=30)

        assert result == {'deleted_count': 1}
        assert list(WebhookDelivery.objects.values_list('pk', flat=True)) == [recent.pk]

    def test_deliver_with_rotated_key_records_failure(self, form, settings, mocker):
        settings.FIELD_ENCRYPTION_KEY = Fernet.generate_key().decode()
        post = mocker.patch('requests.Session.post')

        result = deliver_webhook(str(form.id), WebhookEvent.SUBMISSION_CREATED.value, 'sub-1', {})

        assert result == {'delivered': False}
        post.assert_not_called()
        assert WebhookDelivery.objects.failed().count() == 1
