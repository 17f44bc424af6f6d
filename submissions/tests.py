"""
Tests for the submission pipeline

Eligibility, conditional validation, attachment externalization,
persistence with the form counter, and post-commit dispatch.
"""

from datetime import timedelta
from types import SimpleNamespace
import base64
import json
import uuid

import pytest
import requests
from django.contrib.auth import get_user_model
from django.core.files.storage import InMemoryStorage, default_storage
from django.utils import timezone
from rest_framework.test import APIClient

from formbuilder.models import Field, FieldType, Form, FormStatus
from webhooks.dispatcher import SIGNATURE_HEADER, verify_signature
from webhooks.models import WebhookDelivery
from .attachments import AttachmentExternalizer, is_base64_image, normalize_base64, signature_mimetype
from .exceptions import (
    EligibilityError, FormNotFoundError, SubmissionNotFoundError, SubmissionValidationError
)
from .models import Submission
from .notifications import CacheRealtimeNotifier, FORM_SUBMISSION, build_submission_notification
from .services import (
    SubmissionOrchestrator, SubmissionInput, SubmissionStage,
    delete_submission, preview_submission, submit_form,
)
from .storage import DjangoStorageBlobStore, ResponseFolderAllocator

PNG_BYTES = b'\x89PNG\r\n\x1a\nsignature'
PNG_DATA_URI = 'data:image/png;base64,' + base64.b64encode(PNG_BYTES).decode()


@pytest.fixture
def owner(db):
    return get_user_model().objects.create_user(username='owner', password='pass', email='owner@example.com')


@pytest.fixture
def respondents(db):
    User = get_user_model()
    return (
        User.objects.create_user(username='u1', password='pass'),
        User.objects.create_user(username='u2', password='pass'),
    )


@pytest.fixture
def form(owner):
    form = Form.objects.create(owner=owner, title='Survey', slug='survey', status=FormStatus.PUBLISHED)
    Field.objects.create(form=form, label='Name', type=FieldType.TEXT, order=0)
    return form


@pytest.fixture
def car_form(owner):
    """hasCar (required radio) and carModel (required, shown only when hasCar == yes)"""
    form = Form.objects.create(owner=owner, title='Cars', slug='cars', status=FormStatus.PUBLISHED)
    has_car = Field.objects.create(
        form=form, label='hasCar', type=FieldType.RADIO, order=0, required=True, options=['yes', 'no']
    )
    car_model = Field.objects.create(
        form=form, label='carModel', type=FieldType.TEXT, order=1, required=True,
        conditional_logic={
            'logic': 'AND',
            'rules': [{'fieldId': str(has_car.id), 'operator': 'EQUALS', 'value': 'yes', 'action': 'SHOW'}],
        }
    )
    return SimpleNamespace(form=form, has_car=has_car, car_model=car_model)


@pytest.fixture
def attachment_form(owner):
    form = Form.objects.create(
        owner=owner, title='Claims', slug='claims', status=FormStatus.PUBLISHED,
        external_storage_enabled=True
    )
    signature = Field.objects.create(form=form, label='Signature', type=FieldType.SIGNATURE, order=0)
    documents = Field.objects.create(form=form, label='Documents', type=FieldType.FILE, order=1)
    return SimpleNamespace(form=form, signature=signature, documents=documents)


def enable_webhook(form, secret='s3cret'):
    form.webhook_enabled = True
    form.webhook_url = 'https://hooks.example.com/forms'
    form.webhook_secret = secret
    form.save()
    return form


# ============================================================================
# Eligibility
# ============================================================================

@pytest.mark.django_db
class TestEligibility:

    def test_published_form_accepts(self, form):
        submission = submit_form(form.id, {'Name': 'Alice'})

        assert Submission.objects.filter(pk=submission.pk).exists()
        form.refresh_from_db()
        assert form.submission_count == 1

    @pytest.mark.parametrize('status', [FormStatus.DRAFT, FormStatus.CLOSED, FormStatus.ARCHIVED])
    def test_unpublished_form_rejects(self, form, status):
        form.status = status
        form.save()

        with pytest.raises(EligibilityError) as exc_info:
            submit_form(form.id, {'Name': 'Alice'})

        assert exc_info.value.code == EligibilityError.NOT_PUBLISHED
        assert not Submission.objects.exists()

    def test_not_open_yet(self, form):
        form.opens_at = timezone.now() + timedelta(days=1)
        form.save()

        with pytest.raises(EligibilityError) as exc_info:
            submit_form(form.id, {})
        assert exc_info.value.code == EligibilityError.NOT_OPEN_YET

    def test_closed_window(self, form):
        form.closes_at = timezone.now() - timedelta(minutes=1)
        form.save()

        with pytest.raises(EligibilityError) as exc_info:
            submit_form(form.id, {})
        assert exc_info.value.code == EligibilityError.CLOSED

    def test_first_failing_check_wins(self, form):
        form.status = FormStatus.DRAFT
        form.closes_at = timezone.now() - timedelta(days=1)
        form.requires_authentication = True
        form.save()

        with pytest.raises(EligibilityError) as exc_info:
            submit_form(form.id, {})
        assert exc_info.value.code == EligibilityError.NOT_PUBLISHED

    def test_authentication_required(self, form, respondents):
        form.requires_authentication = True
        form.save()

        with pytest.raises(EligibilityError) as exc_info:
            submit_form(form.id, {'Name': 'Anon'})
        assert exc_info.value.code == EligibilityError.AUTHENTICATION_REQUIRED

        submit_form(form.id, {'Name': 'Known'}, user=respondents[0])
        assert Submission.objects.count() == 1

    def test_quota(self, form):
        form.max_submissions = 1
        form.save()

        submit_form(form.id, {'Name': 'First'})
        with pytest.raises(EligibilityError) as exc_info:
            submit_form(form.id, {'Name': 'Second'})

        assert exc_info.value.code == EligibilityError.QUOTA_REACHED
        assert Submission.objects.filter(form=form).count() == 1
        form.refresh_from_db()
        assert form.submission_count == 1

    def test_zero_quota_means_unlimited(self, form):
        form.max_submissions = 0
        form.save()

        submit_form(form.id, {})
        submit_form(form.id, {})
        assert Submission.objects.filter(form=form).count() == 2

    def test_one_response_per_user(self, form, respondents):
        u1, u2 = respondents
        form.one_response_per_user = True
        form.save()

        submit_form(form.id, {'Name': 'One'}, user=u1)
        with pytest.raises(EligibilityError) as exc_info:
            submit_form(form.id, {'Name': 'One again'}, user=u1)
        submit_form(form.id, {'Name': 'Two'}, user=u2)

        assert exc_info.value.code == EligibilityError.ALREADY_SUBMITTED
        assert Submission.objects.filter(form=form, user=u1).count() == 1
        assert Submission.objects.filter(form=form, user=u2).count() == 1

    def test_multiple_submissions_disallowed(self, form, respondents):
        form.allow_multiple_submissions = False
        form.save()

        submit_form(form.id, {}, user=respondents[0])
        with pytest.raises(EligibilityError) as exc_info:
            submit_form(form.id, {}, user=respondents[0])
        assert exc_info.value.code == EligibilityError.ALREADY_SUBMITTED

    def test_anonymous_submitters_are_not_deduplicated(self, form):
        form.one_response_per_user = True
        form.allow_multiple_submissions = False
        form.save()

        submit_form(form.id, {'Name': 'A'})
        submit_form(form.id, {'Name': 'B'})
        assert Submission.objects.filter(form=form).count() == 2

    def test_unknown_form(self, db):
        with pytest.raises(FormNotFoundError):
            submit_form(uuid.uuid4(), {})
        with pytest.raises(FormNotFoundError):
            submit_form('not-a-uuid', {})

    def test_error_payload(self):
        error = EligibilityError(EligibilityError.CLOSED, 'This form is closed')
        assert error.as_dict() == {'code': 'closed', 'message': 'This form is closed'}


# ============================================================================
# Conditional validation
# ============================================================================

@pytest.mark.django_db
class TestConditionalValidation:

    def test_hidden_required_field_is_not_enforced(self, car_form):
        submission = submit_form(car_form.form.id, {str(car_form.has_car.id): 'no'})

        assert submission.data == {str(car_form.has_car.id): 'no'}

    def test_shown_required_field_is_enforced(self, car_form):
        with pytest.raises(SubmissionValidationError) as exc_info:
            submit_form(car_form.form.id, {str(car_form.has_car.id): 'yes'})

        errors = exc_info.value.errors
        assert list(errors) == [str(car_form.car_model.id)]
        assert len(errors[str(car_form.car_model.id)]) == 1
        assert exc_info.value.error_messages == errors[str(car_form.car_model.id)]
        assert not Submission.objects.exists()

    def test_shown_field_answered(self, car_form):
        submission = submit_form(car_form.form.id, {
            str(car_form.has_car.id): 'yes',
            str(car_form.car_model.id): 'Corolla',
        })
        assert submission.data[str(car_form.car_model.id)] == 'Corolla'

    def test_answers_by_label(self, car_form):
        with pytest.raises(SubmissionValidationError) as exc_info:
            submit_form(car_form.form.id, {'hasCar': 'yes'})
        assert str(car_form.car_model.id) in exc_info.value.errors

        submission = submit_form(car_form.form.id, {'hasCar': 'yes', 'carModel': 'Civic'})
        assert submission.data == {'hasCar': 'yes', 'carModel': 'Civic'}

    def test_invalid_choice(self, car_form):
        with pytest.raises(SubmissionValidationError) as exc_info:
            submit_form(car_form.form.id, {str(car_form.has_car.id): 'maybe'})
        assert str(car_form.has_car.id) in exc_info.value.errors

    def test_require_action_elevates(self, owner):
        form = Form.objects.create(owner=owner, title='Rating', slug='rating', status=FormStatus.PUBLISHED)
        rating = Field.objects.create(form=form, label='Rating', type=FieldType.NUMBER, order=0)
        Field.objects.create(
            form=form, label='Why', type=FieldType.TEXTAREA, order=1,
            conditional_logic={'rules': [
                {'fieldId': str(rating.id), 'operator': 'LESS_THAN', 'value': 3, 'action': 'REQUIRE'}
            ]}
        )

        with pytest.raises(SubmissionValidationError):
            submit_form(form.id, {'Rating': '1'})
        submit_form(form.id, {'Rating': '5'})

    def test_skipped_field_is_not_validated(self, owner):
        form = Form.objects.create(owner=owner, title='Quick', slug='quick', status=FormStatus.PUBLISHED)
        Field.objects.create(form=form, label='Mode', type=FieldType.TEXT, order=0)
        Field.objects.create(
            form=form, label='Email', type=FieldType.EMAIL, order=1, required=True,
            conditional_logic={'rules': [
                {'fieldId': 'Mode', 'operator': 'EQUALS', 'value': 'quick', 'action': 'SKIP'}
            ]}
        )

        submission = submit_form(form.id, {'Mode': 'quick', 'Email': 'not-an-email'})
        assert submission.data['Email'] == 'not-an-email'

    def test_validation_messages_use_form_locale(self, form):
        form.locale = 'en'
        form.save()
        Field.objects.create(form=form, label='Age', type=FieldType.NUMBER, order=1)

        with pytest.raises(SubmissionValidationError) as exc_info:
            submit_form(form.id, {'Age': 'old'})
        assert exc_info.value.error_messages == ['"Age" must be a valid number']

    def test_arabic_form_gets_arabic_messages(self, form):
        form.locale = 'ar'
        form.save()
        Field.objects.create(form=form, label='Age', type=FieldType.NUMBER, order=1, required=True)

        with pytest.raises(SubmissionValidationError) as exc_info:
            submit_form(form.id, {'Name': 'Alice'})

        assert exc_info.value.error_messages == ['حقل "Age" إلزامي']
        assert exc_info.value.message == 'فشل التحقق من النموذج'

    def test_arabic_eligibility_message(self, form):
        form.locale = 'ar'
        form.status = FormStatus.CLOSED
        form.save()

        with pytest.raises(EligibilityError) as exc_info:
            submit_form(form.id, {})
        assert exc_info.value.message == 'هذا النموذج لا يستقبل استجابات حالياً'

    def test_error_payload(self):
        error = SubmissionValidationError({'f1': ['a', 'b'], 'f2': ['c']})
        assert error.as_dict() == {
            'message': 'Form validation failed',
            'errors': {'f1': ['a', 'b'], 'f2': ['c']},
            'errorMessages': ['a', 'b', 'c'],
        }


# ============================================================================
# Orchestrator
# ============================================================================

@pytest.mark.django_db
class TestSubmissionOrchestrator:

    def test_stages(self, form, django_capture_on_commit_callbacks):
        orchestrator = SubmissionOrchestrator()

        with django_capture_on_commit_callbacks(execute=True):
            orchestrator.submit(form.id, SubmissionInput(data={'Name': 'Alice'}))

        assert orchestrator.stage == SubmissionStage.DISPATCHED

    def test_stage_of_rejection(self, car_form):
        orchestrator = SubmissionOrchestrator()

        with pytest.raises(SubmissionValidationError):
            orchestrator.submit(car_form.form.id, SubmissionInput(data={'hasCar': 'yes'}))
        assert orchestrator.stage == SubmissionStage.CLASSIFIED

    def test_request_metadata_is_stored(self, form, respondents):
        submission = submit_form(
            form.id, {'Name': 'Alice'}, user=respondents[0],
            ip_address='203.0.113.9', user_agent='pytest', time_to_complete=42
        )
        submission.refresh_from_db()

        assert submission.user == respondents[0]
        assert submission.ip_address == '203.0.113.9'
        assert submission.user_agent == 'pytest'
        assert submission.time_to_complete == 42
        assert submission.completed_at is not None

    def test_anonymous_user_object_is_treated_as_anonymous(self, form):
        from django.contrib.auth.models import AnonymousUser

        submission = submit_form(form.id, {}, user=AnonymousUser())
        assert submission.user is None

    def test_quota_policy_is_replaceable(self, form):
        class Closed:
            def check(self, form):
                raise EligibilityError(EligibilityError.QUOTA_REACHED, 'full')

        with pytest.raises(EligibilityError):
            SubmissionOrchestrator(quota=Closed()).submit(form.id, SubmissionInput(data={}))


# ============================================================================
# Attachments
# ============================================================================

class TestAttachmentHelpers:

    def test_is_base64_image(self):
        assert is_base64_image('data:image/png;base64,AAAA')
        assert is_base64_image('image/png;base64,AAAA')
        assert not is_base64_image('https://example.com/sig.png')
        assert not is_base64_image({'url': 'x'})

    def test_normalize_base64(self):
        assert normalize_base64('image/png;base64,AAAA') == 'data:image/png;base64,AAAA'
        assert normalize_base64('data:image/png;base64,AAAA') == 'data:image/png;base64,AAAA'
        assert normalize_base64('plain') == 'plain'

    def test_signature_mimetype(self):
        assert signature_mimetype('data:image/jpeg;base64,') == 'image/jpeg'
        assert signature_mimetype('data:image/svg+xml;base64,') == 'image/svg+xml'
        assert signature_mimetype('data:image/png;base64,') == 'image/png'
        assert signature_mimetype('data:image/webp;base64,') == 'image/png'


class TestResponseFolderAllocator:

    @pytest.fixture
    def store(self):
        return DjangoStorageBlobStore(storage=InMemoryStorage())

    def test_first_folder(self, store):
        folder_id = ResponseFolderAllocator(store).claim('forms/f1', 'sub-1')

        assert folder_id == 'forms/f1/Response 1'
        assert store.list_folders('forms/f1')[0].description == 'sub-1'

    def test_next_number_follows_highest(self, store):
        store.create_folder('forms/f1', 'Response 1', 'a')
        store.create_folder('forms/f1', 'Response 3', 'b')
        store.create_folder('forms/f1', 'Archive', 'c')

        assert ResponseFolderAllocator(store).claim('forms/f1', 'new') == 'forms/f1/Response 4'

    def test_reuses_folder_of_same_submission(self, store):
        store.create_folder('forms/f1', 'Response 1', 'a')
        store.create_folder('forms/f1', 'Response 2', 'b')

        assert ResponseFolderAllocator(store).claim('forms/f1', 'a') == 'forms/f1/Response 1'
        assert len(store.list_folders('forms/f1')) == 2


class TestAttachmentExternalizer:

    @pytest.fixture
    def store(self):
        return DjangoStorageBlobStore(storage=InMemoryStorage())

    @pytest.fixture
    def form(self):
        return SimpleNamespace(id=uuid.uuid4(), title='Claims', external_storage_enabled=True)

    @pytest.fixture
    def fields(self):
        return [
            SimpleNamespace(id='sig', label='Signature', type=FieldType.SIGNATURE),
            SimpleNamespace(id='docs', label='Documents', type=FieldType.FILE),
            SimpleNamespace(id='name', label='Name', type=FieldType.TEXT),
        ]

    def test_signature_is_externalized(self, store, form, fields, settings):
        settings.FORMS_PUBLIC_API_URL = 'https://forms.example.com/'
        submission_id = uuid.uuid4()

        result = AttachmentExternalizer(store).externalize(
            form, fields, {'sig': PNG_DATA_URI, 'name': 'Alice'}, submission_id
        )

        descriptor = result['sig']
        assert descriptor['type'] == 'secure_file'
        assert descriptor['formId'] == str(form.id)
        assert descriptor['fileId'].startswith(f'forms/{form.id}/Response 1/signature_{submission_id}_')
        assert descriptor['fileId'].endswith('.png')
        assert descriptor['secureUrl'] == (
            f"https://forms.example.com/api/submissions/forms/{form.id}/files/{descriptor['fileId']}"
        )
        assert result['name'] == 'Alice'
        with store.storage.open(descriptor['fileId'], 'rb') as handle:
            assert handle.read() == PNG_BYTES

    def test_signature_without_data_prefix(self, store, form, fields):
        value = 'image/jpeg;base64,' + base64.b64encode(b'jpeg').decode()
        result = AttachmentExternalizer(store).externalize(form, fields, {'sig': value}, 'sid')

        assert result['sig']['fileId'].endswith('.jpeg')

    def test_signature_reference_passes_through(self, store, form, fields):
        data = {'sig': {'url': 'https://cdn.example.com/sig.png'}}
        assert AttachmentExternalizer(store).externalize(form, fields, data, 'sid') == data

    def test_files_are_externalized_and_references_kept(self, store, form, fields):
        inline = {
            'name': 'notes.txt',
            'type': 'text/plain',
            'size': 3,
            'data': 'data:text/plain;base64,' + base64.b64encode(b'abc').decode(),
        }
        reference = {'name': 'old.pdf', 'fileId': 'forms/x/old.pdf'}

        result = AttachmentExternalizer(store).externalize(form, fields, {'docs': [inline, reference]}, 'sid')

        stored, kept = result['docs']
        assert stored['name'] == 'notes.txt'
        assert stored['type'] == 'text/plain'
        assert stored['size'] == 3
        assert stored['fileId'].startswith(f'forms/{form.id}/Response 1/')
        assert 'data' not in stored
        assert kept == reference

    def test_single_file_object(self, store, form, fields):
        inline = {'name': 'a.txt', 'type': 'text/plain', 'data': 'data:text/plain;base64,YQ=='}
        result = AttachmentExternalizer(store).externalize(form, fields, {'Documents': inline}, 'sid')

        assert isinstance(result['Documents'], dict)
        assert result['Documents']['fileId']

    def test_one_folder_per_submission(self, store, form, fields):
        data = {
            'sig': PNG_DATA_URI,
            'docs': [{'name': 'a.txt', 'data': 'data:text/plain;base64,YQ=='}],
        }
        externalizer = AttachmentExternalizer(store)

        first = externalizer.externalize(form, fields, data, 'sub-1')
        second = externalizer.externalize(form, fields, data, 'sub-2')

        assert '/Response 1/' in first['sig']['fileId']
        assert '/Response 1/' in first['docs'][0]['fileId']
        assert '/Response 2/' in second['sig']['fileId']

    def test_no_folder_without_attachments(self, store, form, fields):
        AttachmentExternalizer(store).externalize(form, fields, {'name': 'Alice'}, 'sid')
        assert store.list_folders(f'forms/{form.id}') == []

    def test_disconnected_store_returns_data_unchanged(self, store, form, fields):
        form.external_storage_enabled = False
        data = {'sig': PNG_DATA_URI}

        result = AttachmentExternalizer(store).externalize(form, fields, data, 'sid')
        assert result == data
        assert result is not data

    def test_failure_keeps_original_value(self, store, form, fields, caplog):
        broken = 'data:image/png;base64,@@not-base64@@'
        inline = {'name': 'a.txt', 'data': 'data:text/plain;base64,YQ=='}

        result = AttachmentExternalizer(store).externalize(
            form, fields, {'sig': broken, 'docs': [inline]}, 'sid'
        )

        assert result['sig'] == broken
        assert result['docs'][0]['fileId']
        assert 'Externalization failed' in caplog.text

    def test_store_failure_keeps_original_value(self, form, fields, mocker):
        store = DjangoStorageBlobStore(storage=InMemoryStorage())
        mocker.patch.object(store, 'upload', side_effect=OSError('quota exceeded'))

        result = AttachmentExternalizer(store).externalize(form, fields, {'sig': PNG_DATA_URI}, 'sid')
        assert result['sig'] == PNG_DATA_URI


@pytest.mark.django_db
class TestExternalizationOnSubmit:

    def test_submission_stores_descriptors(self, attachment_form):
        submission = submit_form(attachment_form.form.id, {
            str(attachment_form.signature.id): PNG_DATA_URI,
            str(attachment_form.documents.id): [{'url': 'https://cdn.example.com/a.pdf'}],
        })
        submission.refresh_from_db()

        descriptor = submission.data[str(attachment_form.signature.id)]
        assert descriptor['type'] == 'secure_file'
        assert f'signature_{submission.id}_' in descriptor['fileId']
        assert default_storage.exists(descriptor['fileId'])
        assert submission.data[str(attachment_form.documents.id)] == [{'url': 'https://cdn.example.com/a.pdf'}]

    def test_failed_externalization_still_persists(self, attachment_form):
        broken = 'data:image/png;base64,@@@'
        submission = submit_form(attachment_form.form.id, {str(attachment_form.signature.id): broken})

        submission.refresh_from_db()
        assert submission.data[str(attachment_form.signature.id)] == broken


# ============================================================================
# Dispatch
# ============================================================================

@pytest.mark.django_db
class TestDispatch:

    def test_owner_is_notified_after_commit(self, form, owner, django_capture_on_commit_callbacks):
        notifier = CacheRealtimeNotifier()

        with django_capture_on_commit_callbacks(execute=False) as callbacks:
            submission = submit_form(form.id, {'Name': 'Alice'})
        assert notifier.pending(owner.id) == []

        for callback in callbacks:
            callback()

        [payload] = notifier.pending(owner.id)
        assert payload['type'] == FORM_SUBMISSION
        assert payload['data'] == {
            'formId': str(form.id),
            'formTitle': 'Survey',
            'formSlug': 'survey',
            'submissionId': str(submission.id),
            'responseCount': 1,
        }

    def test_webhook_is_signed_and_carries_stored_data(
        self, attachment_form, django_capture_on_commit_callbacks, mocker
    ):
        form = enable_webhook(attachment_form.form)
        post = mocker.patch('requests.Session.post', return_value=mocker.Mock(status_code=200))

        with django_capture_on_commit_callbacks(execute=True):
            submission = submit_form(form.id, {str(attachment_form.signature.id): PNG_DATA_URI})

        post.assert_called_once()
        kwargs = post.call_args.kwargs
        body = json.loads(kwargs['data'])

        assert post.call_args.args[0] == 'https://hooks.example.com/forms'
        assert kwargs['allow_redirects'] is False
        assert body['event'] == 'form.submission.created'
        assert body['formId'] == str(form.id)
        assert body['formSlug'] == 'claims'
        assert body['submissionId'] == str(submission.id)
        assert body['data'][str(attachment_form.signature.id)]['type'] == 'secure_file'
        assert verify_signature(kwargs['data'], kwargs['headers'][SIGNATURE_HEADER], 's3cret')

        delivery = WebhookDelivery.objects.get()
        assert delivery.success is True
        assert delivery.submission_id == str(submission.id)

    def test_no_webhook_when_disabled(self, form, django_capture_on_commit_callbacks, mocker):
        post = mocker.patch('requests.Session.post')

        with django_capture_on_commit_callbacks(execute=True):
            submit_form(form.id, {'Name': 'Alice'})

        post.assert_not_called()

    def test_webhook_failure_does_not_affect_submission(
        self, form, django_capture_on_commit_callbacks, mocker
    ):
        enable_webhook(form)
        mocker.patch('requests.Session.post', side_effect=requests.ConnectionError('refused'))

        with django_capture_on_commit_callbacks(execute=True):
            submission = submit_form(form.id, {'Name': 'Alice'})

        assert Submission.objects.filter(pk=submission.pk).exists()
        delivery = WebhookDelivery.objects.get()
        assert delivery.success is False
        assert 'refused' in delivery.error

    def test_enqueue_failure_is_logged(self, form, django_capture_on_commit_callbacks, mocker, caplog):
        from submissions.tasks import notify_form_owner

        mocker.patch.object(notify_form_owner, 'delay', side_effect=RuntimeError('broker down'))

        with django_capture_on_commit_callbacks(execute=True):
            submission = submit_form(form.id, {'Name': 'Alice'})

        assert Submission.objects.filter(pk=submission.pk).exists()
        assert 'broker down' in caplog.text

    def test_rejected_submission_dispatches_nothing(self, car_form, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks() as callbacks:
            with pytest.raises(SubmissionValidationError):
                submit_form(car_form.form.id, {'hasCar': 'yes'})

        assert callbacks == []


class TestRealtimeNotifier:

    def test_inbox(self):
        notifier = CacheRealtimeNotifier()
        notifier.notify(7, {'n': 1})
        notifier.notify(7, {'n': 2})

        assert notifier.pending(7) == [{'n': 1}, {'n': 2}]
        assert notifier.drain(7) == [{'n': 1}, {'n': 2}]
        assert notifier.pending(7) == []

    def test_inbox_is_bounded(self):
        notifier = CacheRealtimeNotifier()
        for n in range(CacheRealtimeNotifier.INBOX_SIZE + 5):
            notifier.notify(1, {'n': n})

        inbox = notifier.pending(1)
        assert len(inbox) == CacheRealtimeNotifier.INBOX_SIZE
        assert inbox[-1] == {'n': CacheRealtimeNotifier.INBOX_SIZE + 4}

    def test_concurrent_writers_do_not_overwrite(self):
        first, second = CacheRealtimeNotifier(), CacheRealtimeNotifier()
        first.notify(7, {'n': 1})
        second.notify(7, {'n': 2})
        first.notify(7, {'n': 3})

        assert second.pending(7) == [{'n': 1}, {'n': 2}, {'n': 3}]

    def test_notification_arriving_during_drain_stays_pending(self):

        class WriterDuringDrain(CacheRealtimeNotifier):
            def _read(self, user_id):
                result = super()._read(user_id)
                CacheRealtimeNotifier().notify(user_id, {'n': 'late'})
                return result

        CacheRealtimeNotifier().notify(7, {'n': 1})

        assert WriterDuringDrain().drain(7) == [{'n': 1}]
        assert CacheRealtimeNotifier().pending(7) == [{'n': 'late'}]

    def test_notification_payload(self):
        form = SimpleNamespace(id='f1', title='Survey', slug='survey', locale='')
        payload = build_submission_notification(form, 's1', 3)

        assert payload['type'] == FORM_SUBMISSION
        assert 'Survey' in payload['message']
        assert payload['data']['responseCount'] == 3

    def test_notification_in_form_locale(self, form):
        form.locale = 'ar'

        payload = build_submission_notification(form, 's1', 1)

        assert payload['title'] == 'استجابة نموذج جديدة'
        assert payload['message'] == 'تم استلام استجابة جديدة على النموذج "Survey"'


# ============================================================================
# Preview & deletion
# ============================================================================

@pytest.mark.django_db
class TestPreview:

    def test_preview_has_no_side_effects(self, car_form, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks() as callbacks:
            result = preview_submission(car_form.form, {'hasCar': 'yes'})

        assert callbacks == []
        assert not Submission.objects.exists()
        assert result['isValid'] is False
        assert result['visible'] == [str(car_form.has_car.id), str(car_form.car_model.id)]
        assert result['required'] == [str(car_form.has_car.id), str(car_form.car_model.id)]
        assert str(car_form.car_model.id) in result['errors']
        assert result['errorMessages']

    def test_preview_reports_hidden_fields(self, car_form):
        result = preview_submission(car_form.form, {'hasCar': 'no'})

        assert result['isValid'] is True
        assert result['hidden'] == [str(car_form.car_model.id)]
        assert result['skipped'] == []

    def test_preview_ignores_eligibility(self, car_form):
        car_form.form.status = FormStatus.DRAFT
        car_form.form.save()

        assert preview_submission(car_form.form, {'hasCar': 'no'})['isValid'] is True


@pytest.mark.django_db
class TestDeleteSubmission:

    def test_delete_decrements_counter(self, form, owner):
        submission = submit_form(form.id, {'Name': 'Alice'})
        submit_form(form.id, {'Name': 'Bob'})

        delete_submission(owner, form.id, submission.id)

        form.refresh_from_db()
        assert form.submission_count == 1
        assert not Submission.objects.filter(pk=submission.pk).exists()

    def test_delete_dispatches_deleted_event(self, form, owner, django_capture_on_commit_callbacks, mocker):
        submission = submit_form(form.id, {'Name': 'Alice'})
        enable_webhook(form)
        post = mocker.patch('requests.Session.post', return_value=mocker.Mock(status_code=204))

        with django_capture_on_commit_callbacks(execute=True):
            delete_submission(owner, form.id, submission.id)

        body = json.loads(post.call_args.kwargs['data'])
        assert body['event'] == 'form.submission.deleted'
        assert body['submissionId'] == str(submission.id)
        assert 'data' not in body

    def test_only_owner_can_delete(self, form, respondents):
        submission = submit_form(form.id, {'Name': 'Alice'})

        with pytest.raises(FormNotFoundError):
            delete_submission(respondents[0], form.id, submission.id)

    def test_unknown_submission(self, form, owner):
        with pytest.raises(SubmissionNotFoundError):
            delete_submission(owner, form.id, uuid.uuid4())


# ============================================================================
# API
# ============================================================================

@pytest.mark.django_db
class TestSubmissionAPI:

    @pytest.fixture
    def client(self):
        return APIClient()

    def test_submit(self, client, form):
        response = client.post(
            f'/api/submissions/forms/{form.id}/submit/',
            {'data': {'Name': 'Alice'}, 'time_to_complete': 12},
            format='json',
            HTTP_USER_AGENT='pytest-client',
        )

        assert response.status_code == 201
        assert response.data['data'] == {'Name': 'Alice'}
        assert 'ip_address' not in response.data

        submission = Submission.objects.get(pk=response.data['id'])
        assert submission.user is None
        assert submission.user_agent == 'pytest-client'
        assert submission.time_to_complete == 12

    def test_submit_forwarded_ip(self, client, form):
        response = client.post(
            f'/api/submissions/forms/{form.id}/submit/',
            {'data': {}}, format='json',
            HTTP_X_FORWARDED_FOR='198.51.100.7, 10.0.0.1',
        )
        assert Submission.objects.get(pk=response.data['id']).ip_address == '198.51.100.7'

    @pytest.mark.parametrize('forwarded', ['foo', 'unknown, 198.51.100.7', '999.1.1.1'])
    def test_submit_garbage_forwarded_ip_falls_back(self, client, form, forwarded):
        response = client.post(
            f'/api/submissions/forms/{form.id}/submit/',
            {'data': {}}, format='json',
            HTTP_X_FORWARDED_FOR=forwarded, REMOTE_ADDR='203.0.113.9',
        )

        assert response.status_code == 201
        assert Submission.objects.get(pk=response.data['id']).ip_address == '203.0.113.9'

    def test_submit_validation_error(self, client, car_form):
        response = client.post(
            f'/api/submissions/forms/{car_form.form.id}/submit/', {'data': {'hasCar': 'yes'}}, format='json'
        )

        assert response.status_code == 400
        assert response.data['message'] == 'Form validation failed'
        assert str(car_form.car_model.id) in response.data['errors']
        assert len(response.data['errorMessages']) == 1

    def test_submit_rejected(self, client, form):
        form.status = FormStatus.CLOSED
        form.save()

        response = client.post(f'/api/submissions/forms/{form.id}/submit/', {'data': {}}, format='json')

        assert response.status_code == 400
        assert response.data['code'] == EligibilityError.NOT_PUBLISHED

    def test_submit_unknown_form(self, client, db):
        response = client.post(f'/api/submissions/forms/{uuid.uuid4()}/submit/', {'data': {}}, format='json')
        assert response.status_code == 404

    def test_submit_requires_data_object(self, client, form):
        response = client.post(f'/api/submissions/forms/{form.id}/submit/', {'data': 'x'}, format='json')
        assert response.status_code == 400

    def test_authenticated_submit_records_user(self, client, form, respondents):
        client.force_authenticate(respondents[0])
        response = client.post(f'/api/submissions/forms/{form.id}/submit/', {'data': {}}, format='json')

        assert Submission.objects.get(pk=response.data['id']).user == respondents[0]

    def test_preview(self, client, car_form):
        response = client.post(
            f'/api/submissions/forms/{car_form.form.id}/preview/', {'data': {'hasCar': 'no'}}, format='json'
        )

        assert response.status_code == 200
        assert response.data['isValid'] is True
        assert response.data['hidden'] == [str(car_form.car_model.id)]

    def test_list_for_owner(self, client, form, owner):
        for name in ('a', 'b', 'c'):
            submit_form(form.id, {'Name': name})
        client.force_authenticate(owner)

        response = client.get(f'/api/submissions/forms/{form.id}/?limit=2')

        assert response.status_code == 200
        assert len(response.data['submissions']) == 2
        assert response.data['pagination'] == {'total': 3, 'limit': 2, 'offset': 0, 'hasMore': True}

    def test_list_requires_owner(self, client, form, respondents):
        assert client.get(f'/api/submissions/forms/{form.id}/').status_code in (401, 403)

        client.force_authenticate(respondents[0])
        assert client.get(f'/api/submissions/forms/{form.id}/').status_code == 404

    def test_delete(self, client, form, owner):
        submission = submit_form(form.id, {'Name': 'Alice'})
        client.force_authenticate(owner)

        response = client.delete(f'/api/submissions/forms/{form.id}/{submission.id}/')
        assert response.status_code == 204

        response = client.delete(f'/api/submissions/forms/{form.id}/{submission.id}/')
        assert response.status_code == 404
