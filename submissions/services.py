"""
Submission Orchestrator

Sequences one form submission through its stages:

    RECEIVED -> ELIGIBILITY_CHECKED -> CLASSIFIED -> VALIDATED
             -> EXTERNALIZED -> PERSISTED -> DISPATCHED

The first failing stage raises a typed SubmissionError. Everything after
persistence runs as post-commit background tasks and can never undo the
stored submission.
"""

from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional
import logging
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.utils import timezone, translation
from django.utils.translation import gettext as _

from formbuilder.logic_engine import Classification, LogicEngine
from formbuilder.models import Form, FormStatus
from formbuilder.validation import resolve_answer, validate_submission
from webhooks.models import WebhookEvent
from .attachments import AttachmentExternalizer
from .exceptions import (
    EligibilityError, FormNotFoundError, SubmissionNotFoundError, SubmissionValidationError
)
from .models import Submission
from .notifications import build_submission_notification

logger = logging.getLogger(__name__)


class SubmissionStage(str, Enum):
    RECEIVED = 'received'
    ELIGIBILITY_CHECKED = 'eligibility_checked'
    CLASSIFIED = 'classified'
    VALIDATED = 'validated'
    EXTERNALIZED = 'externalized'
    PERSISTED = 'persisted'
    DISPATCHED = 'dispatched'


@dataclass
class SubmissionInput:
    data: Dict[str, Any]
    ip_address: Optional[str] = None
    user_agent: str = ''
    time_to_complete: Optional[int] = None


class SubmissionQuota:
    """
    Cap on accepted submissions per form.

    The count is read here and the row inserted later without a lock, so
    concurrent submissions can overshoot the cap by the number in flight.
    """

    def check(self, form: Form) -> None:
        if not form.max_submissions:
            return
        count = Submission.objects.count_for_form(form)
        if count >= form.max_submissions:
            raise EligibilityError(
                EligibilityError.QUOTA_REACHED,
                _('This form has reached the maximum number of submissions')
            )


def load_form(form_id) -> Form:
    """Form with ordered fields; FormNotFoundError for unknown or malformed ids"""
    try:
        return Form.objects.with_fields(form_id)
    except (Form.DoesNotExist, DjangoValidationError, ValueError):
        raise FormNotFoundError(f'Form {form_id} not found')


def answer_map(fields, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Answers as seen by conditional rules: every answered field is reachable
    by its id and by its label, whichever key the client used.
    """
    answers = dict(data)
    for form_field in fields:
        key, value = resolve_answer(data, form_field)
        if key is None:
            continue
        answers.setdefault(str(form_field.id), value)
        answers.setdefault(form_field.label, value)
    return answers


class SubmissionOrchestrator:
    """
    Usage:
        submission = SubmissionOrchestrator().submit(form_id, SubmissionInput(data={...}), user)
    """

    def __init__(self, quota: Optional[SubmissionQuota] = None, externalizer: Optional[AttachmentExternalizer] = None):
        self.quota = quota or SubmissionQuota()
        self._externalizer = externalizer
        self.stage = SubmissionStage.RECEIVED

    @property
    def externalizer(self) -> AttachmentExternalizer:
        if self._externalizer is None:
            self._externalizer = AttachmentExternalizer()
        return self._externalizer

    def submit(self, form_id, submission_input: SubmissionInput, user=None) -> Submission:
        self.stage = SubmissionStage.RECEIVED
        user = _authenticated(user)
        form = load_form(form_id)
        fields = list(form.fields.all())
        data = submission_input.data if isinstance(submission_input.data, dict) else {}

        with translation.override(form.locale or settings.FORMS_DEFAULT_LOCALE):
            try:
                self.check_eligibility(form, user)
            except EligibilityError as e:
                logger.info(f"Submission to form {form.id} rejected: {e.code}")
                raise
            self.stage = SubmissionStage.ELIGIBILITY_CHECKED

            classification = self.classify(fields, data)
            self.stage = SubmissionStage.CLASSIFIED

            self.validate(fields, classification, data)
            self.stage = SubmissionStage.VALIDATED

        submission_id = uuid.uuid4()
        stored_data = self.externalizer.externalize(form, fields, data, submission_id)
        self.stage = SubmissionStage.EXTERNALIZED

        submission = self.persist(form, submission_id, stored_data, submission_input, user)
        self.stage = SubmissionStage.PERSISTED

        logger.info(f"Accepted submission {submission.id} to form {form.id}")
        return submission

    def check_eligibility(self, form: Form, user=None) -> None:
        """Acceptance policy checks in order; the first failure wins"""
        if form.status != FormStatus.PUBLISHED:
            raise EligibilityError(
                EligibilityError.NOT_PUBLISHED,
                _('This form is not accepting submissions')
            )

        now = timezone.now()
        if form.opens_at and now < form.opens_at:
            raise EligibilityError(EligibilityError.NOT_OPEN_YET, _('This form is not open yet'))
        if form.closes_at and now > form.closes_at:
            raise EligibilityError(EligibilityError.CLOSED, _('This form is closed'))

        if form.requires_authentication and user is None:
            raise EligibilityError(
                EligibilityError.AUTHENTICATION_REQUIRED,
                _('Authentication is required to submit this form')
            )

        self.quota.check(form)

        # Anonymous submitters are never deduplicated
        if (not form.allow_multiple_submissions or form.one_response_per_user) and user is not None:
            if Submission.objects.find_by_user(form, user) is not None:
                raise EligibilityError(
                    EligibilityError.ALREADY_SUBMITTED,
                    _('You have already submitted this form')
                )

    def classify(self, fields, data: Dict[str, Any]) -> Classification:
        return LogicEngine(answer_map(fields, data)).classify(fields)

    def validate(self, fields, classification: Classification, data: Dict[str, Any]) -> None:
        visible_fields = [f for f in fields if str(f.id) in classification.visible]
        result = validate_submission(visible_fields, data, required_ids=classification.required)
        if not result.is_valid:
            raise SubmissionValidationError(result.errors, _('Form validation failed'))

    def persist(self, form: Form, submission_id, data, submission_input: SubmissionInput, user) -> Submission:
        with transaction.atomic():
            submission = Submission.objects.create(
                id=submission_id,
                form=form,
                user=user,
                data=data,
                ip_address=submission_input.ip_address or None,
                user_agent=submission_input.user_agent or '',
                time_to_complete=submission_input.time_to_complete,
                completed_at=timezone.now(),
            )
            form.increment_submission_count()

            transaction.on_commit(partial(self.dispatch, form, submission))
        return submission

    def dispatch(self, form: Form, submission: Submission) -> None:
        dispatch_created(form, submission)
        self.stage = SubmissionStage.DISPATCHED


# ============================================================================
# Dispatch
# ============================================================================

def dispatch_created(form: Form, submission: Submission) -> None:
    """Enqueue owner notification and the created webhook; never raises"""
    from submissions.tasks import notify_form_owner

    payload = build_submission_notification(form, submission.id, form.submission_count)
    _enqueue(notify_form_owner, form.owner_id, payload)

    if form.webhook_enabled and form.webhook_url:
        _enqueue_webhook(form, WebhookEvent.SUBMISSION_CREATED, submission.id, submission.data)


def _enqueue_webhook(form: Form, event, submission_id, data=None) -> None:
    from webhooks.tasks import deliver_webhook
    _enqueue(deliver_webhook, str(form.id), str(event), str(submission_id), data)


def _enqueue(task, *args) -> None:
    try:
        task.delay(*args)
    except Exception as e:
        logger.error(f"Failed to enqueue {task.name}: {e}")


# ============================================================================
# Public API
# ============================================================================

def submit_form(
    form_id,
    data: Dict[str, Any],
    user=None,
    ip_address: Optional[str] = None,
    user_agent: str = '',
    time_to_complete: Optional[int] = None,
) -> Submission:
    """Accept one submission, or raise a SubmissionError"""
    return SubmissionOrchestrator().submit(
        form_id,
        SubmissionInput(
            data=data,
            ip_address=ip_address,
            user_agent=user_agent,
            time_to_complete=time_to_complete,
        ),
        user,
    )


def preview_submission(form: Form, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Classify and validate answers without any side effect.

    No eligibility checks, no externalization, no persistence, no
    dispatch. Suitable for live client-side feedback.
    """
    fields = list(form.fields.all())
    data = data if isinstance(data, dict) else {}

    with translation.override(form.locale or settings.FORMS_DEFAULT_LOCALE):
        classification = LogicEngine(answer_map(fields, data)).classify(fields)
        visible_fields = [f for f in fields if str(f.id) in classification.visible]
        result = validate_submission(visible_fields, data, required_ids=classification.required)

    return {
        'visible': _ordered(fields, classification.visible),
        'required': _ordered(fields, classification.required),
        'skipped': _ordered(fields, classification.skipped),
        'hidden': _ordered(fields, classification.hidden),
        'isValid': result.is_valid,
        'errors': result.errors,
        'errorMessages': result.error_messages,
    }


def delete_submission(owner, form_id, submission_id) -> None:
    """
    Owner-initiated deletion: removes the row, decrements the form's
    counter and dispatches `form.submission.deleted`.
    """
    try:
        form = Form.objects.get(pk=form_id, owner=owner)
    except (Form.DoesNotExist, DjangoValidationError, ValueError):
        raise FormNotFoundError(f'Form {form_id} not found')

    try:
        submission = Submission.objects.get(pk=submission_id, form=form)
    except (Submission.DoesNotExist, DjangoValidationError, ValueError):
        raise SubmissionNotFoundError(f'Submission {submission_id} not found')

    with transaction.atomic():
        submission.delete()
        form.decrement_submission_count()

        if form.webhook_enabled and form.webhook_url:
            transaction.on_commit(
                partial(_enqueue_webhook, form, WebhookEvent.SUBMISSION_DELETED, submission_id)
            )

    logger.info(f"Deleted submission {submission_id} of form {form.id}")


def _ordered(fields, ids) -> List[str]:
    return [str(f.id) for f in fields if str(f.id) in ids]


def _authenticated(user):
    if user is None or not getattr(user, 'is_authenticated', False):
        return None
    return user
