"""
Form Builder Models

Declarative description of a form: ordered fields (type, required flag,
validation rules, conditional logic, file constraints) optionally grouped
into ordered steps, plus the form-level acceptance policy.
"""

import base64
import uuid

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.db import models
from django.db.models import F


class TimeStampedModel(models.Model):
    """Abstract base model with timestamp fields"""
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class FormStatus(models.TextChoices):
    DRAFT = 'DRAFT', 'Draft'
    PUBLISHED = 'PUBLISHED', 'Published'
    CLOSED = 'CLOSED', 'Closed'
    ARCHIVED = 'ARCHIVED', 'Archived'


class FieldType(models.TextChoices):
    TEXT = 'TEXT', 'Text'
    TEXTAREA = 'TEXTAREA', 'Text Area'
    NUMBER = 'NUMBER', 'Number'
    EMAIL = 'EMAIL', 'Email'
    PHONE = 'PHONE', 'Phone'
    DATE = 'DATE', 'Date'
    TIME = 'TIME', 'Time'
    DATETIME = 'DATETIME', 'Date & Time'
    SELECT = 'SELECT', 'Select'
    RADIO = 'RADIO', 'Radio'
    CHECKBOX = 'CHECKBOX', 'Checkbox'
    FILE = 'FILE', 'File Upload'
    RATING = 'RATING', 'Rating'
    SCALE = 'SCALE', 'Scale'
    TOGGLE = 'TOGGLE', 'Toggle'
    MATRIX = 'MATRIX', 'Matrix'
    SIGNATURE = 'SIGNATURE', 'Signature'


# Field types whose values are externalized to the blob store
ATTACHMENT_FIELD_TYPES = (FieldType.FILE, FieldType.SIGNATURE)


class FormQuerySet(models.QuerySet):

    def with_fields(self, form_id):
        """
        Load a form together with its ordered fields and steps.

        Raises Form.DoesNotExist when the id is unknown.
        """
        return self.select_related('owner').prefetch_related(
            models.Prefetch('fields', queryset=Field.objects.order_by('order')),
            models.Prefetch('steps', queryset=Step.objects.order_by('order')),
        ).get(pk=form_id)


class Form(TimeStampedModel):
    """
    Owner-authored form with its acceptance policy.

    Submissions are only accepted while the form is PUBLISHED, inside its
    time window and under its quota. Status transitions are owner-driven
    and unordered.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='forms'
    )
    title = models.CharField(max_length=500)
    description = models.TextField(blank=True)
    slug = models.SlugField(max_length=200, unique=True)
    status = models.CharField(
        max_length=20,
        choices=FormStatus.choices,
        default=FormStatus.DRAFT,
        db_index=True
    )

    # Acceptance window
    opens_at = models.DateTimeField(null=True, blank=True)
    closes_at = models.DateTimeField(null=True, blank=True)

    # Submission policy
    requires_authentication = models.BooleanField(default=False)
    allow_multiple_submissions = models.BooleanField(default=True)
    one_response_per_user = models.BooleanField(default=False)
    max_submissions = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text='Cap on total accepted submissions'
    )
    is_multi_step = models.BooleanField(default=False)
    locale = models.CharField(
        max_length=10,
        blank=True,
        help_text='Language of user-facing validation messages'
    )

    # Attachments are externalized only when storage is connected
    external_storage_enabled = models.BooleanField(default=False)

    # Webhook configuration
    webhook_enabled = models.BooleanField(default=False)
    webhook_url = models.URLField(max_length=1000, blank=True)
    webhook_secret_encrypted = models.TextField(blank=True)

    # Counters
    view_count = models.PositiveIntegerField(default=0)
    submission_count = models.PositiveIntegerField(default=0)

    objects = FormQuerySet.as_manager()

    class Meta:
        db_table = 'forms'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner', 'status']),
        ]

    def __str__(self):
        return f"{self.title} ({self.status})"

    @property
    def webhook_secret(self):
        return self._decrypt(self.webhook_secret_encrypted) or None

    @webhook_secret.setter
    def webhook_secret(self, value):
        self.webhook_secret_encrypted = self._encrypt(value) if value else ''

    def increment_submission_count(self):
        """Atomically bump the submission counter"""
        Form.objects.filter(pk=self.pk).update(submission_count=F('submission_count') + 1)
        self.refresh_from_db(fields=['submission_count'])

    def decrement_submission_count(self):
        Form.objects.filter(pk=self.pk, submission_count__gt=0).update(
            submission_count=F('submission_count') - 1
        )
        self.refresh_from_db(fields=['submission_count'])

    def _encrypt(self, value):
        """Encrypt sensitive data"""
        fernet = Fernet(self._encryption_key())
        encrypted = fernet.encrypt(value.encode())
        return base64.b64encode(encrypted).decode()

    def _decrypt(self, encrypted_value):
        """Decrypt sensitive data"""
        if not encrypted_value:
            return ''

        fernet = Fernet(self._encryption_key())
        try:
            decrypted = fernet.decrypt(base64.b64decode(encrypted_value.encode()))
        except (InvalidToken, ValueError) as e:
            raise ValueError('Webhook secret could not be decrypted') from e
        return decrypted.decode()

    @staticmethod
    def _encryption_key():
        key = getattr(settings, 'FIELD_ENCRYPTION_KEY', None)
        if not key:
            raise ValueError('FIELD_ENCRYPTION_KEY not configured')
        return key.encode()


class Step(TimeStampedModel):
    """
    Ordered page of a multi-step form.
    Steps exist only when the form is multi-step.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    form = models.ForeignKey(
        Form,
        on_delete=models.CASCADE,
        related_name='steps'
    )
    title = models.CharField(max_length=500)
    description = models.TextField(blank=True)
    order = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'form_steps'
        ordering = ['form', 'order']
        indexes = [
            models.Index(fields=['form', 'order']),
        ]

    def __str__(self):
        return f"{self.form.title} - {self.title}"


class Field(TimeStampedModel):
    """
    One typed question of a form.

    validation_rules holds type-appropriate constraints
    (minLength, maxLength, min, max, pattern, email, phone, url, customMessage).

    conditional_logic holds the rule set deciding visibility:
    {
        "logic": "AND" | "OR",
        "rules": [
            {"fieldId": "<id>", "operator": "EQUALS", "value": "yes", "action": "SHOW"}
        ]
    }
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    form = models.ForeignKey(
        Form,
        on_delete=models.CASCADE,
        related_name='fields'
    )
    step = models.ForeignKey(
        Step,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='fields',
        help_text='Empty for single-page forms'
    )

    # Field definition
    label = models.CharField(max_length=500)
    description = models.TextField(blank=True)
    type = models.CharField(max_length=20, choices=FieldType.choices, db_index=True)
    placeholder = models.CharField(max_length=200, blank=True)
    order = models.PositiveIntegerField(default=0)
    required = models.BooleanField(default=False)
    options = models.JSONField(
        default=list,
        blank=True,
        help_text='Choices for SELECT/RADIO/CHECKBOX fields'
    )

    # Validation & logic
    validation_rules = models.JSONField(default=dict, blank=True)
    conditional_logic = models.JSONField(null=True, blank=True)

    # File constraints (FILE / SIGNATURE)
    allowed_file_types = models.JSONField(default=list, blank=True)
    max_file_size = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text='Maximum size in bytes'
    )
    max_files = models.PositiveIntegerField(null=True, blank=True)

    class Meta:
        db_table = 'form_fields'
        ordering = ['form', 'order']
        indexes = [
            models.Index(fields=['form', 'order']),
            models.Index(fields=['step', 'order']),
        ]

    def __str__(self):
        return f"{self.form.title} - {self.label}"

    @property
    def is_attachment(self):
        return self.type in ATTACHMENT_FIELD_TYPES
