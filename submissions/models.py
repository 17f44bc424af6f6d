"""
Submission Models

One accepted response to a form. Immutable once stored; the only
mutation is owner-initiated deletion.
"""

import uuid

from django.conf import settings
from django.db import models
from django.utils import timezone


class SubmissionQuerySet(models.QuerySet):

    def count_for_form(self, form) -> int:
        return self.filter(form=form).count()

    def find_by_user(self, form, user):
        """Earliest submission of a user to a form, or None"""
        if user is None:
            return None
        return self.filter(form=form, user=user).order_by('completed_at').first()


class Submission(models.Model):
    """
    Accepted form response.

    `data` maps field id (or label, for answers keyed by label) to the
    submitted value; attachment values may have been replaced by
    externalized descriptors.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    form = models.ForeignKey(
        'formbuilder.Form',
        on_delete=models.CASCADE,
        related_name='submissions'
    )

    # Respondent info
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='form_submissions',
        help_text='Authenticated submitter (empty for anonymous)'
    )
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.TextField(blank=True)

    data = models.JSONField(default=dict)
    time_to_complete = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text='Client-reported seconds spent filling the form'
    )
    completed_at = models.DateTimeField(default=timezone.now, db_index=True)

    objects = SubmissionQuerySet.as_manager()

    class Meta:
        db_table = 'form_submissions'
        ordering = ['-completed_at']
        indexes = [
            models.Index(fields=['form', '-completed_at']),
            models.Index(fields=['form', 'user']),
        ]

    def __str__(self):
        return f"Submission {self.id} to {self.form.title}"
