"""
Webhook Delivery Log

Append-only record of every outbound webhook attempt. Delivery is
at-most-once and best-effort; the log is how failures are counted.
"""

from django.db import models


class WebhookEvent(models.TextChoices):
    SUBMISSION_CREATED = 'form.submission.created', 'Submission created'
    SUBMISSION_UPDATED = 'form.submission.updated', 'Submission updated'
    SUBMISSION_DELETED = 'form.submission.deleted', 'Submission deleted'


class WebhookDeliveryQuerySet(models.QuerySet):

    def failed(self):
        return self.filter(success=False)

    def for_form(self, form):
        return self.filter(form=form)


class WebhookDelivery(models.Model):
    """One outbound webhook attempt"""

    form = models.ForeignKey(
        'formbuilder.Form',
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='webhook_deliveries'
    )
    event = models.CharField(max_length=50, choices=WebhookEvent.choices, db_index=True)
    url = models.URLField(max_length=1000)
    submission_id = models.CharField(max_length=64, blank=True, db_index=True)

    # Outcome
    success = models.BooleanField(default=False, db_index=True)
    status_code = models.PositiveSmallIntegerField(null=True, blank=True)
    error = models.TextField(blank=True)
    duration_ms = models.PositiveIntegerField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    objects = WebhookDeliveryQuerySet.as_manager()

    class Meta:
        db_table = 'webhook_deliveries'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['form', '-created_at']),
            models.Index(fields=['success', '-created_at']),
        ]

    def __str__(self):
        outcome = 'delivered' if self.success else 'failed'
        return f"{self.event} -> {self.url} ({outcome})"
