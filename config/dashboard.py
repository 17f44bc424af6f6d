"""
Admin Dashboard Configuration

Custom dashboard for the Unfold admin interface.
"""

from datetime import timedelta

from django.db.models import Sum
from django.utils import timezone


def dashboard_callback(request, context):
    """
    Dashboard callback for Unfold admin.
    Returns form, submission and webhook delivery statistics.
    """
    from formbuilder.models import Form, FormStatus
    from submissions.models import Submission
    from webhooks.models import WebhookDelivery

    day_ago = timezone.now() - timedelta(days=1)

    # Form statistics
    total_forms = Form.objects.count()
    published_forms = Form.objects.filter(status=FormStatus.PUBLISHED).count()
    draft_forms = Form.objects.filter(status=FormStatus.DRAFT).count()
    counted_submissions = Form.objects.aggregate(total=Sum('submission_count'))['total'] or 0

    # Submission statistics
    total_submissions = Submission.objects.count()
    submissions_today = Submission.objects.filter(completed_at__gte=day_ago).count()

    # Webhook statistics
    deliveries_today = WebhookDelivery.objects.filter(created_at__gte=day_ago)
    failed_deliveries_today = deliveries_today.filter(success=False).count()

    # Recent activity
    recent_forms = Form.objects.order_by('-created_at')[:5]
    recent_submissions = Submission.objects.select_related('form').order_by('-completed_at')[:5]
    recent_failures = WebhookDelivery.objects.failed().select_related('form')[:10]

    context.update({
        "total_forms": total_forms,
        "published_forms": published_forms,
        "draft_forms": draft_forms,
        "total_submissions": total_submissions,
        "submissions_today": submissions_today,
        # Counter drift shows up as a difference between these two
        "counted_submissions": counted_submissions,
        "deliveries_today": deliveries_today.count(),
        "failed_deliveries_today": failed_deliveries_today,
        "recent_forms": recent_forms,
        "recent_submissions": recent_submissions,
        "recent_failures": recent_failures,
    })

    return context
