"""
Webhook Admin Configuration

Read-only delivery log.
"""

from django.contrib import admin
from unfold.admin import ModelAdmin
from unfold.decorators import display

from .models import WebhookDelivery


@admin.register(WebhookDelivery)
class WebhookDeliveryAdmin(ModelAdmin):
    """Admin for WebhookDelivery model (read-only)"""
    list_display = [
        'event', 'form', 'url', 'outcome_badge', 'status_code',
        'duration_ms', 'created_at'
    ]
    list_filter = ['success', 'event', 'created_at']
    search_fields = ['url', 'submission_id', 'form__title', 'error']
    readonly_fields = [
        'form', 'event', 'url', 'submission_id', 'success',
        'status_code', 'error', 'duration_ms', 'created_at'
    ]
    date_hierarchy = 'created_at'

    @display(description="Outcome", label={'delivered': 'success', 'failed': 'danger'})
    def outcome_badge(self, obj):
        return 'delivered' if obj.success else 'failed'

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
