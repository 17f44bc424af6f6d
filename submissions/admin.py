"""
Submission Admin Configuration

Read-only view of accepted submissions; deletion goes through the
service so the form counter and the deleted webhook stay in step.
"""

import json

from django.contrib import admin
from django.utils.html import format_html
from unfold.admin import ModelAdmin
from unfold.decorators import display

from .models import Submission
from .services import delete_submission


@admin.register(Submission)
class SubmissionAdmin(ModelAdmin):
    """Admin for Submission model"""
    list_display = [
        'id', 'form', 'respondent_display', 'answer_count',
        'time_to_complete', 'completed_at'
    ]
    list_filter = ['form__status', 'form', 'completed_at']
    search_fields = ['id', 'form__title', 'user__username', 'user__email', 'ip_address']
    readonly_fields = [
        'form', 'user', 'ip_address', 'user_agent', 'time_to_complete',
        'completed_at', 'data_display'
    ]
    exclude = ['data']
    date_hierarchy = 'completed_at'

    fieldsets = (
        ('Submission', {
            'fields': ('form', 'completed_at', 'time_to_complete', 'data_display')
        }),
        ('Respondent', {
            'fields': ('user', 'ip_address', 'user_agent'),
            'classes': ['collapse']
        }),
    )

    actions = ['delete_with_counter']

    @display(description="Respondent")
    def respondent_display(self, obj):
        if obj.user:
            return obj.user.get_username()
        return 'Anonymous'

    @display(description="Answers")
    def answer_count(self, obj):
        return len(obj.data or {})

    def data_display(self, obj):
        return format_html('<pre>{}</pre>', json.dumps(obj.data, indent=2, ensure_ascii=False))
    data_display.short_description = 'Answers'

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def delete_model(self, request, obj):
        delete_submission(obj.form.owner, obj.form_id, obj.pk)

    def get_actions(self, request):
        actions = super().get_actions(request)
        actions.pop('delete_selected', None)
        return actions

    @admin.action(description='Delete selected submissions')
    def delete_with_counter(self, request, queryset):
        count = 0
        for submission in queryset.select_related('form'):
            delete_submission(submission.form.owner, submission.form_id, submission.pk)
            count += 1
        self.message_user(request, f'{count} submissions deleted.')
