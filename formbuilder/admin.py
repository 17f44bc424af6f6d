"""
Form Builder Admin Configuration

Forms with their steps and fields, status badges and quick status actions.
"""

from django.contrib import admin
from django.utils.html import format_html
from unfold.admin import ModelAdmin, TabularInline, StackedInline
from unfold.decorators import display

from .models import Field, Form, FormStatus, Step


class StepInline(StackedInline):
    """Inline for form steps"""
    model = Step
    extra = 0
    fields = ['title', 'description', 'order']
    ordering = ['order']


class FieldInline(TabularInline):
    """Inline for form fields"""
    model = Field
    extra = 0
    fields = ['label', 'type', 'step', 'order', 'required']
    ordering = ['order']


@admin.register(Form)
class FormAdmin(ModelAdmin):
    """Admin for Form model"""
    list_display = [
        'title', 'status_badge', 'owner', 'is_multi_step',
        'submission_count', 'webhook_enabled', 'created_at'
    ]
    list_filter = [
        'status', 'is_multi_step', 'requires_authentication',
        'one_response_per_user', 'webhook_enabled', 'created_at'
    ]
    search_fields = ['title', 'slug', 'description', 'owner__username']
    prepopulated_fields = {'slug': ('title',)}
    readonly_fields = [
        'view_count', 'submission_count', 'is_multi_step',
        'created_at', 'updated_at', 'submission_stats'
    ]
    exclude = ['webhook_secret_encrypted']

    fieldsets = (
        ('Basic Information', {
            'fields': ('owner', 'title', 'slug', 'description', 'status', 'locale')
        }),
        ('Acceptance Policy', {
            'fields': (
                'opens_at', 'closes_at', 'requires_authentication',
                'allow_multiple_submissions', 'one_response_per_user',
                'max_submissions'
            )
        }),
        ('Integrations', {
            'fields': ('external_storage_enabled', 'webhook_enabled', 'webhook_url'),
            'classes': ['collapse']
        }),
        ('Statistics', {
            'fields': ('is_multi_step', 'view_count', 'submission_count', 'submission_stats'),
            'classes': ['collapse']
        }),
        ('Audit', {
            'fields': ('created_at', 'updated_at'),
            'classes': ['collapse']
        }),
    )

    inlines = [StepInline, FieldInline]

    actions = ['publish_forms', 'close_forms', 'archive_forms']

    @display(
        description="Status",
        label={
            FormStatus.DRAFT: 'warning',
            FormStatus.PUBLISHED: 'success',
            FormStatus.CLOSED: 'info',
            FormStatus.ARCHIVED: 'danger',
        },
    )
    def status_badge(self, obj):
        return obj.status, obj.get_status_display()

    def submission_stats(self, obj):
        stored = obj.submissions.count()
        cap = obj.max_submissions or '-'
        return format_html(
            '<strong>Counter:</strong> {} | <strong>Stored:</strong> {} | <strong>Cap:</strong> {}',
            obj.submission_count, stored, cap
        )
    submission_stats.short_description = 'Submission Statistics'

    @admin.action(description='Publish selected forms')
    def publish_forms(self, request, queryset):
        updated = queryset.update(status=FormStatus.PUBLISHED)
        self.message_user(request, f'{updated} forms published successfully.')

    @admin.action(description='Close selected forms')
    def close_forms(self, request, queryset):
        updated = queryset.update(status=FormStatus.CLOSED)
        self.message_user(request, f'{updated} forms closed.')

    @admin.action(description='Archive selected forms')
    def archive_forms(self, request, queryset):
        updated = queryset.update(status=FormStatus.ARCHIVED)
        self.message_user(request, f'{updated} forms archived.')


@admin.register(Step)
class StepAdmin(ModelAdmin):
    """Admin for Step model"""
    list_display = ['title', 'form', 'order', 'field_count']
    search_fields = ['title', 'description', 'form__title']
    readonly_fields = ['created_at', 'updated_at']

    @display(description="Fields")
    def field_count(self, obj):
        return obj.fields.count()


@admin.register(Field)
class FieldAdmin(ModelAdmin):
    """Admin for Field model"""
    list_display = ['label', 'type_badge', 'form', 'step', 'order', 'required', 'has_logic']
    list_filter = ['type', 'required', 'form__status']
    search_fields = ['label', 'description', 'form__title']
    readonly_fields = ['created_at', 'updated_at']

    fieldsets = (
        ('Basic Information', {
            'fields': ('form', 'step', 'label', 'description', 'type', 'placeholder', 'order', 'options')
        }),
        ('Validation', {
            'fields': ('required', 'validation_rules')
        }),
        ('Conditional Logic', {
            'fields': ('conditional_logic',),
            'description': 'Rule set in JSON format: {"logic": "AND", "rules": [...]}'
        }),
        ('File Constraints', {
            'fields': ('allowed_file_types', 'max_file_size', 'max_files'),
            'classes': ['collapse']
        }),
        ('Audit', {
            'fields': ('created_at', 'updated_at'),
            'classes': ['collapse']
        }),
    )

    @display(description="Type", label={'attachment': 'warning', 'input': 'info'})
    def type_badge(self, obj):
        return ('attachment' if obj.is_attachment else 'input'), obj.get_type_display()

    @display(description="Logic", boolean=True)
    def has_logic(self, obj):
        return bool(obj.conditional_logic)
