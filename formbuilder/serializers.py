"""
Form Builder API Serializers

Forms, fields and multi-step groupings, with authoring-time checks on
conditional logic and validation rules.
"""

from rest_framework import serializers

from webhooks.dispatcher import is_safe_webhook_url
from .logic_engine import validate_logic
from .models import Field, Form, Step
from .validation import compile_pattern, parse_validation_rules


class FormFieldSerializer(serializers.ModelSerializer):
    """Serializer for form fields"""

    class Meta:
        model = Field
        fields = [
            'id', 'step', 'label', 'description', 'type', 'placeholder',
            'order', 'required', 'options',
            'validation_rules', 'conditional_logic',
            'allowed_file_types', 'max_file_size', 'max_files',
        ]
        read_only_fields = ['id', 'step']

    def validate_conditional_logic(self, value):
        """Reject logic the evaluator would silently ignore"""
        errors = validate_logic(value)
        if errors:
            raise serializers.ValidationError(errors)
        return value

    def validate_validation_rules(self, value):
        rules = parse_validation_rules(value)
        if value and not rules:
            raise serializers.ValidationError("Validation rules must be a JSON object")

        if rules.get('pattern') and compile_pattern(rules['pattern']) is None:
            raise serializers.ValidationError(
                "Pattern is invalid or too complex to evaluate safely"
            )

        for low, high in (('minLength', 'maxLength'), ('min', 'max')):
            if rules.get(low) is not None and rules.get(high) is not None:
                try:
                    if float(rules[low]) > float(rules[high]):
                        raise serializers.ValidationError(
                            f"{low} must be less than or equal to {high}"
                        )
                except (TypeError, ValueError):
                    raise serializers.ValidationError(f"{low} and {high} must be numbers")
        return rules

    def validate_options(self, value):
        if not isinstance(value, list):
            raise serializers.ValidationError("Options must be a list")
        return value


class StepSerializer(serializers.ModelSerializer):
    """Serializer for form steps with their ordered fields"""

    fields = FormFieldSerializer(many=True, read_only=True)

    class Meta:
        model = Step
        fields = ['id', 'title', 'description', 'order', 'fields']
        read_only_fields = ['id']


class StepInputSerializer(serializers.Serializer):
    """One step of a full steps replacement"""
    title = serializers.CharField(max_length=500)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    order = serializers.IntegerField(required=False, min_value=0)
    fields = FormFieldSerializer(many=True, required=False)


class StepsReplaceSerializer(serializers.Serializer):
    steps = StepInputSerializer(many=True, allow_empty=True)

    def validate_steps(self, value):
        orders = [step['order'] for step in value if step.get('order') is not None]
        if len(orders) != len(set(orders)):
            raise serializers.ValidationError("Step order must be unique within a form")

        for step in value:
            field_orders = [f['order'] for f in step.get('fields', []) if 'order' in f]
            if len(field_orders) != len(set(field_orders)):
                raise serializers.ValidationError(
                    f"Field order must be unique within step '{step['title']}'"
                )
        return value


class FormSerializer(serializers.ModelSerializer):
    """Form with acceptance policy, webhook configuration and fields"""

    fields = FormFieldSerializer(many=True, read_only=True)
    webhook_secret = serializers.CharField(
        write_only=True,
        required=False,
        allow_blank=True,
        help_text='Shared secret used to sign webhook payloads'
    )
    has_webhook_secret = serializers.SerializerMethodField()

    class Meta:
        model = Form
        fields = [
            'id', 'title', 'description', 'slug', 'status',
            'opens_at', 'closes_at',
            'requires_authentication', 'allow_multiple_submissions',
            'one_response_per_user', 'max_submissions',
            'is_multi_step', 'locale', 'external_storage_enabled',
            'webhook_enabled', 'webhook_url', 'webhook_secret', 'has_webhook_secret',
            'view_count', 'submission_count', 'fields',
            'created_at', 'updated_at',
        ]
        read_only_fields = [
            'id', 'is_multi_step', 'view_count', 'submission_count',
            'created_at', 'updated_at',
        ]

    def get_has_webhook_secret(self, obj) -> bool:
        return bool(obj.webhook_secret_encrypted)

    def validate_webhook_url(self, value):
        if value and not is_safe_webhook_url(value):
            raise serializers.ValidationError("Webhook URL must be a public http(s) address")
        return value

    def validate(self, data):
        """Cross-field validation"""
        opens_at = data.get('opens_at', getattr(self.instance, 'opens_at', None))
        closes_at = data.get('closes_at', getattr(self.instance, 'closes_at', None))
        if opens_at and closes_at and opens_at > closes_at:
            raise serializers.ValidationError("opens_at must be before closes_at")

        webhook_enabled = data.get('webhook_enabled', getattr(self.instance, 'webhook_enabled', False))
        webhook_url = data.get('webhook_url', getattr(self.instance, 'webhook_url', ''))
        if webhook_enabled and not webhook_url:
            raise serializers.ValidationError("webhook_url is required when webhooks are enabled")

        return data

    def create(self, validated_data):
        secret = validated_data.pop('webhook_secret', None)
        form = Form(owner=self.context['request'].user, **validated_data)
        form.webhook_secret = secret
        form.save()
        return form

    def update(self, instance, validated_data):
        if 'webhook_secret' in validated_data:
            instance.webhook_secret = validated_data.pop('webhook_secret')
        return super().update(instance, validated_data)


class WebhookTestSerializer(serializers.Serializer):
    """Optional overrides for a webhook test call; defaults to the form's configuration"""
    url = serializers.URLField(required=False)
    secret = serializers.CharField(required=False, allow_blank=True)
