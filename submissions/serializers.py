"""
Submission API Serializers
"""

from rest_framework import serializers

from .models import Submission


class SubmitFormSerializer(serializers.Serializer):
    """Incoming submission payload"""
    data = serializers.DictField(
        help_text='Answers keyed by field id (or label)'
    )
    time_to_complete = serializers.IntegerField(
        required=False,
        allow_null=True,
        min_value=0,
        help_text='Seconds spent filling the form, as measured by the client'
    )


class PreviewSerializer(serializers.Serializer):
    data = serializers.DictField(required=False, default=dict)


class SubmissionSerializer(serializers.ModelSerializer):
    """Stored submission"""

    form_id = serializers.UUIDField(source='form.id', read_only=True)
    user_email = serializers.EmailField(source='user.email', read_only=True, default=None)

    class Meta:
        model = Submission
        fields = [
            'id', 'form_id', 'user', 'user_email', 'data',
            'ip_address', 'user_agent', 'time_to_complete', 'completed_at'
        ]
        read_only_fields = fields


class PublicSubmissionSerializer(serializers.ModelSerializer):
    """What the submitter gets back: no respondent metadata"""

    class Meta:
        model = Submission
        fields = ['id', 'data', 'completed_at']
        read_only_fields = fields
