"""
Form Builder API Views

Owner-scoped form management: CRUD, multi-step replacement and webhook
test calls. Forms of other owners are invisible (404).
"""

import logging

from rest_framework import viewsets, status
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from drf_spectacular.utils import extend_schema, extend_schema_view
from drf_spectacular.types import OpenApiTypes

from webhooks.dispatcher import WebhookDispatcher, is_safe_webhook_url
from .models import Form
from .serializers import (
    FormSerializer, StepSerializer, StepsReplaceSerializer, WebhookTestSerializer
)
from .services import get_form_steps, update_form_steps

logger = logging.getLogger(__name__)


@extend_schema_view(
    list=extend_schema(summary="List my forms", tags=['Forms']),
    create=extend_schema(summary="Create a form", tags=['Forms']),
    retrieve=extend_schema(summary="Get form details with ordered fields", tags=['Forms']),
    update=extend_schema(summary="Update form settings", tags=['Forms']),
    partial_update=extend_schema(summary="Partially update form settings", tags=['Forms']),
    destroy=extend_schema(summary="Delete form", tags=['Forms']),
)
class FormViewSet(viewsets.ModelViewSet):
    """
    Form CRUD for the owner

    Endpoints:
    - GET /forms/ - List own forms
    - POST /forms/ - Create form
    - GET /forms/{id}/ - Form detail
    - PATCH /forms/{id}/ - Update form settings
    - DELETE /forms/{id}/ - Delete form
    - GET /forms/{id}/steps/ - Ordered steps with fields
    - PUT /forms/{id}/steps/ - Replace all steps and fields
    - POST /forms/{id}/webhook/test/ - Send a signed test payload
    """

    permission_classes = [IsAuthenticated]
    serializer_class = FormSerializer

    def get_queryset(self):
        return Form.objects.filter(owner=self.request.user).prefetch_related(
            'fields'
        ).order_by('-created_at')

    @extend_schema(
        summary="Get form steps",
        responses={200: StepSerializer(many=True)},
        tags=['Forms'],
    )
    @action(detail=True, methods=['get'])
    def steps(self, request, pk=None):
        form = self.get_object()
        return Response(StepSerializer(get_form_steps(form), many=True).data)

    @extend_schema(
        summary="Replace form steps",
        description="Delete every step and field of the form and recreate them in the given order. "
                    "Field ids are regenerated; an empty list turns the form back into a single page.",
        request=StepsReplaceSerializer,
        responses={200: StepSerializer(many=True)},
        tags=['Forms'],
    )
    @steps.mapping.put
    def replace_steps(self, request, pk=None):
        form = self.get_object()
        serializer = StepsReplaceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        steps = update_form_steps(form, serializer.validated_data['steps'])
        return Response(StepSerializer(steps, many=True).data)

    @extend_schema(
        summary="Test webhook",
        description="POST a signed test payload to the form's webhook URL (or the given override).",
        request=WebhookTestSerializer,
        responses={200: OpenApiTypes.OBJECT, 400: OpenApiTypes.OBJECT},
        tags=['Forms'],
    )
    @action(detail=True, methods=['post'], url_path='webhook/test')
    def webhook_test(self, request, pk=None):
        form = self.get_object()
        serializer = WebhookTestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        url = serializer.validated_data.get('url') or form.webhook_url
        if 'secret' in serializer.validated_data:
            secret = serializer.validated_data['secret']
        else:
            try:
                secret = form.webhook_secret
            except ValueError as e:
                logger.error(f"Webhook secret for form {form.id} is unreadable: {e}")
                return Response(
                    {'success': False, 'message': 'Stored webhook secret could not be decrypted; set it again'},
                    status=status.HTTP_400_BAD_REQUEST
                )

        if not url:
            return Response(
                {'success': False, 'message': 'Webhook URL is not configured'},
                status=status.HTTP_400_BAD_REQUEST
            )
        if not is_safe_webhook_url(url):
            return Response(
                {'success': False, 'message': 'Webhook URL targets a private or invalid address'},
                status=status.HTTP_400_BAD_REQUEST
            )

        delivered = WebhookDispatcher().test_webhook(url, secret or None, form=form)
        return Response({
            'success': delivered,
            'message': 'Webhook delivered' if delivered else 'Webhook delivery failed',
        })
