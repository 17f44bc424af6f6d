"""
Submission API Views

Handles form submissions with:
- Eligibility gating (status, window, authentication, quota, duplicates)
- Conditional visibility and typed validation
- Side-effect-free preview for live client feedback
- Owner listing and deletion
"""

from django.core.exceptions import ValidationError
from django.core.validators import validate_ipv46_address
from rest_framework import viewsets, status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from drf_spectacular.utils import extend_schema, OpenApiParameter
from drf_spectacular.types import OpenApiTypes

from formbuilder.models import Form
from .exceptions import (
    EligibilityError, FormNotFoundError, SubmissionNotFoundError, SubmissionValidationError
)
from .models import Submission
from .serializers import (
    PreviewSerializer, PublicSubmissionSerializer, SubmissionSerializer, SubmitFormSerializer
)
from .services import delete_submission, load_form, preview_submission, submit_form

MAX_PAGE_SIZE = 100


def client_ip(request):
    """First X-Forwarded-For hop when it is an IP address, else REMOTE_ADDR"""
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR')
    candidates = [forwarded.split(',')[0].strip()] if forwarded else []
    candidates.append(request.META.get('REMOTE_ADDR'))
    for candidate in filter(None, candidates):
        try:
            validate_ipv46_address(candidate)
        except ValidationError:
            continue
        return candidate
    return None


class SubmissionViewSet(viewsets.ViewSet):
    """
    ViewSet for form submissions.

    Endpoints:
    - POST /submissions/forms/{form_id}/submit/ - Submit answers
    - POST /submissions/forms/{form_id}/preview/ - Classify and validate without saving
    - GET /submissions/forms/{form_id}/ - List submissions (owner)
    - DELETE /submissions/forms/{form_id}/{submission_id}/ - Delete submission (owner)
    """

    def get_permissions(self):
        # Public forms accept anonymous responses
        if self.action in ('submit', 'preview'):
            return [AllowAny()]
        return [IsAuthenticated()]

    @extend_schema(
        summary="Submit form",
        request=SubmitFormSerializer,
        responses={
            201: PublicSubmissionSerializer,
            400: {'description': 'Rejected (eligibility) or invalid answers (validation)'},
            404: {'description': 'Form not found'},
        },
        tags=['Submissions'],
    )
    def submit(self, request, form_id=None):
        serializer = SubmitFormSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({'errors': serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

        try:
            submission = submit_form(
                form_id,
                serializer.validated_data['data'],
                user=request.user,
                ip_address=client_ip(request),
                user_agent=request.META.get('HTTP_USER_AGENT', ''),
                time_to_complete=serializer.validated_data.get('time_to_complete'),
            )
        except FormNotFoundError:
            return Response({'message': 'Form not found'}, status=status.HTTP_404_NOT_FOUND)
        except EligibilityError as e:
            return Response(e.as_dict(), status=status.HTTP_400_BAD_REQUEST)
        except SubmissionValidationError as e:
            return Response(e.as_dict(), status=status.HTTP_400_BAD_REQUEST)

        return Response(PublicSubmissionSerializer(submission).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        summary="Preview submission",
        description="Compute visible / required / skipped fields and validation errors "
                    "for the given answers. Nothing is stored or dispatched.",
        request=PreviewSerializer,
        responses={200: OpenApiTypes.OBJECT, 404: {'description': 'Form not found'}},
        tags=['Submissions'],
    )
    def preview(self, request, form_id=None):
        serializer = PreviewSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            form = load_form(form_id)
        except FormNotFoundError:
            return Response({'message': 'Form not found'}, status=status.HTTP_404_NOT_FOUND)

        return Response(preview_submission(form, serializer.validated_data['data']))

    @extend_schema(
        summary="List submissions",
        parameters=[
            OpenApiParameter(name='limit', description='Page size (max 100)', type=OpenApiTypes.INT),
            OpenApiParameter(name='offset', description='Items to skip', type=OpenApiTypes.INT),
        ],
        responses={200: OpenApiTypes.OBJECT},
        tags=['Submissions'],
    )
    def list(self, request, form_id=None):
        form = Form.objects.filter(pk=form_id, owner=request.user).first()
        if form is None:
            return Response({'message': 'Form not found'}, status=status.HTTP_404_NOT_FOUND)

        limit = min(_int_param(request, 'limit', 50), MAX_PAGE_SIZE)
        offset = _int_param(request, 'offset', 0)

        queryset = Submission.objects.filter(form=form).select_related('user', 'form').order_by('-completed_at')
        total = queryset.count()
        page = queryset[offset:offset + limit]

        return Response({
            'submissions': SubmissionSerializer(page, many=True).data,
            'pagination': {
                'total': total,
                'limit': limit,
                'offset': offset,
                'hasMore': offset + limit < total,
            },
        })

    @extend_schema(
        summary="Delete submission",
        responses={204: None, 404: {'description': 'Form or submission not found'}},
        tags=['Submissions'],
    )
    def destroy(self, request, form_id=None, pk=None):
        try:
            delete_submission(request.user, form_id, pk)
        except (FormNotFoundError, SubmissionNotFoundError) as e:
            return Response({'message': str(e)}, status=status.HTTP_404_NOT_FOUND)
        return Response(status=status.HTTP_204_NO_CONTENT)


def _int_param(request, name, default):
    try:
        return max(int(request.query_params.get(name, default)), 0)
    except (TypeError, ValueError):
        return default
