"""
URL Configuration for Submission API
"""

from django.urls import path
from .views import SubmissionViewSet

app_name = 'submissions'

urlpatterns = [
    path('forms/<uuid:form_id>/', SubmissionViewSet.as_view({'get': 'list'}), name='list'),
    path('forms/<uuid:form_id>/submit/', SubmissionViewSet.as_view({'post': 'submit'}), name='submit'),
    path('forms/<uuid:form_id>/preview/', SubmissionViewSet.as_view({'post': 'preview'}), name='preview'),
    path('forms/<uuid:form_id>/<uuid:pk>/', SubmissionViewSet.as_view({'delete': 'destroy'}), name='delete'),
]
