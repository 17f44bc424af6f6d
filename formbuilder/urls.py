"""
Form Builder API URL Configuration
"""

from django.urls import path, include
from rest_framework.routers import SimpleRouter
from .views import FormViewSet

router = SimpleRouter()
router.register(r'', FormViewSet, basename='form')

app_name = 'formbuilder'

urlpatterns = [
    path('', include(router.urls)),
]
