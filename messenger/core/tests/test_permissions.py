"""
Tests for the permission classes.
"""

import pytest
from django.contrib.auth.models import AnonymousUser
from django.test import RequestFactory

from messenger.core.api.permissions import IsAuthenticated
from messenger.users.tests.factories import UserFactory


@pytest.fixture
def request_factory():
    """Return a Django RequestFactory."""
    return RequestFactory()


def make_request(request_factory, user=None):
    """Create a request with the given user."""
    request = request_factory.get("/")
    request.user = user if user else AnonymousUser()
    return request


@pytest.mark.django_db
class TestIsAuthenticated:
    """Tests for IsAuthenticated permission."""

    def test_anonymous_user_denied(self, request_factory):
        """Test anonymous user is denied."""
        request = make_request(request_factory)
        perm = IsAuthenticated()
        assert perm.has_permission(request, None) is False

    def test_authenticated_user_allowed(self, request_factory):
        """Test authenticated user is allowed."""
        user = UserFactory()
        request = make_request(request_factory, user)
        perm = IsAuthenticated()
        assert perm.has_permission(request, None) is True
