"""
Shared fixtures for the chat tests.
"""

import pytest
from django.test import Client

from messenger.chat.services import ConversationDirectory
from messenger.users.tests.factories import UserFactory


@pytest.fixture
def alice(db):
    """Create the first user."""
    return UserFactory(email="alice@messenger.test", first_name="Alice", last_name="Martin")


@pytest.fixture
def bob(db):
    """Create the second user."""
    return UserFactory(email="bob@messenger.test", first_name="Bob", last_name="Durand")


@pytest.fixture
def carol(db):
    """Create a third user."""
    return UserFactory(email="carol@messenger.test", first_name="Carol", last_name="Petit")


@pytest.fixture
def dave(db):
    """Create a fourth user."""
    return UserFactory(email="dave@messenger.test", first_name="Dave", last_name="Moreau")


@pytest.fixture
def direct(alice, bob):
    """Direct conversation between alice and bob."""
    return ConversationDirectory.resolve_or_create_direct(alice.id, bob.id)


@pytest.fixture
def group(alice, bob, carol):
    """Group owned by alice with bob and carol as members."""
    return ConversationDirectory.create_group(alice.id, [bob.id, carol.id], "Team")


def client_for(user) -> Client:
    """Return a client authenticated as ``user``."""
    client = Client()
    client.force_login(user)
    return client


@pytest.fixture
def alice_client(alice):
    return client_for(alice)


@pytest.fixture
def bob_client(bob):
    return client_for(bob)


@pytest.fixture
def carol_client(carol):
    return client_for(carol)
