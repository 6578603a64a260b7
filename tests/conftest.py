"""
Shared fixtures for the settlement test suite.

Every test gets a fresh in-memory services container with a small cast of
users and one listing assigned to an agent.
"""

from __future__ import annotations

import pytest

from core.settlement import Property, UserRole, build_services
from utils.config import Config
from web.auth import issue_access_token


TEST_SECRET = "test-secret"


# =============================================================================
# Fixtures
# =============================================================================


def make_config(**overrides) -> Config:
    """Config that ignores the environment for the values tests depend on."""
    values = {
        "token_secret": TEST_SECRET,
        "data_dir": None,
        "strict_progression": False,
        "email_webhook_url": None,
        "production": False,
        "debug": False,
        "allowed_origins": ["http://localhost:3000"],
        "notification_max_attempts": 3,
        "notification_backoff_seconds": 10.0,
    }
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def config():
    """Test configuration."""
    return make_config()


@pytest.fixture
def services(config):
    """Fresh in-memory services container."""
    return build_services(config)


@pytest.fixture
def users(services):
    """Admin, two agents, a seller and a buyer."""
    directory = services.directory
    return {
        "admin": directory.add("Operations", "ops@example.com", UserRole.ADMIN, user_id="admin-1"),
        "agent": directory.add(
            "Alex Agent",
            "alex@example.com",
            UserRole.AGENT,
            user_id="agent-1",
            bank_account_number="062-000 12345678",
        ),
        "other_agent": directory.add("Olive Agent", "olive@example.com", UserRole.AGENT, user_id="agent-2"),
        "seller": directory.add("Sam Seller", "sam@example.com", UserRole.SELLER, user_id="seller-1"),
        "buyer": directory.add("Bailey Buyer", "bailey@example.com", UserRole.BUYER, user_id="buyer-1"),
    }


@pytest.fixture
def listing(services, users):
    """A 500k listing owned by the seller with agent-1 acting."""
    prop = Property.create(
        title="12 Harbour Street",
        price="500000",
        owner_id=users["seller"].user_id,
        address="12 Harbour Street, Sydney NSW 2000",
        agent_id=users["agent"].user_id,
    )
    return services.properties.add(prop)


@pytest.fixture
def tokens(users):
    """Bearer tokens for every test user."""
    return {role: issue_access_token(user, TEST_SECRET) for role, user in users.items()}


@pytest.fixture
def services_factory():
    """Build a services container with config overrides."""
    def factory(**overrides):
        return build_services(make_config(**overrides))
    return factory
