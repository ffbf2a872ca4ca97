import pytest

from tollgate.users.models import User
from tollgate.users.tests.factories import UserFactory


@pytest.fixture(autouse=True)
def _stripe_and_cryptomus_keys(settings) -> None:
    """Deterministic provider credentials for every test."""
    settings.STRIPE_SECRET_KEY = "sk_test_dummy_test_key_for_testing"
    settings.CRYPTOMUS_API_KEY = "test-cryptomus-api-key"
    settings.CRYPTOMUS_MERCHANT_ID = "test-merchant-id"
    settings.SITE_URL = "https://tollgate.test"


@pytest.fixture
def user(db) -> User:
    return UserFactory()
