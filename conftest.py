# Ensure tests import the service package from this directory first.
import os
import sys

import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from openai_proxy.utils_tests.token_provider_mock import (  # noqa: E402
    DummyTokenProvider,
)


@pytest.fixture
def token_provider():
    """Token provider handing out a fixed 'provider-token'."""
    return DummyTokenProvider("provider-token")
