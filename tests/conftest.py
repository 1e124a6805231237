import pytest

from main import setup_logging


@pytest.fixture(autouse=True, scope="session")
def _configure_logging():
    # Mirror main(): route structlog output to stderr so stdout carries only CLI results.
    setup_logging()
