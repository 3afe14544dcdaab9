"""Shared fixtures for the genbridge suite.

Every test runs with provider credentials scrubbed from the environment and
``.env`` loading disabled, so results never depend on the developer machine.
Real API tests are collected but skipped unless ENABLE_API_TESTS is set.
"""

from __future__ import annotations

import logging
import os

import pytest

from genbridge.config import Config
from genbridge.retry import RetryPolicy

OPENAI_MODEL = "gpt-4o-mini"
ANTHROPIC_MODEL = "claude-sonnet-4-5"
GEMINI_MODEL = "gemini-2.5-flash"
GROK_MODEL = "grok-3-mini"
OLLAMA_MODEL = "llama3.2"

# Retries without sleeping so client tests stay fast.
FAST_RETRY = RetryPolicy(
    max_attempts=2, initial_delay_s=0.0, jitter=False, max_elapsed_s=None
)

_PROVIDER_ENV_PREFIXES = ("OPENAI_", "ANTHROPIC_", "GEMINI_", "XAI_", "OLLAMA_")

# =============================================================================
# Environment
# =============================================================================


@pytest.fixture(autouse=True)
def no_dotenv(request, monkeypatch):
    """Make ``dotenv.load_dotenv`` a no-op unless marked ``allow_dotenv``."""
    if request.node.get_closest_marker("allow_dotenv") is None:
        monkeypatch.setattr("dotenv.load_dotenv", lambda *a, **k: False)


@pytest.fixture(autouse=True)
def scrub_provider_env(request, monkeypatch):
    """Remove provider credentials and endpoints from ``os.environ``.

    Skipped for tests marked ``allow_env_pollution`` and for ``api`` tests,
    which need the real keys.
    """
    keep = request.node.get_closest_marker("allow_env_pollution") is not None
    if keep or "api" in request.node.keywords:
        return
    for name in [n for n in os.environ if n.startswith(_PROVIDER_ENV_PREFIXES)]:
        monkeypatch.delenv(name)


@pytest.fixture(scope="session", autouse=True)
def quiet_http_logs():
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# Collection
# =============================================================================


def pytest_collection_modifyitems(items):
    """Skip ``api`` tests unless ENABLE_API_TESTS is set."""
    if os.getenv("ENABLE_API_TESTS"):
        return
    skip = pytest.mark.skip(reason="set ENABLE_API_TESTS=1 to call real providers")
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip)


# =============================================================================
# Factories and credentials
# =============================================================================


@pytest.fixture
def make_config():
    """Build a ``Config`` with a dummy key and no-wait retries."""

    def _make(provider: str = "openai", model: str = OPENAI_MODEL, **kwargs) -> Config:
        kwargs.setdefault("retry", FAST_RETRY)
        if provider != "ollama":
            kwargs.setdefault("api_key", "test-key")
        return Config(provider=provider, model=model, **kwargs)

    return _make


def _key_or_skip(env_var: str) -> str:
    key = os.getenv(env_var)
    if not key:
        pytest.skip(f"{env_var} not set")
    return key


@pytest.fixture
def openai_api_key():
    return _key_or_skip("OPENAI_API_KEY")


@pytest.fixture
def anthropic_api_key():
    return _key_or_skip("ANTHROPIC_API_KEY")


@pytest.fixture
def gemini_api_key():
    return _key_or_skip("GEMINI_API_KEY")
