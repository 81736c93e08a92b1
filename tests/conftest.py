import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


def _reset_singletons() -> None:
    from src.aura_chat import config
    from src.aura_chat.infrastructure import chat_store, usage_ledger
    from src.aura_chat.security import rate_limit
    from src.aura_chat.services import chat_stream, gemini_client, token_estimator

    config.reset_chat_config()
    chat_store.reset_chat_store()
    usage_ledger.reset_usage_ledger()
    gemini_client.reset_completion_provider()
    token_estimator.reset_token_estimator()
    chat_stream.reset_chat_orchestrator()
    rate_limit.reset_rate_limits()


@pytest.fixture(autouse=True)
def _isolated_engine(monkeypatch):
    """Fresh in-memory stores and config for every test."""
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("AURA_SYSTEM_PROMPT", "Be helpful.")
    monkeypatch.delenv("AURA_STORE_IMPL", raising=False)
    monkeypatch.delenv("AURA_REQUIRE_MONGO", raising=False)
    monkeypatch.delenv("AURA_RATE_LIMIT_DISABLED", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("MAX_CHATS_PER_USER", raising=False)
    monkeypatch.delenv("DEFAULT_TOKEN_LIMIT", raising=False)
    _reset_singletons()
    yield
    _reset_singletons()


@pytest.fixture
def fake_provider(monkeypatch):
    """Install a scripted completion provider as the process-wide provider."""
    from src.aura_chat.services import gemini_client
    from .utils import FakeProvider

    provider = FakeProvider()
    monkeypatch.setattr(gemini_client, "_client", provider)
    return provider
