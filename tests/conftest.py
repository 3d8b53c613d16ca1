"""
Pytest configuration and fixtures for the test suite.
"""
import pytest

import greconcile
from greconcile.proxy.signatures import SignatureStore

SESSION = "session-test"

# Long enough to pass the minimum signature length.
SIG_A = "sig-a-" + "A" * 60
SIG_B = "sig-b-" + "B" * 60


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config directory at a temp dir and clear override flags."""
    config_dir = tmp_path / "greconcile"
    monkeypatch.setattr(greconcile, "CONFIG_DIR", str(config_dir))
    monkeypatch.setattr(greconcile, "CONFIG_FILE", str(config_dir / "config.json"))
    monkeypatch.setattr(greconcile, "LOG_FILE", str(config_dir / "logs" / "greconcile.log"))
    monkeypatch.delenv("ANTIGRAVITY_KEEP_THINKING", raising=False)
    monkeypatch.delenv("ANTIGRAVITY_DEBUG_TOOLS", raising=False)
    return config_dir


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """Signature store driven by a fake clock."""
    return SignatureStore(ttl_seconds=60, max_entries_per_session=8, clock=clock)


@pytest.fixture
def gemini_tool_loop():
    """User asks, model calls a tool without thinking, tool answers."""
    return [
        {"role": "user", "parts": [{"text": "list the files"}]},
        {"role": "model", "parts": [{"functionCall": {"name": "ls", "args": {}, "id": "c1"}}]},
        {
            "role": "user",
            "parts": [{"functionResponse": {"name": "ls", "id": "c1", "response": {"out": "a.py"}}}],
        },
    ]


@pytest.fixture
def anthropic_tool_loop():
    """Anthropic-style equivalent of ``gemini_tool_loop``."""
    return [
        {"role": "user", "content": "list the files"},
        {
            "role": "assistant",
            "content": [{"type": "tool_use", "id": "toolu_1", "name": "ls", "input": {}}],
        },
        {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "a.py"}],
        },
    ]
