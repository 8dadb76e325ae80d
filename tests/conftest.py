# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from bothost.core.registry import BotRegistry  # noqa: E402
from bothost.infra.snapshot_store import JsonFileSnapshotStore  # noqa: E402
from tests.fakes import FakeConnectivity, VALID_TOKEN  # noqa: E402


@pytest.fixture
def valid_token():
    """Token the fake platform accepts"""
    return VALID_TOKEN


@pytest.fixture
def connectivity():
    return FakeConnectivity()


@pytest.fixture
def store(tmp_path):
    """Snapshot store writing into a per-test directory"""
    return JsonFileSnapshotStore(tmp_path / "bots.json", tmp_path / "commands.json")


@pytest.fixture
def registry(connectivity, store):
    return BotRegistry(connectivity, store, credential_check_timeout=1.0)


@pytest.fixture
def telegram_update():
    """Minimal Telegram Update carrying a command"""
    def _build(text="/echo hello world", chat_id=123, chat_type="private", update_id=1):
        return {
            "update_id": update_id,
            "message": {
                "message_id": 42,
                "from": {"id": 777, "first_name": "Ada", "last_name": "Lovelace", "username": "ada"},
                "chat": {"id": chat_id, "type": chat_type},
                "date": 1700000000,
                "text": text,
            },
        }
    return _build
