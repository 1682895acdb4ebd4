import os
from pathlib import Path

import pytest

from orion.config import get_settings
from orion.logging import clear_context


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    os.environ["APP_ENV"] = "dev"
    os.environ["MEMORY_DIR"] = str(tmp_path / "memory")
    os.environ["KNOWLEDGE_DIR"] = str(tmp_path / "knowledge")
    os.environ["TOOL_SERVERS_CONFIG"] = str(tmp_path / "config.yaml")
    os.environ["ANTHROPIC_API_KEY"] = ""
    os.environ["OPENAI_API_KEY"] = ""
    get_settings.cache_clear()
    clear_context()
    yield
    get_settings.cache_clear()
    clear_context()
