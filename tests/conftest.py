"""
Pytest configuration: puts the project root on ``sys.path`` so the flat
top-level modules import the same way the app imports them.
"""

import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent.absolute()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run in a scratch directory so prompt.log/connection.log stay out of the repo."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def offline(monkeypatch):
    import ai

    monkeypatch.setenv("OPENROUTER_MODEL", ai.OFFLINE_MODEL)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
