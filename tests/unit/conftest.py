# pylint: disable=missing-module-docstring,missing-function-docstring

import json
from typing import Any

import pytest

from observability import logger


@pytest.fixture
def events(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    """Every log_event emitted during the test, decoded."""
    captured: list[dict[str, Any]] = []
    monkeypatch.setattr(logger, "_enabled", True)
    monkeypatch.setattr(logger, "_print", lambda line: captured.append(json.loads(line)))
    return captured
