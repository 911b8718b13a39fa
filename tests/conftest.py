"""
Pytest configuration for the label-resolution worker tests.
"""

import json
from typing import Optional
from unittest.mock import MagicMock

import pytest

from vinho_worker.db import ensure_schema

LABEL_URL = "https://demo.supabase.co/storage/v1/object/public/labels/bottle-1.jpg"
OTHER_LABEL_URL = "https://demo.supabase.co/storage/v1/object/public/labels/bottle-2.jpg"


def pytest_configure(config):
    """Register markers and mark the app ready (TestClient skips lifespan)."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test"
    )

    from main import set_ready
    set_ready(True)


@pytest.fixture
def db_path(tmp_path):
    """Create a fresh DB with schema applied."""
    path = str(tmp_path / "test.db")
    ensure_schema(path)
    return path


def make_llm_response(payload) -> MagicMock:
    """Create a mock litellm response whose content is `payload` (dict -> JSON)."""
    mock_response = MagicMock()
    mock_response.choices = [MagicMock()]
    if isinstance(payload, (dict, list)):
        mock_response.choices[0].message.content = json.dumps(payload)
    else:
        mock_response.choices[0].message.content = payload
    return mock_response


class FakeEmbedder:
    """Stands in for JinaClipEmbedder: fixed vector per URL, optional failure."""

    def __init__(self, vectors: Optional[dict] = None, default=None, error: Optional[Exception] = None):
        self.model = "fake-clip"
        self.vectors = vectors or {}
        self.default = default
        self.error = error
        self.calls: list[str] = []

    def embed_image(self, image_url: str) -> list[float]:
        self.calls.append(image_url)
        if self.error is not None:
            raise self.error
        vector = self.vectors.get(image_url, self.default)
        if vector is None:
            raise ValueError("no vector configured")
        return list(vector)
