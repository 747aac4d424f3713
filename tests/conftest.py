from __future__ import annotations

import pytest

from fakes import build_harness


@pytest.fixture
def harness(tmp_path):
    def build(**kwargs):
        return build_harness(tmp_path, **kwargs)

    return build


@pytest.fixture(autouse=True)
def _no_ambient_credentials(monkeypatch):
    for name in ("OPENAI_API_KEY", "OPENAI_BASE_URL", "REPLICATE_API_TOKEN"):
        monkeypatch.delenv(name, raising=False)
