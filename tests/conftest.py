"""Root test configuration for threatmerge.

Clears every THREATMERGE_* environment variable and runs each test from its
own tmp_path, so a developer's .threatmerge/config.yaml or exported overrides
never leak into the suite.
"""

import os

import pytest


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Strip THREATMERGE_* env vars and chdir into tmp_path."""
    for name in list(os.environ):
        if name.startswith("THREATMERGE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
