"""
This file configures pytest.

It puts src/ on sys.path so the tests run against the working tree without
installing the package first, and tests/ so shared stubs import from any
test directory.

uv sync --group dev
uv run pytest -q tests
RUN_INTEGRATION_TESTS=1 uv run pytest -q tests/integration
"""

from __future__ import annotations

import sys
from pathlib import Path

TESTS_ROOT = Path(__file__).resolve().parent
SRC_ROOT = TESTS_ROOT.parent / "src"

for candidate in (SRC_ROOT, TESTS_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)
