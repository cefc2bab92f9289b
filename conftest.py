import shutil
from pathlib import Path

import pytest

from companion_tavern.config import default_config
from companion_tavern.content import StaticRuleProvider
from companion_tavern.storage import Storage

TEST_DATA_DIR = Path("data-tests")

PHASE_RULES = """# Phases

## Phase A entry
Favor reaches 30.

## Phase A: acquaintances
Polite but guarded.

## Phase B entry
Favor reaches 55.

## Phase B: friends
Jokes freely.

## Phase C entry
Favor reaches 75.

## Phase C: close friends
Plans weekends together.
"""


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def storage() -> Storage:
    return Storage(TEST_DATA_DIR)


@pytest.fixture
def config():
    return default_config()


@pytest.fixture
def rules() -> StaticRuleProvider:
    return StaticRuleProvider({
        "base": "BASE RULES: stay in character.",
        "response_format": 'FORMAT: answer with {"reply": ..., "status": {...}}',
        "phases": PHASE_RULES,
    })
