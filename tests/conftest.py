"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import pytest
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import Settings  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        pattern_store_dir=str(tmp_path / "ml-patterns"),
        log_file=None,
    )


@pytest.fixture
def sample_annotation():
    """Provide a vision annotation in the collaborator's camelCase shape."""
    return {
        "spanishTerm": "el pico",
        "englishTerm": "the beak",
        "pronunciation": "el PEE-koh",
        "difficultyLevel": 2,
        "confidence": 0.9,
        "boundingBox": {"x": 100, "y": 150, "width": 50, "height": 40},
        "type": "anatomical",
    }


@pytest.fixture
def sample_item():
    """Provide a pending ai_annotation_items row as the review query returns it."""
    return {
        "job_id": "job-1",
        "image_id": "img-1",
        "spanish_term": "el pico",
        "english_term": "the beak",
        "bounding_box": {"x": 100, "y": 150, "width": 50, "height": 40},
        "annotation_type": "anatomical",
        "difficulty_level": 2,
        "pronunciation": "el PEE-koh",
        "confidence": 0.85,
        "species_name": "Mallard",
    }
