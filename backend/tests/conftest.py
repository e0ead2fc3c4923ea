"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
import base64
from pathlib import Path

# Skip server startup (MongoDB) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("STAGING_BACKEND", "memory")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from unittest.mock import AsyncMock, MagicMock

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

FRONT_IMAGE = "data:image/jpeg;base64," + base64.b64encode(b"front-photo-bytes").decode()
SIDE_IMAGE = base64.b64encode(b"side-photo-bytes").decode()

RAW_SCORES = {
    "skin_quality": 80,
    "jawline_definition": 50,
    "cheekbones": 60,
    "facial_symmetry": 70,
    "eye_area": 65,
    "potential": 60,
}


def make_db():
    """MagicMock database whose collections answer like empty Motor collections."""
    db = MagicMock()
    for name in ("scans", "profiles", "subscriptions", "glowup_plans", "audit_logs", "device_storage"):
        collection = getattr(db, name)
        collection.find_one = AsyncMock(return_value=None)
        collection.insert_one = AsyncMock()
        collection.update_one = AsyncMock()
        collection.delete_one = AsyncMock()
    return db


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def db():
    return make_db()
