"""Shared pytest fixtures for the HP exam portal test suite."""

from __future__ import annotations

import copy
import os
import sys
from pathlib import Path

import pytest

# Ensure the project root is on the path so the flat modules import.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SECRET_KEY", "test-secret")

from backend import BackendClient, BackendError  # noqa: E402


class FakeBackend(BackendClient):
    """Stands in for the upstream REST backend.

    ``responses`` maps ``(method, path)`` to a canned body, a BackendError to
    raise, or a callable receiving the recorded call dict.
    """

    def __init__(self, responses: dict | None = None):
        self.responses = dict(responses or {})
        self.calls: list[dict] = []

    async def request(self, method, path, *, token=None, action="reach backend",
                      params=None, json=None, data=None, files=None):
        call = {
            "method": method, "path": path, "token": token, "action": action,
            "params": params, "json": json, "data": data, "files": files,
        }
        self.calls.append(call)
        value = self.responses.get((method, path))
        if isinstance(value, BackendError):
            raise value
        if callable(value):
            return value(call)
        return {} if value is None else copy.deepcopy(value)

    async def aclose(self) -> None:
        pass

    def calls_to(self, method: str, path: str) -> list[dict]:
        return [c for c in self.calls if c["method"] == method and c["path"] == path]


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_token():
    from auth import create_access_token

    def _make(role: str = "student", user_id: int = 1, email: str = "aspirant@example.com") -> str:
        return create_access_token(user_id, email, role=role)

    return _make


@pytest.fixture
def student_headers(make_token):
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def admin_headers(make_token):
    return {"Authorization": f"Bearer {make_token('admin', 99, 'admin@example.com')}"}


@pytest.fixture
def client(backend):
    """TestClient wired to the FakeBackend; startup/shutdown events run."""
    from fastapi.testclient import TestClient

    import main
    from backend import get_backend

    main.app.dependency_overrides[get_backend] = lambda: backend
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
