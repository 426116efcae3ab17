"""
Pytest configuration for the inspector tests.

Live playlist URLs are loaded from environment variables.
Locally, add them to your .env file.
"""

import os
from pathlib import Path
from typing import Callable

import httpx
import pytest
from dotenv import load_dotenv

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def live_playlist_url():
    """The playlist used by live tests, skipping them when TEST_PLAYLIST_URL is not set."""
    url = os.environ.get("TEST_PLAYLIST_URL")
    if not url:
        pytest.skip("TEST_PLAYLIST_URL not set")
    return url


@pytest.fixture
def mock_client() -> Callable[[dict], httpx.AsyncClient]:
    """
    Factory fixture building an AsyncClient served from a URL to handler mapping.

    Usage:
        client = mock_client({"https://cdn.example.com/a.m3u8": lambda request: httpx.Response(200, text="...")})
    """

    def _build(routes: dict) -> httpx.AsyncClient:
        def handler(request: httpx.Request) -> httpx.Response:
            route = routes.get(str(request.url))
            if route is None:
                return httpx.Response(404)
            return route(request)

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build
