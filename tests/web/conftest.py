"""Pytest fixtures for web API tests.

Provides a Flask test client wired to an in-memory record store, a static
token table for two principals, and a rate limiter on a fake clock.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient

from plrsync.core.auth import StaticTokenAuthenticator
from plrsync.core.rate_limit import RateLimiter
from plrsync.core.storage import RecordStore
from plrsync.web import create_app

from tests.helpers import OWNER_A, OWNER_B, TOKEN_A, TOKEN_B, FakeClock

RATE_LIMIT_MAX_REQUESTS = 5
RATE_LIMIT_WINDOW_SECONDS = 60


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(fake_clock: FakeClock) -> RateLimiter:
    return RateLimiter(
        window_seconds=RATE_LIMIT_WINDOW_SECONDS,
        max_requests=RATE_LIMIT_MAX_REQUESTS,
        clock=fake_clock,
    )


@pytest.fixture
def web_app(
    test_config_dir: Path, record_store: RecordStore, rate_limiter: RateLimiter
) -> Generator[Flask, None, None]:
    """Create Flask app for testing.

    Args:
        test_config_dir: Temporary config directory
        record_store: In-memory authoritative store
        rate_limiter: Limiter on a fake clock

    Yields:
        Flask application instance
    """
    app = create_app(
        config_dir=test_config_dir,
        store=record_store,
        authenticator=StaticTokenAuthenticator({TOKEN_A: OWNER_A, TOKEN_B: OWNER_B}),
        rate_limiter=rate_limiter,
    )
    app.config["TESTING"] = True
    yield app


@pytest.fixture
def client(web_app: Flask) -> FlaskClient:
    """Create Flask test client.

    Args:
        web_app: Flask application

    Returns:
        Flask test client for making requests
    """
    return web_app.test_client()


@pytest.fixture
def auth_a() -> Dict[str, str]:
    return {"Authorization": f"Bearer {TOKEN_A}"}


@pytest.fixture
def auth_b() -> Dict[str, str]:
    return {"Authorization": f"Bearer {TOKEN_B}"}
