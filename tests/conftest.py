"""
tests/conftest.py
"""
from __future__ import annotations

import random
from typing import Generator

import pytest
from flask.testing import FlaskClient

from apexblog.blog import app


@pytest.fixture(scope="session", autouse=True)
def _configure_app() -> None:
    """Configure the Flask app *once* before the first test runs."""
    app.config.update(
        TESTING=True,
        APEXCHARTS_SRC="https://cdn.example.test/apexcharts.js",
        APEXCHARTS_ID_PREFIX="a",
        APEXCHARTS_ID_LENGTH=8,
        APEXCHARTS_ESCAPE_SCRIPT=True,
    )


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def rng() -> random.Random:
    """Seeded random source so chart ids are reproducible."""
    return random.Random(1234)
