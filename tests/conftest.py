"""
Shared pytest fixtures for the load-generation engine test suite.

Two kinds of targets are provided:

- **Fake sessions** stand in for ``requests.Session`` so unit tests can
  script status codes, latencies and transport failures without any
  network traffic.
- **A live Flask order service** running on an ephemeral port in a
  background thread, so integration tests exercise the engine's real
  HTTP path end to end.

Key Concepts Demonstrated:
- Fixture scopes (function for fakes, session for the live server)
- Factory fixtures for scenarios and sessions
- Monkeypatch-friendly fakes that satisfy the ``requests`` interface
"""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Callable, Generator
from typing import Any

import pytest
import requests
from faker import Faker
from flask import Flask, jsonify, request
from werkzeug.serving import make_server

# Select the testing configuration before the engine reads its config.
os.environ["LOADGEN_ENV"] = "testing"

from loadgen.config import TestingConfig
from loadgen.loader import load_scenario
from loadgen.models import Scenario

fake = Faker()


# -----------------------------------------------------------------------------
# Fake HTTP session
# -----------------------------------------------------------------------------


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code: int, content: bytes):
        self.status_code = status_code
        self.content = content
        self.headers = {"Content-Type": "application/json"}


class FakeSession:
    """
    Scriptable stand-in for ``requests.Session``.

    Args:
        status: Status code every request returns.
        body: Response body bytes.
        delay: Seconds each request blocks, simulating server latency.
        error: Exception raised instead of returning a response.
    """

    def __init__(
        self,
        status: int = 201,
        body: bytes = b'{"orderId": 1}',
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        self.status = status
        self.body = body
        self.delay = delay
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def request(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status, self.body)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def session_factory() -> Callable[..., Callable[[int], FakeSession]]:
    """
    Build session factories that hand out :class:`FakeSession` objects.

    Every session created is recorded on the returned factory's
    ``sessions`` attribute so tests can inspect the calls made.

    Example:
        def test_something(session_factory):
            factory = session_factory(status=500, delay=0.01)
            run = Run(scenario, config=TestingConfig, session_factory=factory)
    """

    def _make(**kwargs: Any) -> Callable[[int], FakeSession]:
        sessions: list[FakeSession] = []
        lock = threading.Lock()

        def _factory(_pool_size: int) -> FakeSession:
            session = FakeSession(**kwargs)
            with lock:
                sessions.append(session)
            return session

        _factory.sessions = sessions
        return _factory

    return _make


# -----------------------------------------------------------------------------
# Scenario factory
# -----------------------------------------------------------------------------


@pytest.fixture
def testing_config() -> type[TestingConfig]:
    return TestingConfig


@pytest.fixture
def scenario_factory() -> Callable[..., Scenario]:
    """
    Factory fixture for validated scenarios.

    Defaults describe a one-VU, five-iteration run posting a constant
    order to a fake URL; keyword arguments override or extend the
    scenario mapping before it is validated.  Switching ``executor``
    drops the constant-vus defaults; a ``None`` value removes a key.
    """

    def _create(**overrides: Any) -> Scenario:
        data: dict[str, Any] = {
            "name": "test-scenario",
            "executor": "constant-vus",
            "vus": 1,
            "iterations": 5,
            "target": {"url": "http://orders.test/api/orders"},
            "payload": {
                "kind": "fixed",
                "fields": {
                    "customerId": "cust-101",
                    "productId": "prod-5001",
                    "quantity": 2,
                    "price": 499.99,
                },
            },
            "checks": [{"status": 201, "name": "status is 201"}],
            "graceful_stop": 1,
        }
        if overrides.get("executor", "constant-vus") != "constant-vus":
            del data["vus"], data["iterations"]
        data.update(overrides)
        # A None override removes the key altogether.
        data = {key: value for key, value in data.items() if value is not None}
        return load_scenario(data, TestingConfig)

    return _create


@pytest.fixture
def order_payload() -> dict[str, Any]:
    """Provide a realistic order body with Faker-generated identifiers."""
    return {
        "customerId": f"cust-{fake.random_int(1, 9999)}",
        "productId": f"prod-{fake.random_int(1, 999)}",
        "quantity": fake.random_int(1, 5),
        "price": float(fake.pydecimal(left_digits=3, right_digits=2, positive=True)),
    }


# -----------------------------------------------------------------------------
# Live order service
# -----------------------------------------------------------------------------


def create_target_app() -> Flask:
    """
    Build the order service the engine is pointed at in integration tests.

    Routes:
        POST /api/orders         - record the order, return 201 with orderId
                                   (``?delay=<seconds>`` slows the response)
        POST /api/orders/broken  - always 500
    """
    app = Flask("order_target")
    orders: list[dict[str, Any]] = []
    lock = threading.Lock()
    app.config["ORDERS"] = orders

    @app.route("/api/orders", methods=["POST"])
    def create_order():
        data = request.get_json(silent=True) or {}
        with lock:
            orders.append(data)
            order_id = len(orders)
        # Recorded before sleeping so a client timeout cannot leak the
        # order into a later test.
        delay = float(request.args.get("delay", "0"))
        if delay:
            time.sleep(delay)
        return jsonify({"orderId": order_id, "status": "created"}), 201

    @app.route("/api/orders/broken", methods=["POST"])
    def broken_order():
        return jsonify({"error": "downstream unavailable"}), 500

    return app


@pytest.fixture(scope="session")
def target_app() -> Flask:
    return create_target_app()


@pytest.fixture(scope="session")
def live_server(target_app: Flask) -> Generator[str, None, None]:
    """
    Start the order service in a background thread.

    Binds to an ephemeral port so parallel test sessions never collide.

    Yields:
        str: Base URL of the running server.
    """
    server = make_server("127.0.0.1", 0, target_app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    base_url = f"http://127.0.0.1:{server.server_port}"
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        try:
            requests.post(f"{base_url}/api/orders/broken", timeout=1)
            break
        except requests.RequestException:
            time.sleep(0.05)

    yield base_url

    server.shutdown()


@pytest.fixture
def received_orders(target_app: Flask) -> list[dict[str, Any]]:
    """Return the live server's order log, emptied for this test."""
    orders = target_app.config["ORDERS"]
    orders.clear()
    return orders
