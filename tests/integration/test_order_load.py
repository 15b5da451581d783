"""
End-to-end load runs against a live order service.

The engine is pointed at the Flask app started by the ``live_server``
fixture, so every request travels through a real ``requests`` session,
socket and WSGI server.

Key SDET Concepts Demonstrated:
- Black-box verification: the server's own order log confirms what the
  engine reports
- Open-loop saturation with a deliberately slow endpoint
- Transport failures against a closed port
"""

from __future__ import annotations

import socket

import pytest

from loadgen import create_run

pytestmark = pytest.mark.integration


def _scenario(base_url: str, path: str = "/api/orders", **overrides):
    data = {
        "name": "order-load",
        "executor": "constant-vus",
        "vus": 1,
        "iterations": 5,
        "target": {"url": f"{base_url}{path}"},
        "payload": {
            "kind": "fixed",
            "fields": {
                "customerId": "cust-101",
                "productId": "prod-5001",
                "quantity": 2,
                "price": 499.99,
            },
        },
        "checks": [
            {"status": 201, "name": "Status is 201 Created"},
            {"json_field": "orderId", "name": "Response has orderId"},
        ],
        "thresholds": {
            "http_req_duration": ["p(95)<500"],
            "http_req_failed": ["rate<0.01"],
        },
        "graceful_stop": 2,
    }
    data.update(overrides)
    return data


def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestOrderBaseline:
    """Closed-loop runs against a healthy endpoint."""

    def test_every_iteration_reaches_the_server(self, live_server, received_orders):
        """
        Test that five iterations create five orders and pass every check.

        Arrange: One VU capped at five iterations with a fixed order
        Act: Execute the run against the live service
        Assert: Server saw five identical orders; engine reports them all
        """
        # Arrange
        run = create_run(_scenario(live_server), config_name="testing")

        # Act
        report = run.execute()

        # Assert
        assert report.passed is True
        assert report.summary.iterations == 5
        assert report.summary.checks_rate == 1.0
        assert len(received_orders) == 5
        assert received_orders[0] == {
            "customerId": "cust-101",
            "productId": "prod-5001",
            "quantity": 2,
            "price": 499.99,
        }

    def test_randomized_payloads_vary_per_iteration(self, live_server, received_orders):
        scenario = _scenario(
            live_server,
            vus=2,
            iterations=5,
            payload={
                "kind": "randomized",
                "fields": {
                    "customerId": {"format": "cust-{vu}-{iteration}"},
                    "quantity": {"int": [1, 5]},
                    "totalAmount": {"product": "quantity", "factor": 500},
                },
            },
        )

        report = create_run(scenario, config_name="testing").execute()

        assert report.summary.iterations == 10
        assert {order["customerId"] for order in received_orders} == {
            f"cust-{vu}-{iteration}" for vu in (1, 2) for iteration in range(5)
        }
        assert all(order["totalAmount"] == order["quantity"] * 500 for order in received_orders)

    def test_bulk_payload_arrives_at_full_size(self, live_server, received_orders):
        """Test that a 200 KB padded field survives the trip to the server intact."""
        scenario = _scenario(
            live_server,
            iterations=2,
            payload={
                "kind": "bulk",
                "pad_field": "description",
                "size_bytes": 200 * 1024,
                "fields": {"customerId": {"format": "cust-{vu}-{iteration}"}},
            },
        )

        report = create_run(scenario, config_name="testing").execute()

        assert report.passed is True
        assert len(received_orders) == 2
        assert all(len(order["description"]) == 200 * 1024 for order in received_orders)

    def test_ramping_vus_against_live_service(self, live_server, received_orders):
        scenario = _scenario(
            live_server,
            executor="ramping-vus",
            stages=[
                {"target": 3, "duration": "300ms"},
                {"target": 3, "duration": "300ms"},
                {"target": 0, "duration": "200ms"},
            ],
            think_time="20ms",
        )
        del scenario["vus"], scenario["iterations"]

        report = create_run(scenario, config_name="testing").execute()

        assert 0 < report.peak_concurrency <= 3
        assert report.summary.iterations == len(received_orders)
        assert report.summary.interrupted_iterations == 0


class TestFailingTargets:
    """Runs whose verdict must fail."""

    def test_server_errors_fail_the_verdict(self, live_server):
        report = create_run(_scenario(live_server, "/api/orders/broken"), config_name="testing").execute()

        assert report.passed is False
        assert report.summary.status_counts == {500: 5}
        failed = {result.metric for result in report.verdict.failures}
        assert failed == {"http_req_failed"}
        assert report.summary.checks["Response has orderId"].fails == 5

    def test_unreachable_target_records_transport_errors(self):
        """Test that a refused connection yields status 0 samples and a failing verdict."""
        # Arrange
        base_url = f"http://127.0.0.1:{_closed_port()}"

        # Act
        report = create_run(_scenario(base_url, iterations=3), config_name="testing").execute()

        # Assert
        assert report.summary.iterations == 3
        assert report.summary.status_counts == {0: 3}
        assert report.summary.error_rate == 1.0
        assert report.passed is False

    def test_request_timeout_is_a_failed_sample(self, live_server):
        scenario = _scenario(
            live_server, "/api/orders?delay=0.5", iterations=1, request_timeout="100ms"
        )

        report = create_run(scenario, config_name="testing").execute()

        assert report.summary.status_counts == {0: 1}
        assert report.summary.latency.max < 450


@pytest.mark.slow
class TestArrivalRate:
    """Open-loop runs that saturate a slow endpoint."""

    def test_slow_endpoint_drops_iterations_without_exceeding_max_vus(
        self, live_server, received_orders
    ):
        """
        Test that the open-loop schedule keeps its rate and drops what it cannot serve.

        Arrange: Rate ramps 2 -> 20/s over 2s, at most 5 VUs, 0.5s responses
        Act: Execute the run
        Assert: Some iterations dropped, concurrency never above 5, and
                every scheduled iteration accounted for exactly once
        """
        # Arrange
        scenario = _scenario(
            live_server,
            "/api/orders?delay=0.5",
            executor="ramping-arrival-rate",
            start_rate=2,
            pre_allocated_vus=2,
            max_vus=5,
            stages=[{"target": 20, "duration": "2s"}],
        )
        del scenario["vus"], scenario["iterations"]

        # Act
        report = create_run(scenario, config_name="testing").execute()

        # Assert
        summary = report.summary
        assert summary.dropped_iterations > 0
        assert report.peak_concurrency <= 5
        # (2 + 20) / 2 * 2s = 22 scheduled iterations.
        assert summary.iterations + summary.dropped_iterations + summary.interrupted_iterations == 22
        assert summary.iterations == len(received_orders)
