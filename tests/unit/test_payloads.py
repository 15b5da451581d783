"""
Unit tests for request-body generators.

Key SDET Concepts Demonstrated:
- Deterministic test data from seeded generators
- Validating configuration errors before any traffic is sent
- Size assertions on serialized payloads
"""

from __future__ import annotations

import json

import pytest

from loadgen.errors import ConfigurationError
from loadgen.models import PayloadTemplate, TemplateKind
from loadgen.payloads import (
    BulkPayloadGenerator,
    FixedPayloadGenerator,
    RandomizedPayloadGenerator,
    build_payload_generator,
)

pytestmark = pytest.mark.unit

ORDER_FIELDS = {
    "customerId": {"format": "cust-{rand}", "range": [1, 1000]},
    "productId": {"format": "prod-{rand}", "range": [1, 1000]},
    "quantity": {"int": [1, 5]},
    "totalAmount": {"product": "quantity", "factor": 500},
}


def _randomized(fields=None, seed=0):
    template = PayloadTemplate(kind=TemplateKind.RANDOMIZED, fields=fields or ORDER_FIELDS)
    return build_payload_generator(template, seed=seed)


class TestFixedPayload:
    """Tests for the constant-body generator."""

    def test_returns_same_body_every_iteration(self, order_payload):
        """Test that every VU and iteration gets an equal, independent copy."""
        generator = build_payload_generator(
            PayloadTemplate(kind=TemplateKind.FIXED, fields=order_payload)
        )

        first = generator.generate(1, 0)
        second = generator.generate(7, 42)
        first["quantity"] = 999

        assert isinstance(generator, FixedPayloadGenerator)
        assert second == order_payload
        assert generator.generate(1, 0)["quantity"] == order_payload["quantity"]


class TestRandomizedPayload:
    """Tests for seeded, bounded random bodies."""

    def test_values_stay_within_bounds(self):
        generator = _randomized()

        for iteration in range(200):
            body = generator.generate(vu_id=iteration % 4, iteration=iteration)
            assert 1 <= body["quantity"] <= 5
            assert 1 <= int(body["customerId"].removeprefix("cust-")) <= 1000
            assert body["totalAmount"] == body["quantity"] * 500

        assert isinstance(generator, RandomizedPayloadGenerator)

    def test_same_vu_and_iteration_reproduce_the_same_body(self):
        """Test that bodies are a pure function of (seed, vu_id, iteration)."""
        # Arrange
        first = _randomized(seed=42)
        second = _randomized(seed=42)

        # Act / Assert
        assert first.generate(3, 10) == second.generate(3, 10)
        assert first.generate(3, 10) == first.generate(3, 10)

    def test_different_iterations_vary(self):
        generator = _randomized(seed=1)

        bodies = {json.dumps(generator.generate(1, index), sort_keys=True) for index in range(50)}

        assert len(bodies) > 1

    def test_format_fields_use_vu_and_iteration(self):
        generator = _randomized({"customerId": {"format": "cust-{vu}-{iteration}"}})

        assert generator.generate(4, 9) == {"customerId": "cust-4-9"}

    def test_choice_float_and_literal_fields(self):
        generator = _randomized(
            {
                "priority": {"choice": ["low", "medium", "high"]},
                "price": {"float": [10, 99.99], "digits": 2},
                "currency": "EUR",
            }
        )

        body = generator.generate(0, 0)

        assert body["priority"] in ("low", "medium", "high")
        assert 10 <= body["price"] <= 99.99
        assert round(body["price"], 2) == body["price"]
        assert body["currency"] == "EUR"

    def test_faker_fields_are_seeded(self):
        first = _randomized({"customerName": {"faker": "name"}}, seed=5)
        second = _randomized({"customerName": {"faker": "name"}}, seed=5)

        name = first.generate(2, 3)["customerName"]

        assert isinstance(name, str) and name
        assert second.generate(2, 3)["customerName"] == name

    @pytest.mark.parametrize(
        "fields, message",
        [
            ({"quantity": {"int": [5, 1]}}, "greater than"),
            ({"quantity": {"int": [1.5, 3]}}, "integers"),
            ({"quantity": {"int": 3}}, "pair"),
            ({"quantity": {"int": [1, 3], "float": [1, 3]}}, "exactly one"),
            ({"quantity": {"int": [1, 3], "digits": 2}}, "unknown option"),
            ({"priority": {"choice": []}}, "non-empty"),
            ({"name": {"faker": "not_a_provider"}}, "faker provider"),
            ({"id": {"format": "cust-{customer}"}}, "bad format"),
            ({"id": {"format": "cust-{rand}"}}, "no range"),
            ({"total": {"product": "quantity"}, "quantity": {"int": [1, 2]}}, "defined earlier"),
            ({"name": {"faker": "locales"}}, "faker provider"),
            ({"price": {"float": [1, 2], "digits": "2"}}, "digits"),
            ({"price": {"float": [1, 2], "digits": -1}}, "digits"),
            ({"label": {"choice": ["a", "b"]}, "total": {"product": "label", "factor": 3}}, "numeric"),
            ({"quantity": {"int": [1, 2]}, "total": {"product": "quantity", "factor": True}}, "factor"),
        ],
    )
    def test_invalid_field_specs_are_rejected(self, fields, message):
        """Test that malformed templates fail when the generator is built."""
        with pytest.raises(ConfigurationError, match=message):
            _randomized(fields)

    def test_product_of_a_product_is_numeric(self):
        generator = _randomized(
            {
                "quantity": 3,
                "subtotal": {"product": "quantity", "factor": 2.5},
                "total": {"product": "subtotal", "factor": 2},
            }
        )

        assert generator.generate(1, 0)["total"] == 15.0


class TestBulkPayload:
    """Tests for the padded heavy-payload generator."""

    def test_pad_field_has_exact_size(self):
        """Test that the padded field is exactly size_bytes of the fill character."""
        # Arrange
        template = PayloadTemplate(
            kind=TemplateKind.BULK,
            fields={"customerId": {"format": "cust-{vu}-{iteration}"}},
            pad_field="description",
            size_bytes=200 * 1024,
        )

        # Act
        body = build_payload_generator(template).generate(2, 5)

        # Assert
        assert body["customerId"] == "cust-2-5"
        assert len(body["description"].encode("utf-8")) == 200 * 1024
        assert set(body["description"]) == {"X"}

    def test_zero_size_produces_empty_pad(self):
        template = PayloadTemplate(
            kind=TemplateKind.BULK, fields={}, pad_field="description", size_bytes=0
        )

        generator = build_payload_generator(template)

        assert isinstance(generator, BulkPayloadGenerator)
        assert generator.generate(0, 0) == {"description": ""}

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"pad_field": None}, "pad_field"),
            ({"size_bytes": None}, "size_bytes"),
            ({"size_bytes": -1}, "non-negative"),
            ({"fill": "ab"}, "single ASCII"),
            ({"fill": "é"}, "single ASCII"),
            ({"pad_field": "customerId"}, "collides"),
        ],
    )
    def test_invalid_bulk_templates_are_rejected(self, overrides, message):
        options = {
            "kind": TemplateKind.BULK,
            "fields": {"customerId": "cust-1"},
            "pad_field": "description",
            "size_bytes": 16,
        }
        options.update(overrides)

        with pytest.raises(ConfigurationError, match=message):
            build_payload_generator(PayloadTemplate(**options))


def test_padding_options_rejected_on_other_kinds():
    template = PayloadTemplate(kind=TemplateKind.FIXED, fields={}, size_bytes=10)

    with pytest.raises(ConfigurationError, match="only valid for bulk"):
        build_payload_generator(template)


def test_unknown_kind_is_rejected():
    with pytest.raises(ConfigurationError, match="Unknown payload template kind"):
        build_payload_generator(PayloadTemplate(kind="streaming"))
