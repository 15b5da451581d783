"""
Request-body generators.

Every scenario carries a :class:`~loadgen.models.PayloadTemplate`; this
module turns it into a generator object whose ``generate(vu_id,
iteration)`` returns a JSON-serialisable dictionary.

Three template kinds are supported:

- **fixed** - the same body on every iteration (the baseline order
  script posts one constant order).
- **randomized** - each field is drawn from a bounded range so the
  server sees a realistic spread of inputs.  Values are seeded from the
  run seed, the virtual-user id and the iteration index, so the same
  ``(vu_id, iteration)`` always produces the same body within a run.
- **bulk** - base fields plus one field padded to a configured byte
  size, to stress message-size-sensitive systems downstream of the
  endpoint (the heavy-payload scenario uses a 200 KB
  ``description``).

Randomized field specs::

    quantity:     {int: [1, 5]}
    price:        {float: [10, 99.99], digits: 2}
    priority:     {choice: [low, medium, high]}
    customerName: {faker: name}
    customerId:   {format: "cust-{vu}-{iteration}"}
    productId:    {format: "prod-{rand}", range: [0, 999]}
    totalAmount:  {product: quantity, factor: 500}

Any non-mapping value is used verbatim.  Template errors raise
:class:`~loadgen.errors.ConfigurationError` when the generator is
built, never during a run.
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Any

from faker import Faker

from loadgen.errors import ConfigurationError
from loadgen.models import PayloadTemplate, TemplateKind

logger = logging.getLogger(__name__)

FIELD_SPEC_KINDS = ("int", "float", "choice", "faker", "format", "product")

# Optional keys each field spec kind accepts besides its own.
FIELD_SPEC_OPTIONS = {
    "int": set(),
    "float": {"digits"},
    "choice": set(),
    "faker": set(),
    "format": {"range"},
    "product": {"factor"},
}

# Faker instances are not safe to reseed concurrently.
_local = threading.local()


def _thread_faker() -> Faker:
    fake = getattr(_local, "faker", None)
    if fake is None:
        fake = Faker()
        _local.faker = fake
    return fake


def _bounds(spec: dict[str, Any], key: str, field_name: str) -> tuple[Any, Any]:
    """Return a validated ``(low, high)`` pair from ``spec[key]``."""
    value = spec[key]
    try:
        low, high = value
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Field '{field_name}': '{key}' must be a [low, high] pair, got {value!r}"
        ) from exc
    if not isinstance(low, (int, float)) or not isinstance(high, (int, float)):
        raise ConfigurationError(f"Field '{field_name}': '{key}' bounds must be numeric")
    if low > high:
        raise ConfigurationError(
            f"Field '{field_name}': lower bound {low} is greater than upper bound {high}"
        )
    return low, high


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_numeric_spec(spec: Any) -> bool:
    """True when a field always produces a number."""
    if isinstance(spec, dict):
        return any(kind in spec for kind in ("int", "float", "product"))
    return _is_number(spec)


def _validate_field_spec(field_name: str, spec: Any, known_fields: dict[str, Any]) -> None:
    """
    Check one randomized field spec.

    Args:
        field_name: Name of the body field being generated.
        spec: The raw spec value from the template.
        known_fields: Specs of the fields defined *before* this one,
            keyed by name.  A ``product`` spec may reference the numeric
            ones.

    Raises:
        ConfigurationError: If the spec is malformed.
    """
    if not isinstance(spec, dict):
        return

    kinds = [kind for kind in FIELD_SPEC_KINDS if kind in spec]
    if len(kinds) != 1:
        raise ConfigurationError(
            f"Field '{field_name}' must use exactly one of {list(FIELD_SPEC_KINDS)}, "
            f"got keys {sorted(spec)}"
        )
    kind = kinds[0]
    unknown = set(spec) - {kind} - FIELD_SPEC_OPTIONS[kind]
    if unknown:
        raise ConfigurationError(f"Field '{field_name}': unknown option(s) {sorted(unknown)}")

    if kind == "int":
        low, high = _bounds(spec, "int", field_name)
        if not isinstance(low, int) or not isinstance(high, int):
            raise ConfigurationError(f"Field '{field_name}': int bounds must be integers")
    elif kind == "float":
        _bounds(spec, "float", field_name)
        digits = spec.get("digits", 2)
        if not isinstance(digits, int) or isinstance(digits, bool) or digits < 0:
            raise ConfigurationError(
                f"Field '{field_name}': digits must be a non-negative integer, got {digits!r}"
            )
    elif kind == "choice":
        options = spec["choice"]
        if not isinstance(options, list) or not options:
            raise ConfigurationError(f"Field '{field_name}': choice needs a non-empty list")
    elif kind == "faker":
        provider = spec["faker"]
        if not isinstance(provider, str) or not callable(getattr(_thread_faker(), provider, None)):
            raise ConfigurationError(f"Field '{field_name}': unknown faker provider {provider!r}")
    elif kind == "format":
        pattern = spec["format"]
        if not isinstance(pattern, str):
            raise ConfigurationError(f"Field '{field_name}': format must be a string")
        try:
            pattern.format(vu=0, iteration=0, rand=0)
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigurationError(
                f"Field '{field_name}': bad format {pattern!r}; "
                f"only {{vu}}, {{iteration}} and {{rand}} are available"
            ) from exc
        if "{rand}" in pattern:
            if "range" not in spec:
                raise ConfigurationError(
                    f"Field '{field_name}': format uses {{rand}} but no range is given"
                )
            low, high = _bounds(spec, "range", field_name)
            if not isinstance(low, int) or not isinstance(high, int):
                raise ConfigurationError(f"Field '{field_name}': range bounds must be integers")
    elif kind == "product":
        source = spec["product"]
        if not isinstance(source, str) or source not in known_fields:
            raise ConfigurationError(
                f"Field '{field_name}': product source '{source}' must be defined earlier"
            )
        if not _is_numeric_spec(known_fields[source]):
            raise ConfigurationError(
                f"Field '{field_name}': product source '{source}' must be numeric"
            )
        if not _is_number(spec.get("factor", 1)):
            raise ConfigurationError(f"Field '{field_name}': factor must be numeric")


def _resolve_field(
    spec: Any,
    rng: random.Random,
    body: dict[str, Any],
    vu_id: int,
    iteration: int,
    seed: str,
) -> Any:
    """Produce one field value from an already-validated spec."""
    if not isinstance(spec, dict):
        return spec

    if "int" in spec:
        low, high = spec["int"]
        return rng.randint(low, high)
    if "float" in spec:
        low, high = spec["float"]
        return round(rng.uniform(low, high), spec.get("digits", 2))
    if "choice" in spec:
        return rng.choice(spec["choice"])
    if "faker" in spec:
        fake = _thread_faker()
        fake.seed_instance(f"{seed}:{spec['faker']}")
        return getattr(fake, spec["faker"])()
    if "format" in spec:
        values = {"vu": vu_id, "iteration": iteration}
        if "range" in spec:
            low, high = spec["range"]
            values["rand"] = rng.randint(low, high)
        return spec["format"].format(**values)

    # product
    return body[spec["product"]] * spec.get("factor", 1)


class PayloadGenerator:
    """Base class: subclasses implement :meth:`generate`."""

    def __init__(self, template: PayloadTemplate, seed: int = 0):
        self.template = template
        self.seed = seed

    def generate(self, vu_id: int, iteration: int) -> dict[str, Any]:
        raise NotImplementedError


class FixedPayloadGenerator(PayloadGenerator):
    """Return the template fields unchanged on every call."""

    def generate(self, vu_id: int, iteration: int) -> dict[str, Any]:
        return dict(self.template.fields)


class RandomizedPayloadGenerator(PayloadGenerator):
    """Draw each field from its spec with a per-iteration seeded RNG."""

    def __init__(self, template: PayloadTemplate, seed: int = 0):
        super().__init__(template, seed)
        known: dict[str, Any] = {}
        for name, spec in template.fields.items():
            _validate_field_spec(name, spec, known)
            known[name] = spec

    def _iteration_seed(self, vu_id: int, iteration: int) -> str:
        return f"{self.seed}:{vu_id}:{iteration}"

    def generate(self, vu_id: int, iteration: int) -> dict[str, Any]:
        seed = self._iteration_seed(vu_id, iteration)
        rng = random.Random(seed)
        body: dict[str, Any] = {}
        for name, spec in self.template.fields.items():
            body[name] = _resolve_field(spec, rng, body, vu_id, iteration, f"{seed}:{name}")
        return body


class BulkPayloadGenerator(RandomizedPayloadGenerator):
    """
    Randomized base fields plus one field padded to ``size_bytes``.

    The padding string is built once; only the base fields vary between
    iterations.
    """

    def __init__(self, template: PayloadTemplate, seed: int = 0):
        if not template.pad_field:
            raise ConfigurationError("Bulk template requires 'pad_field'")
        if template.size_bytes is None:
            raise ConfigurationError("Bulk template requires 'size_bytes'")
        if not isinstance(template.size_bytes, int) or template.size_bytes < 0:
            raise ConfigurationError(
                f"Bulk template 'size_bytes' must be a non-negative integer, "
                f"got {template.size_bytes!r}"
            )
        if len(template.fill.encode("utf-8")) != 1:
            raise ConfigurationError("Bulk template 'fill' must be a single ASCII character")
        if template.pad_field in template.fields:
            raise ConfigurationError(
                f"Bulk template pad field '{template.pad_field}' collides with a base field"
            )
        super().__init__(template, seed)
        self._padding = template.fill * template.size_bytes

    def generate(self, vu_id: int, iteration: int) -> dict[str, Any]:
        body = super().generate(vu_id, iteration)
        body[self.template.pad_field] = self._padding
        return body


_GENERATORS: dict[TemplateKind, type[PayloadGenerator]] = {
    TemplateKind.FIXED: FixedPayloadGenerator,
    TemplateKind.RANDOMIZED: RandomizedPayloadGenerator,
    TemplateKind.BULK: BulkPayloadGenerator,
}


def build_payload_generator(template: PayloadTemplate, seed: int = 0) -> PayloadGenerator:
    """
    Validate ``template`` and return the matching generator.

    Raises:
        ConfigurationError: If the template is malformed.
    """
    try:
        generator_class = _GENERATORS[TemplateKind(template.kind)]
    except ValueError as exc:
        raise ConfigurationError(f"Unknown payload template kind: {template.kind!r}") from exc

    if generator_class is not BulkPayloadGenerator and (
        template.pad_field is not None or template.size_bytes is not None
    ):
        raise ConfigurationError(
            f"'pad_field' and 'size_bytes' are only valid for bulk templates, "
            f"not {TemplateKind(template.kind).value}"
        )

    generator = generator_class(template, seed)
    logger.debug("Built %s for %d field(s)", generator_class.__name__, len(template.fields))
    return generator
