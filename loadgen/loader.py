"""
Scenario loading and validation.

Turns a plain mapping (usually parsed from a YAML scenario file) into a
frozen :class:`~loadgen.models.Scenario`.  The accepted fields are a
closed set per arrival model: an unknown key, a missing required key or
a field that belongs to a different arrival model is a
:class:`~loadgen.errors.ConfigurationError`, raised before anything is
sent.

Example scenario file::

    name: order-spike
    executor: ramping-arrival-rate
    start_rate: 2
    pre_allocated_vus: 50
    max_vus: 200
    stages:
      - {target: 20, duration: 5s}
      - {target: 100, duration: 10s}
    target:
      url: http://localhost:8080/api/orders/with-headers
    payload:
      kind: randomized
      fields:
        quantity: {int: [1, 5]}
    checks:
      - {status: [200, 201]}
    thresholds:
      http_req_failed: ["rate<0.01"]
      http_req_duration: ["p(95)<500"]
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from loadgen.checks import check_from_config
from loadgen.config import Config, get_config
from loadgen.errors import ConfigurationError
from loadgen.models import (
    ArrivalModel,
    Check,
    PayloadTemplate,
    RequestTarget,
    Scenario,
    Stage,
    TemplateKind,
)
from loadgen.payloads import build_payload_generator
from loadgen.thresholds import parse_thresholds

logger = logging.getLogger(__name__)

COMMON_FIELDS = frozenset({
    "name",
    "executor",
    "target",
    "payload",
    "checks",
    "thresholds",
    "think_time",
    "think_time_in_latency",
    "graceful_stop",
    "request_timeout",
    "expected_statuses",
    "seed",
})

MODEL_FIELDS: dict[ArrivalModel, frozenset[str]] = {
    ArrivalModel.CONSTANT_VUS: frozenset({"vus", "duration", "iterations"}),
    ArrivalModel.RAMPING_VUS: frozenset({"start_vus", "stages", "max_vus"}),
    ArrivalModel.RAMPING_ARRIVAL_RATE: frozenset({
        "start_rate",
        "time_unit",
        "stages",
        "pre_allocated_vus",
        "max_vus",
    }),
}

TARGET_FIELDS = frozenset({"url", "method", "headers"})
PAYLOAD_FIELDS = frozenset({"kind", "fields", "pad_field", "size_bytes", "fill"})
STAGE_FIELDS = frozenset({"target", "duration"})

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_STATUS_RANGE = re.compile(r"^\s*(\d{3})\s*-\s*(\d{3})\s*$")


def parse_duration(value: Any, field_name: str = "duration") -> float:
    """
    Convert a k6-style duration to seconds.

    Accepts numbers (seconds) or strings such as ``"500ms"``, ``"30s"``,
    ``"1m30s"`` and ``"2h"``.

    Raises:
        ConfigurationError: If the value cannot be parsed or is negative.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"'{field_name}' must be a duration, got {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        parts = _DURATION_PART.findall(text)
        if not parts or "".join(number + unit for number, unit in parts) != text:
            raise ConfigurationError(f"'{field_name}' is not a valid duration: {value!r}")
        seconds = sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)
    else:
        raise ConfigurationError(f"'{field_name}' must be a duration, got {value!r}")

    if seconds < 0 or math.isnan(seconds):
        raise ConfigurationError(f"'{field_name}' must not be negative: {value!r}")
    return seconds


def _reject_unknown(data: Mapping[str, Any], allowed: frozenset[str], where: str) -> None:
    unknown = set(data) - allowed
    if unknown:
        raise ConfigurationError(f"Unknown field(s) in {where}: {sorted(unknown)}")


def _require(data: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in data or data[key] is None:
        raise ConfigurationError(f"Missing required field '{key}' in {where}")
    return data[key]


def _number(data: Mapping[str, Any], key: str, default: float, *, minimum: float = 0.0) -> float:
    value = data.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{key}' must be numeric, got {value!r}") from exc
    if isinstance(value, bool) or number < minimum:
        raise ConfigurationError(f"'{key}' must be a number >= {minimum}, got {value!r}")
    return number


def _integer(data: Mapping[str, Any], key: str, default: int | None, *, minimum: int = 0) -> int | None:
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"'{key}' must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigurationError(f"'{key}' must be >= {minimum}, got {value!r}")
    return value


def _parse_target(data: Any) -> RequestTarget:
    if not isinstance(data, Mapping):
        raise ConfigurationError("'target' must be a mapping with at least a 'url'")
    _reject_unknown(data, TARGET_FIELDS, "target")
    url = _require(data, "url", "target")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise ConfigurationError(f"target url must be an http(s) URL, got {url!r}")

    method = str(data.get("method", "POST")).upper()
    headers = data.get("headers", {"Content-Type": "application/json"})
    if not isinstance(headers, Mapping):
        raise ConfigurationError("target 'headers' must be a mapping")
    return RequestTarget(
        url=url,
        method=method,
        headers={str(key): str(value) for key, value in headers.items()},
    )


def _parse_payload(data: Any) -> PayloadTemplate:
    if data is None:
        return PayloadTemplate()
    if not isinstance(data, Mapping):
        raise ConfigurationError("'payload' must be a mapping")
    _reject_unknown(data, PAYLOAD_FIELDS, "payload")

    try:
        kind = TemplateKind(data.get("kind", TemplateKind.FIXED.value))
    except ValueError as exc:
        raise ConfigurationError(
            f"Unknown payload kind {data.get('kind')!r}; "
            f"expected one of {[kind.value for kind in TemplateKind]}"
        ) from exc

    fields = data.get("fields", {})
    if not isinstance(fields, Mapping):
        raise ConfigurationError("payload 'fields' must be a mapping")

    return PayloadTemplate(
        kind=kind,
        fields=dict(fields),
        pad_field=data.get("pad_field"),
        size_bytes=data.get("size_bytes"),
        fill=data.get("fill", "X"),
    )


def _parse_stages(data: Any) -> tuple[Stage, ...]:
    if not isinstance(data, list) or not data:
        raise ConfigurationError("'stages' must be a non-empty list")

    stages = []
    for position, raw in enumerate(data, start=1):
        where = f"stage {position}"
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"{where} must be a mapping")
        _reject_unknown(raw, STAGE_FIELDS, where)
        target = _number(raw, "target", _require(raw, "target", where))
        duration = parse_duration(_require(raw, "duration", where), f"{where} duration")
        stages.append(Stage(target=target, duration=duration))

    if sum(stage.duration for stage in stages) <= 0:
        raise ConfigurationError("'stages' must span a positive total duration")
    return tuple(stages)


def _parse_checks(data: Any) -> tuple[Check, ...]:
    if data is None:
        return ()
    if not isinstance(data, list):
        raise ConfigurationError("'checks' must be a list")
    return tuple(item if isinstance(item, Check) else check_from_config(item) for item in data)


def _parse_statuses(data: Any) -> tuple[int, ...]:
    if data is None:
        return tuple(range(200, 400))
    items = data if isinstance(data, list) else [data]
    statuses: list[int] = []
    for item in items:
        if isinstance(item, int) and not isinstance(item, bool):
            statuses.append(item)
            continue
        match = _STATUS_RANGE.match(str(item))
        if match is None:
            raise ConfigurationError(f"Invalid expected status {item!r}; use 201 or '200-399'")
        low, high = int(match.group(1)), int(match.group(2))
        if low > high:
            raise ConfigurationError(f"Invalid expected status range {item!r}")
        statuses.extend(range(low, high + 1))
    if not statuses:
        raise ConfigurationError("'expected_statuses' must not be empty")
    return tuple(sorted(set(statuses)))


def _model_fields(model: ArrivalModel, data: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and return the arrival-model-specific scenario fields."""
    if model is ArrivalModel.CONSTANT_VUS:
        vus = _integer(data, "vus", 1, minimum=1)
        duration = parse_duration(data.get("duration", 0), "duration")
        iterations = _integer(data, "iterations", None, minimum=1)
        if duration <= 0 and iterations is None:
            raise ConfigurationError("constant-vus needs a positive 'duration' or 'iterations'")
        return {"vus": vus, "duration": duration, "iterations": iterations}

    stages = _parse_stages(_require(data, "stages", model.value))
    peak = max(stage.target for stage in stages)

    if model is ArrivalModel.RAMPING_VUS:
        start_vus = _integer(data, "start_vus", 0, minimum=0)
        default_max = max(int(math.ceil(peak)), start_vus, 1)
        max_vus = _integer(data, "max_vus", default_max, minimum=1)
        if max_vus < default_max:
            logger.warning(
                "max_vus=%d is below the stage peak %d; VU count will be capped",
                max_vus, default_max,
            )
        return {"stages": stages, "start_vus": start_vus, "max_vus": max_vus}

    pre_allocated = _integer(data, "pre_allocated_vus", None, minimum=1)
    if pre_allocated is None:
        raise ConfigurationError("ramping-arrival-rate requires 'pre_allocated_vus'")
    max_vus = _integer(data, "max_vus", pre_allocated, minimum=1)
    if max_vus < pre_allocated:
        raise ConfigurationError(
            f"'max_vus' ({max_vus}) must be >= 'pre_allocated_vus' ({pre_allocated})"
        )
    time_unit = parse_duration(data.get("time_unit", 1), "time_unit")
    if time_unit <= 0:
        raise ConfigurationError("'time_unit' must be positive")
    return {
        "stages": stages,
        "start_rate": _number(data, "start_rate", 0.0),
        "time_unit": time_unit,
        "pre_allocated_vus": pre_allocated,
        "max_vus": max_vus,
    }


def load_scenario(data: Mapping[str, Any], config: type[Config] | None = None) -> Scenario:
    """
    Build a validated :class:`Scenario` from a mapping.

    Args:
        data: Parsed scenario description.
        config: Engine configuration supplying defaults for request
            timeout, graceful stop and seed.

    Returns:
        The frozen scenario.

    Raises:
        ConfigurationError: On any unknown, missing or invalid field,
            including a malformed payload template or threshold.
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError("Scenario must be a mapping")
    config = config or get_config()

    raw_executor = _require(data, "executor", "scenario")
    try:
        model = ArrivalModel(raw_executor)
    except ValueError as exc:
        raise ConfigurationError(
            f"Unknown executor {raw_executor!r}; "
            f"expected one of {[model.value for model in ArrivalModel]}"
        ) from exc

    _reject_unknown(data, COMMON_FIELDS | MODEL_FIELDS[model], f"{model.value} scenario")

    request_timeout = parse_duration(
        data.get("request_timeout", config.REQUEST_TIMEOUT), "request_timeout"
    )
    if request_timeout <= 0:
        raise ConfigurationError("'request_timeout' must be positive")

    think_time_in_latency = data.get("think_time_in_latency", False)
    if not isinstance(think_time_in_latency, bool):
        raise ConfigurationError("'think_time_in_latency' must be true or false")

    scenario = Scenario(
        name=str(data.get("name", model.value)),
        executor=model,
        target=_parse_target(_require(data, "target", "scenario")),
        payload=_parse_payload(data.get("payload")),
        checks=_parse_checks(data.get("checks")),
        thresholds=parse_thresholds(data.get("thresholds")),
        think_time=parse_duration(data.get("think_time", 0), "think_time"),
        think_time_in_latency=think_time_in_latency,
        graceful_stop=parse_duration(
            data.get("graceful_stop", config.GRACEFUL_STOP), "graceful_stop"
        ),
        request_timeout=request_timeout,
        expected_statuses=_parse_statuses(data.get("expected_statuses")),
        seed=_integer(data, "seed", config.SEED, minimum=0),
        **_model_fields(model, data),
    )

    # Fail fast on template errors rather than inside the first iteration.
    build_payload_generator(scenario.payload, seed=scenario.seed)

    logger.info(
        "Loaded scenario '%s' (%s, %d check(s), %d threshold(s))",
        scenario.name, model.value, len(scenario.checks), len(scenario.thresholds),
    )
    return scenario


def load_scenario_file(path: str | Path, config: type[Config] | None = None) -> Scenario:
    """
    Read a YAML scenario file and validate it.

    Raises:
        ConfigurationError: If the file cannot be read or parsed, or the
            scenario it describes is invalid.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read scenario file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in scenario file {path}: {exc}") from exc

    if data is None:
        raise ConfigurationError(f"Scenario file {path} is empty")
    return load_scenario(data, config)
