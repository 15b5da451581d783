"""
Response checks.

A check is a named predicate over an :class:`~loadgen.models.HttpResult`
(``"status is 201"``, ``"response has orderId"``).  Failed checks are
recorded, never raised: a predicate that itself raises is reported as a
failed check carrying the error text, and the iteration carries on.

Built-in check factories cover what scenario files can express without
Python code:

- :func:`status_check` - status is one of the given codes
- :func:`json_field_check` - JSON body contains a (dotted) field
- :func:`body_contains_check` - raw body contains a substring
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from loadgen.errors import CheckFailure, ConfigurationError
from loadgen.models import Check, CheckResult, HttpResult

logger = logging.getLogger(__name__)


def status_check(*statuses: int, name: str | None = None) -> Check:
    """Pass when the response status is one of ``statuses``."""
    if not statuses:
        raise ConfigurationError("status check needs at least one status code")
    allowed = frozenset(statuses)
    if name is None:
        name = f"status is {' or '.join(str(code) for code in statuses)}"
    return Check(name=name, predicate=lambda result: result.status in allowed)


def json_field_check(path: str, name: str | None = None) -> Check:
    """
    Pass when the JSON body contains ``path``.

    ``path`` may be dotted (``"order.id"``) to reach nested objects.  A
    body that is not valid JSON makes the predicate raise, which the
    evaluator records as a failed check.
    """
    keys = path.split(".")

    def _has_field(result: HttpResult) -> bool:
        node: Any = result.json()
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return False
            node = node[key]
        return node is not None

    return Check(name=name or f"response has {path}", predicate=_has_field)


def body_contains_check(text: str, name: str | None = None) -> Check:
    """Pass when the decoded body contains ``text``."""
    needle = text.encode("utf-8")
    return Check(
        name=name or f"body contains {text!r}",
        predicate=lambda result: needle in result.body,
    )


def check_from_config(spec: dict[str, Any]) -> Check:
    """
    Build a built-in check from a scenario-file mapping.

    Examples::

        {status: [201]}
        {status: [200, 201], name: "status is 200 or 201"}
        {json_field: orderId, name: "Response has orderId"}
        {body_contains: "created"}

    Raises:
        ConfigurationError: If the mapping names no known check kind or
            carries unknown keys.
    """
    if not isinstance(spec, dict):
        raise ConfigurationError(f"Check must be a mapping, got {spec!r}")

    kinds = [kind for kind in ("status", "json_field", "body_contains") if kind in spec]
    if len(kinds) != 1:
        raise ConfigurationError(
            f"Check must define exactly one of status, json_field, body_contains: {spec!r}"
        )
    unknown = set(spec) - {kinds[0], "name"}
    if unknown:
        raise ConfigurationError(f"Unknown check field(s): {sorted(unknown)}")

    kind = kinds[0]
    name = spec.get("name")
    value = spec[kind]

    if kind == "status":
        codes = value if isinstance(value, list) else [value]
        if not all(isinstance(code, int) for code in codes):
            raise ConfigurationError(f"status check codes must be integers: {value!r}")
        return status_check(*codes, name=name)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{kind} check needs a non-empty string: {value!r}")
    if kind == "json_field":
        return json_field_check(value, name=name)
    return body_contains_check(value, name=name)


def _run_predicate(check: Check, result: HttpResult) -> bool:
    try:
        return bool(check.predicate(result))
    except Exception as exc:
        raise CheckFailure(f"{exc.__class__.__name__}: {exc}") from exc


def evaluate_checks(result: HttpResult, checks: Sequence[Check]) -> list[CheckResult]:
    """
    Evaluate every check against ``result``.

    Args:
        result: The captured response.
        checks: Checks to run, in order.

    Returns:
        One :class:`CheckResult` per check.  A check whose predicate
        raised is reported as failed with ``error`` set.
    """
    outcomes: list[CheckResult] = []
    for check in checks:
        try:
            passed = _run_predicate(check, result)
        except CheckFailure as exc:
            logger.debug("Check %r errored: %s", check.name, exc)
            outcomes.append(CheckResult(name=check.name, passed=False, error=str(exc)))
            continue
        outcomes.append(CheckResult(name=check.name, passed=passed))
    return outcomes


def check_map(results: Iterable[CheckResult]) -> dict[str, bool]:
    """Collapse check results into a name → passed mapping."""
    return {result.name: result.passed for result in results}
