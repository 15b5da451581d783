"""
Load-generation engine.

Executes HTTP load-test scenarios (constant virtual users, staged VU
ramps, or open-loop arrival-rate ramps), checks every response, folds
the results into aggregated metrics and returns a threshold verdict.

Typical use::

    from loadgen import create_run

    report = create_run("scenarios/order_baseline.yml").execute()
    if not report.passed:
        for failure in report.verdict.failures:
            ...

The factory wires configuration and logging so each caller (tests, CI
jobs, ad-hoc scripts) gets an independently configured :class:`Run`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from loadgen.config import get_config
from loadgen.errors import ConfigurationError
from loadgen.executor import new_session
from loadgen.loader import load_scenario, load_scenario_file
from loadgen.models import Scenario
from loadgen.run import Run, RunReport, SessionFactory

__all__ = [
    "ConfigurationError",
    "Run",
    "RunReport",
    "Scenario",
    "create_run",
    "load_scenario",
    "load_scenario_file",
]

logger = logging.getLogger(__name__)


def create_run(
    scenario: Scenario | Mapping[str, Any] | str | Path,
    config_name: str | None = None,
    session_factory: SessionFactory | None = None,
) -> Run:
    """
    Construct a ready-to-execute :class:`Run`.

    Args:
        scenario: A validated :class:`Scenario`, a mapping to validate,
            or the path of a YAML scenario file.
        config_name: Optional environment key ("development", "testing",
            "production").  When *None*, the ``LOADGEN_ENV`` environment
            variable is consulted.
        session_factory: Optional replacement for the HTTP session
            factory, mainly for tests.

    Returns:
        A :class:`Run` that has not started yet.

    Raises:
        ConfigurationError: If the scenario is invalid.
    """
    config_class = get_config(config_name)
    logging.basicConfig(
        level=config_class.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if isinstance(scenario, (str, Path)):
        scenario = load_scenario_file(scenario, config_class)
    elif not isinstance(scenario, Scenario):
        scenario = load_scenario(scenario, config_class)

    logger.info("Creating run for '%s' with config: %s", scenario.name, config_class.__name__)
    return Run(scenario, config=config_class, session_factory=session_factory or new_session)
