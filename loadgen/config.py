"""
Engine configuration.

Defines environment-specific configuration classes for the engine's
operational defaults: how long a request may take, how long in-flight
iterations get to finish after the run window closes, how often the
schedulers wake up, and how verbose logging is.  Scenario files may
override the per-scenario values; everything else comes from here.

The ``get_config`` factory selects the right class based on the
``LOADGEN_ENV`` environment variable (or an explicit key).
"""

from __future__ import annotations

import os


class Config:
    """
    Base (shared) configuration for the engine.

    Individual settings can be overridden by environment variables so
    that CI jobs can tighten or relax them without editing scenarios.
    """

    # Seconds a single request may take before it is recorded as a
    # transport timeout (status 0).
    REQUEST_TIMEOUT: float = float(os.environ.get("LOADGEN_REQUEST_TIMEOUT", "60"))

    # Seconds in-flight iterations get to finish once scheduling stops.
    GRACEFUL_STOP: float = float(os.environ.get("LOADGEN_GRACEFUL_STOP", "30"))

    # Scheduler wake-up interval in seconds.
    SCHEDULER_TICK: float = float(os.environ.get("LOADGEN_SCHEDULER_TICK", "0.01"))

    # Base seed for randomized payloads.
    SEED: int = int(os.environ.get("LOADGEN_SEED", "0"))

    LOG_LEVEL: str = os.environ.get("LOADGEN_LOG_LEVEL", "INFO")


class DevelopmentConfig(Config):
    """Development defaults: verbose logging."""

    LOG_LEVEL: str = os.environ.get("LOADGEN_LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    """
    Test-suite overrides.

    Short timeouts and grace periods keep test runs fast when they
    simulate slow or unreachable targets.
    """

    REQUEST_TIMEOUT: float = float(os.environ.get("TEST_LOADGEN_REQUEST_TIMEOUT", "5"))
    GRACEFUL_STOP: float = float(os.environ.get("TEST_LOADGEN_GRACEFUL_STOP", "3"))
    SCHEDULER_TICK: float = 0.005
    SEED: int = 1234


class ProductionConfig(Config):
    """Quiet logging for CI and long soak runs."""

    LOG_LEVEL: str = os.environ.get("LOADGEN_LOG_LEVEL", "WARNING")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": Config,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the configuration class for the given environment.

    Args:
        env: One of ``"development"``, ``"testing"``, or
            ``"production"``.  When *None*, the ``LOADGEN_ENV``
            environment variable is consulted, falling back to the
            base ``Config`` if unset.

    Returns:
        The ``Config`` subclass matching the requested environment,
        or ``Config`` if the key is unrecognised.
    """
    if env is None:
        env = os.environ.get("LOADGEN_ENV", "default")
    return config.get(env, config["default"])
