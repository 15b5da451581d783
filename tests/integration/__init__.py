"""
Integration tests that execute complete load runs over real sockets.

The target service is started by the ``live_server`` fixture in
``tests/conftest.py``.
"""
