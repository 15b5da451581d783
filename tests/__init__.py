"""
Test suite for the load-generation engine.

This package contains:
- unit/: engine components tested in isolation, with fake HTTP sessions
- integration/: full runs against a live Flask order service
"""
