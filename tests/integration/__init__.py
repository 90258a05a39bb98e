"""Integration tests for the voting system.

This package contains comprehensive integration tests for the distributed
voting system, including:

- End-to-end vote flow tests
- API endpoint validation
- Duplicate detection and handling
- Concurrent request handling
- Load and performance testing

All tests require the docker-compose stack to be running.
"""

__version__ = "1.0.0"
