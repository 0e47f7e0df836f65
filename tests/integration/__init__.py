"""
Integration Tests Package for the Vehicle Rental Core

This package contains integration tests that verify the booking lifecycle,
persistence, settings and messaging work together correctly.

Integration tests focus on:
1. End-to-end rental workflows
2. Storage behaviour on the in-memory and SQLAlchemy backends
3. Conditional writes under concurrent operations
4. Vehicle status sync failures reaching operators
"""

import sys
from pathlib import Path

# Add the project root to Python path for imports
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

# Export test categories for easy reference
TEST_CATEGORIES = {
    "booking_lifecycle": "End-to-end booking workflows on every storage backend",
    "sqlalchemy_repositories": "SQLAlchemy repositories against SQLite",
}
