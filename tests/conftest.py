"""
Pytest configuration and fixtures for Entitlement Registry tests.
"""

import os
import sys

import pytest

# Ensure project root is on the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment variables before importing config
os.environ['ENVIRONMENT'] = 'test'
os.environ['DB_HOST'] = 'localhost'
os.environ['DB_PORT'] = '5432'
os.environ['POSTGRES_DB'] = 'entitlement_registry_test'
os.environ['POSTGRES_USER'] = 'entitlement_user'
os.environ['POSTGRES_PASSWORD'] = 'entitlement_password'
os.environ['ROLE_EDITOR_GROUP_ID'] = 'role-editor-group'
os.environ['MIGRATION_SOURCE_GROUP_ID'] = 'migration-source-group'


@pytest.fixture
def test_config():
    """Provide a freshly loaded configuration."""
    from config import AppConfig
    return AppConfig.load()


@pytest.fixture
def lock():
    from helpers import InMemoryLock
    return InMemoryLock()


@pytest.fixture
def fake_db():
    from helpers import FakeDB
    return FakeDB()
