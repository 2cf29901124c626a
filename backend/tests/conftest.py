"""
Shared pytest fixtures for Stackyard tests.

Fixtures provided:
- encryption_key: Per-test Fernet key file (secrets in the database use it)
- test_db: DatabaseManager on a temporary SQLite file
- temp_stacks_dir: Temporary durable stacks directory (patches stack_storage.STACKS_DIR)
- endpoint: Kubernetes endpoint record the test stacks belong to
- file_stack / git_stack: Stored stacks of each source

Kubernetes, git and AWS are never reached: tests mock KubeClientFactory,
KubeDeployer, GitService and boto3.
"""

import os
import sys
import tempfile
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from database import DatabaseManager, Endpoint
from deployment import stack_storage
from deployment.types import (
    AutoUpdateSettings,
    FileSource,
    GitAuthentication,
    GitConfig,
    GitSource,
    Stack,
)
from utils import encryption


@pytest.fixture(autouse=True)
def encryption_key(tmp_path):
    """Keep the Fernet key of each test in its own temp dir."""
    key_path = str(tmp_path / "encryption.key")
    with patch.object(encryption, 'KEY_PATH', key_path):
        yield key_path


@pytest.fixture(scope="function")
def test_db():
    """
    Create a temporary SQLite database for testing.

    Yields a DatabaseManager whose file is removed after the test.
    """
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    db = DatabaseManager(f'sqlite:///{db_path}')

    yield db

    db.engine.dispose()
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def temp_stacks_dir(tmp_path):
    """Create a temporary stacks directory and patch STACKS_DIR."""
    stacks_dir = tmp_path / "stacks"
    stacks_dir.mkdir()
    with patch.object(stack_storage, 'STACKS_DIR', stacks_dir):
        yield stacks_dir


@pytest.fixture
def endpoint(test_db):
    return test_db.create_endpoint(Endpoint(name="local", in_cluster=True))


@pytest.fixture
def file_stack(test_db, endpoint, temp_stacks_dir):
    """File-managed stack whose durable manifest holds "B"."""
    stack = test_db.create_stack(Stack(
        id=0,
        name="web",
        entry_point="manifest.yml",
        namespace="default",
        endpoint_id=endpoint.id,
        project_path="",
        created_by="admin",
        source=FileSource(),
    ))
    stack_dir = temp_stacks_dir / str(stack.id)
    stack_dir.mkdir()
    (stack_dir / "manifest.yml").write_bytes(b"B")
    stack.project_path = str(stack_dir)
    test_db.update_stack(stack)
    return stack


@pytest.fixture
def git_stack(test_db, endpoint, temp_stacks_dir):
    """Git-managed stack with stored credentials and a live-looking job id."""
    stack = test_db.create_stack(Stack(
        id=0,
        name="api",
        entry_point="deploy/app.yml",
        namespace="apps",
        endpoint_id=endpoint.id,
        project_path="",
        created_by="admin",
        source=GitSource(GitConfig(
            url="https://git.example.com/org/api.git",
            reference_name="refs/heads/main",
            authentication=GitAuthentication(username="u", password="old"),
            config_hash="a" * 40,
        )),
        auto_update=AutoUpdateSettings(interval="1h", job_id="j1"),
    ))
    stack.project_path = str(temp_stacks_dir / str(stack.id))
    test_db.update_stack(stack)
    return stack
