"""Shared pytest fixtures and helpers for svcman tests"""

import os
import sys
import json
import shutil
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional

import pytest
from git import Repo

from svcman.config import Config, ServiceSpec


# Skip tests on Windows that require Unix-specific features
SKIP_ON_WINDOWS = pytest.mark.skipif(
    sys.platform == "win32",
    reason="Test requires Unix-specific features"
)

RUN_SCRIPT = "#!/bin/sh\necho started\nexec sleep 60\n"


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing"""
    tmpdir = tempfile.mkdtemp(prefix='svcman_test_')
    yield tmpdir
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def lock_path(temp_dir, monkeypatch):
    """Point the default lock record into the temporary directory"""
    path = os.path.join(temp_dir, "svcman.pid")
    monkeypatch.setenv("SVCMAN_LOCK_PATH", path)
    return path


@pytest.fixture
def upstream_repo(temp_dir):
    """Create an upstream git repository with a runnable service"""
    path = os.path.join(temp_dir, "upstream")
    repo = Repo.init(path)
    commit_file(repo, "run.sh", RUN_SCRIPT, "Initial commit", executable=True)
    yield repo
    repo.close()


@pytest.fixture
def sources_root(temp_dir):
    root = os.path.join(temp_dir, "sources")
    os.makedirs(root)
    return root


def commit_file(repo: Repo, name: str, content: str, message: str, executable: bool = False) -> str:
    """
    Write a file into a repository's working tree and commit it.

    Returns:
        The new commit's SHA
    """
    path = Path(repo.working_tree_dir) / name
    path.write_text(content)
    if executable:
        path.chmod(0o755)
    repo.index.add([name])
    return repo.index.commit(message).hexsha


def make_config(root: str, **services: ServiceSpec) -> Config:
    return Config(root=root, services=dict(services))


def write_json_config(path: str, data: dict) -> str:
    with open(path, 'w') as f:
        json.dump(data, f)
    return path


def wait_for(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.05) -> bool:
    """Poll until condition() is true or timeout expires"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


def read_pid_file(path: str, timeout: float = 5.0) -> Optional[int]:
    """Wait for a service to write its PID and return it"""
    def ready():
        try:
            return bool(Path(path).read_text().strip())
        except FileNotFoundError:
            return False

    if not wait_for(ready, timeout):
        return None
    return int(Path(path).read_text().strip())
