"""Shared test fixtures."""

import importlib
import os

import pytest
from unittest.mock import MagicMock

from llmd_cpu.functions import ENV_PREFIX, LEGACY_ENV_VARS, environment_variable_to_dict


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    """Drop any LLMDCPU_* or legacy variable from the caller and point the work dir at tmp_path."""
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX) or key in LEGACY_ENV_VARS:
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setenv(f"{ENV_PREFIX}CONTROL_WORK_DIR", str(tmp_path))
    monkeypatch.setenv(f"{ENV_PREFIX}CURRENT_STEP_NAME", "test")
    return tmp_path


@pytest.fixture
def ev(tmp_path):
    """Fully populated configuration dictionary built from the defaults."""
    return environment_variable_to_dict({"current_step_name": "test"})


@pytest.fixture
def dry_run_ev(ev):
    ev["control_dry_run"] = True
    return ev


@pytest.fixture
def load_step():
    """Import a numbered step module, e.g. load_step("06_deploy_charts")."""

    def _load(step_name):
        return importlib.import_module(f"llmd_cpu.steps.{step_name}")

    return _load


@pytest.fixture
def make_pod():
    """Factory for pykube Pod stand-ins carrying a Ready condition."""

    def _make(name, ready=True, phase="Running"):
        pod = MagicMock()
        pod.name = name
        pod.obj = {
            "metadata": {"name": name},
            "status": {
                "phase": phase,
                "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
            },
        }
        return pod

    return _make


@pytest.fixture
def kubeconfig(tmp_path):
    """Kubeconfig that only knows about an unrelated "other" context."""
    path = tmp_path / "kubeconfig"
    path.write_text(
        """\
apiVersion: v1
kind: Config
clusters:
- name: other
  cluster:
    server: https://127.0.0.1:6443
users:
- name: other
  user:
    token: abc123
contexts:
- name: other
  context:
    cluster: other
    user: other
current-context: other
"""
    )
    return path
