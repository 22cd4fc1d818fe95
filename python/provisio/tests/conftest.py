"""
Shared test fixtures for the provisio test suite.

This module provides:
- Declaration document writers backed by tmp_path
- A memory provider with an inspectable simulated cloud
- Engine settings with zero backoff so retry tests run instantly
"""

import textwrap
from pathlib import Path
from typing import Callable

import pytest

from provisio.engine.loader import Declarations, load_declarations
from provisio.models.settings import EngineSettings
from provisio.providers.memory import MemoryProvider
from provisio.utils.state_storage import MemoryStorage

# ============================================================================
# DECLARATION DOCUMENTS
# ============================================================================

NSI_YAML = """
provider:
  name: memory
resources:
  - kind: network
    name: n
    attributes:
      cidr_block: 10.0.0.0/16
  - kind: subnet
    name: s
    attributes:
      network_id: "${network.n.id}"
      cidr_block: 10.0.1.0/24
      tags: {Name: dev}
  - kind: instance
    name: i
    attributes:
      subnet_id: "${subnet.s.id}"
      ami: ami-1
      instance_type: t2.micro
outputs:
  ip: "${instance.i.public_ip}"
"""


@pytest.fixture
def nsi_yaml() -> str:
    """Network N, subnet S referencing N, instance I referencing S."""
    return NSI_YAML


@pytest.fixture
def write_doc(tmp_path: Path) -> Callable[..., Path]:
    """Write a YAML document (dedented) into tmp_path and return its path."""

    def _write(text: str, name: str = "main.yaml") -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text).lstrip(), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def load(write_doc: Callable[..., Path]) -> Callable[..., Declarations]:
    """Write a document and load it as declarations."""

    def _load(text: str, **variables: object) -> Declarations:
        return load_declarations([str(write_doc(text))], variables or None)

    return _load


# ============================================================================
# ENGINE FIXTURES
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    """Settings with instant retries and a tmp state directory."""
    return EngineSettings(
        parallelism=4,
        max_attempts=3,
        base_delay=0.0,
        max_delay=0.0,
        jitter=False,
        host_os="linux",
        state_path=str(tmp_path / "state"),
    )


@pytest.fixture
def provider() -> MemoryProvider:
    return MemoryProvider()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()
