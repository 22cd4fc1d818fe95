"""
provisio/models/state.py

Defines the persisted state models:
 - StateRef: a reference to a project + workspace, with naming validations
   enforced by pydantic validators. Storage backends derive their keys from it.
 - ResourceState: the last-known record of one created resource.
 - OutputValue: a resolved output.
 - State: everything provisio remembers between runs.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Type, TypeVar

from pydantic import BaseModel, Field, field_validator

from provisio.models.validator import validate_type

T = TypeVar("T")

STATE_FORMAT_VERSION = 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StateRef(BaseModel):
    """Represents a project + workspace combination for locating state.

    Naming Validations:
      - project: Slashes are allowed; dots/newlines are NOT allowed.
      - workspace: Dots, slashes, and newline are NOT allowed.
                  Defaults to "default" if not explicitly provided.
    """

    project: str
    workspace: str

    def __init__(
        __pydantic_self__, project: str, workspace: str = "default", **data: Any
    ) -> None:
        super().__init__(project=project, workspace=workspace, **data)

    @field_validator("project")
    @classmethod
    def validate_project(cls, value: str) -> str:
        """Check that `project` is non-empty and has no dots or newline."""
        if not value or "." in value or "\n" in value:
            raise ValueError("'project' must be non-empty without dots/newline.")
        return value

    @field_validator("workspace")
    @classmethod
    def validate_workspace(cls, value: str) -> str:
        """Check that `workspace` does not contain dots, slash, or newline."""
        if not value or any(x in value for x in [".", "/", "\n"]):
            raise ValueError("Dots/slash/newline not allowed in 'workspace'.")
        return value

    def flat_name(self) -> str:
        """project/workspace flattened into a single path-safe token."""
        return f"{self.project.replace('/', '.')}.{self.workspace}"


class ResourceState(BaseModel):
    """Last-known record of a created resource.

    Attributes:
        kind: Resource kind.
        name: Logical name.
        config: Declared attributes as last applied (unresolved form, used for diffs).
        attributes: Resolved inputs merged with provider-assigned attributes
            (ids, addresses). References and outputs resolve against these.
        dependencies: Addresses this resource depended on when last applied.
    """

    kind: str
    name: str
    config: Dict[str, Any] = Field(default_factory=dict)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"


class OutputValue(BaseModel):
    """A resolved output value.

    Attributes:
        sensitive: True if the value should not be printed by default.
        value: Arbitrary data resolved from state.
    """

    sensitive: bool = False
    value: Any


class State(BaseModel):
    """Everything remembered between runs.

    Attributes:
        version: Format version of this document.
        serial: Incremented on every write.
        lineage: Random id fixed when the state is first created.
        resources: Address -> ResourceState, in creation order.
        outputs: Output name -> OutputValue from the last successful apply.
    """

    version: int = STATE_FORMAT_VERSION
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: Dict[str, ResourceState] = Field(default_factory=dict)
    outputs: Dict[str, OutputValue] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        """True if no resources are recorded."""
        return not self.resources

    def record(self, entry: ResourceState) -> None:
        self.resources[entry.address] = entry

    def forget(self, address: str) -> None:
        self.resources.pop(address, None)

    def get_output(self, output_name: str, output_type: Type[T]) -> T:
        """Retrieve a typed output.

        Raises:
            KeyError: If the output is missing.
            ValueError: If validation to output_type fails.
        """
        output_val = self.outputs.get(output_name)
        if output_val is None:
            raise KeyError(f"Output '{output_name}' not found in state.")
        return validate_type(output_val.value, output_type)
