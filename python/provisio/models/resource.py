"""
provisio/models/resource.py

Pydantic models for declared resources and the documents that declare them:
 - Address: (kind, name) identity of a resource.
 - Resource: a fully loaded declaration, ready to be placed into a ResourceGraph.
 - ResourceDecl / OutputDecl / LocalFileDecl / ProviderDecl / DeclarationDocument:
   the schema of one YAML declaration document.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from provisio.engine.expressions import Reference, collect_references

KIND_PATTERN = r"^[a-z][a-z0-9_]*$"
NAME_PATTERN = r"^[A-Za-z0-9_-]+$"

AttributeValue = Union[str, int, float, bool, None, Dict[str, Any], List[Any]]


class Address(BaseModel):
    """Identity of a resource: its kind and logical name."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(pattern=KIND_PATTERN)
    name: str = Field(pattern=NAME_PATTERN)

    @classmethod
    def parse(cls, text: str) -> Address:
        """Parse 'kind.name' into an Address. Raises ValueError if malformed."""
        kind, sep, name = text.partition(".")
        if not sep or not kind or not name:
            raise ValueError(f"'{text}' is not a valid address (expected kind.name)")
        return cls(kind=kind, name=name)

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"


class Resource(BaseModel):
    """A declared resource after load-time expansion of variables and files.

    Attributes:
        kind: Resource kind (e.g. 'network', 'instance').
        name: Logical name, unique within its kind.
        attributes: Declared attribute values. May still contain ${kind.name.attr}
            references; these are resolved at apply time.
        depends_on: Extra dependencies as 'kind.name' strings.
        source: Declaration file this resource came from.
        line: 1-based line of the declaration in `source`.
        index: Position in overall declaration order.
    """

    kind: str
    name: str
    attributes: Dict[str, AttributeValue] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    source: Optional[str] = None
    line: Optional[int] = None
    index: int = 0

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    def attribute_references(self) -> List[Reference]:
        return collect_references(self.attributes)

    def references(self) -> List[str]:
        """Addresses this resource depends on, in order of first appearance."""
        refs = [ref.address for ref in self.attribute_references()]
        return list(dict.fromkeys(refs + list(self.depends_on)))


class ResourceDecl(BaseModel):
    """One entry of a document's `resources` list."""

    model_config = ConfigDict(extra="forbid")

    kind: str = Field(pattern=KIND_PATTERN)
    name: str = Field(pattern=NAME_PATTERN)
    attributes: Dict[str, AttributeValue] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, value: List[str]) -> List[str]:
        """Each entry must look like 'kind.name'."""
        for entry in value:
            Address.parse(entry)
        return value


class OutputDecl(BaseModel):
    """A named output: an expression resolved against state after apply."""

    model_config = ConfigDict(extra="forbid")

    value: AttributeValue
    sensitive: bool = False
    description: str = ""


class LocalFileDecl(BaseModel):
    """A local file rendered from a template after apply.

    The template name may contain `{host_os}`, which selects a variant from the
    engine settings (e.g. 'linux-ssh-config.tpl' vs 'windows-ssh-config.tpl').
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(pattern=NAME_PATTERN)
    path: str
    template: str
    vars: Dict[str, AttributeValue] = Field(default_factory=dict)
    file_permission: Optional[str] = Field(default=None, pattern=r"^0?[0-7]{3}$")


class ProviderDecl(BaseModel):
    """Provider selection plus provider-specific options (region, profile...)."""

    model_config = ConfigDict(extra="allow")

    name: str

    def options(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class DeclarationDocument(BaseModel):
    """Schema of one YAML declaration document."""

    model_config = ConfigDict(extra="forbid")

    provider: Optional[ProviderDecl] = None
    variables: Dict[str, AttributeValue] = Field(default_factory=dict)
    resources: List[ResourceDecl] = Field(default_factory=list)
    outputs: Dict[str, Union[OutputDecl, str]] = Field(default_factory=dict)
    local_files: List[LocalFileDecl] = Field(default_factory=list)

    def normalized_outputs(self) -> Dict[str, OutputDecl]:
        """Outputs with the short `name: expression` form expanded."""
        return {
            name: decl if isinstance(decl, OutputDecl) else OutputDecl(value=decl)
            for name, decl in self.outputs.items()
        }
