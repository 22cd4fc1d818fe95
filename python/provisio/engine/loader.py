"""
provisio/engine/loader.py

Declaration Loader: reads YAML declaration documents into a ResourceGraph.

Each document may declare a provider, variable defaults, resources, outputs and
local files (see provisio.models.resource.DeclarationDocument). Variables and
file inclusions are expanded here; resource references are kept as expressions
and only validated for existence.

Raises ParseError, DuplicateNameError or UnresolvedReferenceError, always with the
offending file and line where known.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from provisio.engine.expressions import (
    FILE_RE,
    UNCHANGED,
    escape,
    iter_expressions,
    parse_reference,
    substitute,
)
from provisio.errors import DuplicateNameError, ParseError, UnresolvedReferenceError
from provisio.models.graph import ResourceGraph
from provisio.models.resource import (
    DeclarationDocument,
    LocalFileDecl,
    OutputDecl,
    ProviderDecl,
    Resource,
)

logger = logging.getLogger(__name__)

DECLARATION_SUFFIXES = (".yaml", ".yml")


class LocalFile(NamedTuple):
    """A local file declaration plus the directory its template is relative to."""

    decl: LocalFileDecl
    base_dir: str
    source: Optional[str] = None
    line: Optional[int] = None


class _Lines(NamedTuple):
    """1-based line numbers of the items of one document's sections."""

    resources: List[int]
    outputs: Dict[str, int]
    local_files: List[int]


class Declarations(BaseModel):
    """Everything loaded from a set of declaration documents."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    graph: ResourceGraph
    provider: Optional[ProviderDecl] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, OutputDecl] = Field(default_factory=dict)
    local_files: List[LocalFile] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)


def _expand_paths(paths: Sequence[str]) -> List[str]:
    files: List[str] = []
    for path in paths:
        if os.path.isdir(path):
            files.extend(
                os.path.join(path, entry)
                for entry in sorted(os.listdir(path))
                if entry.endswith(DECLARATION_SUFFIXES)
            )
        elif os.path.isfile(path):
            files.append(path)
        else:
            raise ParseError("no such declaration file or directory", source=path)
    if not files:
        raise ParseError("no declaration documents found", source=", ".join(paths))
    return files


def _document_lines(text: str) -> _Lines:
    """Locate each resource, output and local file of a document."""
    lines = _Lines(resources=[], outputs={}, local_files=[])
    node = yaml.compose(text, Loader=yaml.SafeLoader)
    if not isinstance(node, yaml.MappingNode):
        return lines
    for key_node, value_node in node.value:
        if key_node.value in ("resources", "local_files") and isinstance(
            value_node, yaml.SequenceNode
        ):
            getattr(lines, key_node.value).extend(
                item.start_mark.line + 1 for item in value_node.value
            )
        elif key_node.value == "outputs" and isinstance(value_node, yaml.MappingNode):
            for name_node, _ in value_node.value:
                lines.outputs[str(name_node.value)] = name_node.start_mark.line + 1
    return lines


def _parse_document(source: str) -> Optional[tuple[DeclarationDocument, _Lines]]:
    with open(source, "r", encoding="utf-8") as f:
        text = f.read()

    try:
        data = yaml.safe_load(text)
        lines = _document_lines(text)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 1 if mark is not None else None
        problem = getattr(exc, "problem", None) or str(exc)
        raise ParseError(f"invalid YAML: {problem}", source=source, line=line) from exc

    if data is None:
        return None
    if not isinstance(data, dict):
        raise ParseError("document must be a mapping", source=source, line=1)

    try:
        doc = DeclarationDocument.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = first.get("loc", ())
        line = None
        if len(loc) >= 2 and loc[0] == "resources" and isinstance(loc[1], int):
            if loc[1] < len(lines.resources):
                line = lines.resources[loc[1]]
        where = ".".join(str(part) for part in loc)
        raise ParseError(
            f"invalid declaration at '{where}': {first.get('msg')}",
            source=source,
            line=line,
        ) from exc
    return doc, lines


class _Expander:
    """Expands ${var.*} and ${file(...)} expressions for one document."""

    def __init__(
        self,
        variables: Dict[str, Any],
        base_dir: str,
        source: str,
        line: Optional[int] = None,
        address: Optional[str] = None,
        allow_outputs: bool = False,
    ) -> None:
        self.variables = variables
        self.base_dir = base_dir
        self.source = source
        self.line = line
        self.address = address
        self.allow_outputs = allow_outputs

    def __call__(self, expression: str) -> Any:
        if expression.startswith("var."):
            name = expression[len("var.") :]
            if name not in self.variables:
                raise UnresolvedReferenceError(
                    f"undefined variable '{name}'",
                    source=self.source,
                    line=self.line,
                    address=self.address,
                )
            return self.variables[name]

        file_match = FILE_RE.match(expression)
        if file_match:
            return escape(self._read_file(file_match.group(1).strip().strip("\"'")))

        if expression.startswith("output."):
            if not self.allow_outputs:
                raise ParseError(
                    "output references are only allowed in local_files vars",
                    source=self.source,
                    line=self.line,
                    address=self.address,
                )
            return UNCHANGED

        if parse_reference(expression) is None:
            raise ParseError(
                f"malformed expression '${{{expression}}}'",
                source=self.source,
                line=self.line,
                address=self.address,
            )
        return UNCHANGED

    def _read_file(self, path: str) -> str:
        full = os.path.join(self.base_dir, os.path.expanduser(path))
        try:
            with open(full, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as exc:
            raise ParseError(
                f"cannot read file '{path}': {exc.strerror}",
                source=self.source,
                line=self.line,
                address=self.address,
            ) from exc


def load_declarations(
    paths: Sequence[str], variables: Optional[Dict[str, Any]] = None
) -> Declarations:
    """Load declaration documents and build the resource graph.

    Args:
        paths: Declaration files and/or directories (directories contribute their
            *.yaml / *.yml files in name order).
        variables: Variable values overriding the documents' defaults.

    Returns:
        Declarations: graph, provider, variables, outputs and local files.

    Raises:
        ParseError: Malformed YAML, schema violation, bad expression or missing file.
        DuplicateNameError: Two resources, outputs or local files share a name.
        UnresolvedReferenceError: A reference names something not declared.
    """
    files = _expand_paths(paths)
    parsed: List[tuple[str, DeclarationDocument, _Lines]] = []
    for source in files:
        result = _parse_document(source)
        if result is not None:
            parsed.append((source, result[0], result[1]))

    provider: Optional[ProviderDecl] = None
    provider_source: Optional[str] = None
    defaults: Dict[str, Any] = {}
    for source, doc, _ in parsed:
        if doc.provider is not None:
            if provider is not None and provider != doc.provider:
                raise ParseError(
                    f"conflicting provider declaration (also declared in {provider_source})",
                    source=source,
                )
            provider, provider_source = doc.provider, source
        for name, value in doc.variables.items():
            if name in defaults and defaults[name] != value:
                raise ParseError(f"conflicting default for variable '{name}'", source=source)
            defaults[name] = value

    merged_vars = {**defaults, **(variables or {})}

    resources: List[Resource] = []
    outputs: Dict[str, OutputDecl] = {}
    output_locations: Dict[str, tuple[str, Optional[int]]] = {}
    local_files: List[LocalFile] = []
    for source, doc, lines in parsed:
        base_dir = os.path.dirname(os.path.abspath(source))
        for position, decl in enumerate(doc.resources):
            line = lines.resources[position] if position < len(lines.resources) else None
            expander = _Expander(
                merged_vars, base_dir, source, line, f"{decl.kind}.{decl.name}"
            )
            resources.append(
                Resource(
                    kind=decl.kind,
                    name=decl.name,
                    attributes=substitute(decl.attributes, expander),
                    depends_on=decl.depends_on,
                    source=source,
                    line=line,
                )
            )

        for name, out in doc.normalized_outputs().items():
            line = lines.outputs.get(name)
            if name in outputs:
                raise DuplicateNameError(
                    f"output '{name}' declared twice", source=source, line=line
                )
            expander = _Expander(merged_vars, base_dir, source, line)
            output_locations[name] = (source, line)
            outputs[name] = out.model_copy(
                update={"value": substitute(out.value, expander)}
            )

        for position, lf in enumerate(doc.local_files):
            line = lines.local_files[position] if position < len(lines.local_files) else None
            if any(existing.decl.name == lf.name for existing in local_files):
                raise DuplicateNameError(
                    f"local file '{lf.name}' declared twice", source=source, line=line
                )
            expander = _Expander(merged_vars, base_dir, source, line, allow_outputs=True)
            expanded = lf.model_copy(
                update={
                    "vars": substitute(lf.vars, expander),
                    "path": substitute(lf.path, expander),
                }
            )
            local_files.append(
                LocalFile(decl=expanded, base_dir=base_dir, source=source, line=line)
            )

    if provider is not None:
        expander = _Expander(merged_vars, os.getcwd(), provider_source or "")
        provider = ProviderDecl.model_validate(
            substitute(provider.model_dump(), expander)
        )

    graph = ResourceGraph(resources)
    _check_output_references(graph, outputs, output_locations, local_files)

    logger.debug(
        "Loaded %d resource(s), %d output(s) from %d document(s)",
        len(graph),
        len(outputs),
        len(parsed),
    )
    return Declarations(
        graph=graph,
        provider=provider,
        variables=merged_vars,
        outputs=outputs,
        local_files=local_files,
        sources=[source for source, _, _ in parsed],
    )


def _check_output_references(
    graph: ResourceGraph,
    outputs: Dict[str, OutputDecl],
    output_locations: Dict[str, tuple[str, Optional[int]]],
    local_files: List[LocalFile],
) -> None:
    for name, out in outputs.items():
        source, line = output_locations.get(name, (None, None))
        for expression in iter_expressions(out.value):
            ref = parse_reference(expression)
            if ref is None:
                raise ParseError(
                    f"output '{name}' has unsupported expression '{expression}'",
                    source=source,
                    line=line,
                )
            if ref.address not in graph:
                raise UnresolvedReferenceError(
                    f"output '{name}' references undeclared resource '{ref.address}'",
                    source=source,
                    line=line,
                )

    for lf in local_files:
        for expression in iter_expressions(lf.decl.vars):
            if expression.startswith("output."):
                target = expression[len("output.") :]
                if target not in outputs:
                    raise UnresolvedReferenceError(
                        f"local file '{lf.decl.name}' references undeclared output '{target}'",
                        source=lf.source,
                        line=lf.line,
                    )
                continue
            ref = parse_reference(expression)
            if ref is not None and ref.address not in graph:
                raise UnresolvedReferenceError(
                    f"local file '{lf.decl.name}' references undeclared resource '{ref.address}'",
                    source=lf.source,
                    line=lf.line,
                )
