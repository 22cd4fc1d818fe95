"""
provisio/engine/expressions.py

Helpers for the `${...}` expressions that may appear in declared string values:

  - ${kind.name.attr}   reference to another resource's attribute
  - ${var.NAME}         variable (expanded at load time)
  - ${file(PATH)}       file contents (expanded at load time)
  - ${output.NAME}      output value (local file vars only)

`$${` is an escaped literal `${`. File contents are escaped when inlined so that
shell scripts containing `${VAR}` are never mistaken for references.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterator, List, NamedTuple, Optional, Tuple

EXPRESSION_RE = re.compile(r"(?<!\$)\$\{([^}]+)\}")
FILE_RE = re.compile(r"^file\((.+)\)$")

# Returned by a resolver to leave an expression untouched.
UNCHANGED = object()


class Reference(NamedTuple):
    """A parsed `${kind.name.attr}` expression."""

    kind: str
    name: str
    path: Tuple[str, ...]

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"


def parse_reference(expression: str) -> Optional[Reference]:
    """Parse a resource reference, or return None for var/file/output expressions."""
    expression = expression.strip()
    if FILE_RE.match(expression):
        return None
    parts = expression.split(".")
    if parts[0] in ("var", "output"):
        return None
    if len(parts) < 3 or not all(parts):
        return None
    return Reference(kind=parts[0], name=parts[1], path=tuple(parts[2:]))


def iter_expressions(value: Any) -> Iterator[str]:
    """Yield every expression body found in a (possibly nested) value."""
    if isinstance(value, str):
        for match in EXPRESSION_RE.finditer(value):
            yield match.group(1).strip()
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_expressions(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_expressions(item)


def collect_references(value: Any) -> List[Reference]:
    """All resource references in `value`, in order of first appearance."""
    seen: List[Reference] = []
    for expression in iter_expressions(value):
        ref = parse_reference(expression)
        if ref is not None and ref not in seen:
            seen.append(ref)
    return seen


def substitute(value: Any, resolver: Callable[[str], Any]) -> Any:
    """Return a copy of `value` with expressions replaced by `resolver(expr)`.

    A string made of exactly one expression is replaced by the raw resolved value,
    so lists and numbers survive. Otherwise resolved values are interpolated as text.
    """
    if isinstance(value, str):
        whole = EXPRESSION_RE.fullmatch(value)
        if whole:
            resolved = resolver(whole.group(1).strip())
            return value if resolved is UNCHANGED else resolved

        def _replace(match: "re.Match[str]") -> str:
            resolved = resolver(match.group(1).strip())
            if resolved is UNCHANGED:
                return match.group(0)
            return _to_text(resolved)

        return EXPRESSION_RE.sub(_replace, value)
    if isinstance(value, dict):
        return {key: substitute(item, resolver) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute(item, resolver) for item in value]
    return value


def escape(text: str) -> str:
    """Escape literal `${` so the text is never read as an expression."""
    return text.replace("${", "$${")


def unescape(value: Any) -> Any:
    """Turn escaped `$${` back into literal `${` throughout a nested value."""
    if isinstance(value, str):
        return value.replace("$${", "${")
    if isinstance(value, dict):
        return {key: unescape(item) for key, item in value.items()}
    if isinstance(value, list):
        return [unescape(item) for item in value]
    return value


def lookup_path(attributes: Any, path: Tuple[str, ...]) -> Any:
    """Walk `path` through nested dicts/lists. Raises KeyError when missing."""
    current = attributes
    for part in path:
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise KeyError(".".join(path))
    return current


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
