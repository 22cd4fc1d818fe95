"""
provisio/errors.py

Error taxonomy for the engine.

Structural errors (raised by the loader and planner before any provider call):
  - ParseError
  - DuplicateNameError
  - UnresolvedReferenceError
  - CycleError
  - UnsupportedKindError

Execution errors (raised while applying a plan):
  - ProviderTransientError (retried internally)
  - ProviderFatalError
  - ApplyError / ApplyCanceled (carry the partial state)

Post-apply errors:
  - UnresolvedOutputError
  - TemplateError
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from provisio.models.state import State


class ProvisioError(Exception):
    """Base class for every error raised by provisio."""


class DeclarationError(ProvisioError):
    """A structural problem found in the declarations.

    Attributes:
        message (str): Human readable description.
        source (Optional[str]): The declaration file, if known.
        line (Optional[int]): 1-based line in `source`, if known.
        address (Optional[str]): The offending resource address, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        line: Optional[int] = None,
        address: Optional[str] = None,
    ) -> None:
        self.message = message
        self.source = source
        self.line = line
        self.address = address
        super().__init__(self._format())

    def _format(self) -> str:
        location = ""
        if self.source is not None:
            location = self.source if self.line is None else f"{self.source}:{self.line}"
        prefix = f"{location}: " if location else ""
        subject = f"[{self.address}] " if self.address else ""
        return f"{prefix}{subject}{self.message}"


class ParseError(DeclarationError):
    """Malformed declaration syntax or schema."""


class DuplicateNameError(DeclarationError):
    """Two declarations share the same (kind, name)."""


class UnresolvedReferenceError(DeclarationError):
    """A reference names a resource, variable or output that does not exist."""


class UnsupportedKindError(DeclarationError):
    """The configured provider has no handler for a declared kind."""


class CycleError(DeclarationError):
    """The reference graph is not acyclic.

    Attributes:
        cycle (List[str]): Addresses forming the cycle, first address repeated last.
    """

    def __init__(self, cycle: List[str]) -> None:
        self.cycle = cycle
        super().__init__(
            "dependency cycle: " + " -> ".join(cycle),
            address=cycle[0] if cycle else None,
        )


class ProviderError(ProvisioError):
    """A provider operation failed.

    Attributes:
        address (str): The resource the operation targeted.
        operation (str): One of create/read/update/delete.
        provider_message (str): The underlying provider message.
    """

    def __init__(self, address: str, operation: str, provider_message: str) -> None:
        self.address = address
        self.operation = operation
        self.provider_message = provider_message
        super().__init__(f"{operation} {address} failed: {provider_message}")


class ProviderTransientError(ProviderError):
    """Rate limits, timeouts and other failures that may succeed on retry."""


class ProviderFatalError(ProviderError):
    """A failure that will not go away by retrying."""


class ApplyError(ProvisioError):
    """Raised when one or more actions fail; the plan was halted.

    Attributes:
        failures (List[ProviderError]): The failed actions' errors.
        state (State): The state as recorded after the last successful action.
    """

    def __init__(self, failures: List[ProviderError], state: "State") -> None:
        self.failures = failures
        self.state = state
        details = "; ".join(str(f) for f in failures)
        super().__init__(f"apply halted after {len(failures)} failure(s): {details}")


class ApplyCanceled(ProvisioError):
    """Raised when dispatching was stopped by a cancellation request."""

    def __init__(self, state: "State", pending: List[str]) -> None:
        self.state = state
        self.pending = pending
        super().__init__(
            f"apply canceled; {len(pending)} action(s) not started: {', '.join(pending)}"
        )


class UnresolvedOutputError(ProvisioError):
    """An output refers to a resource that never reached the created state."""

    def __init__(self, output: str, reference: str) -> None:
        self.output = output
        self.reference = reference
        super().__init__(f"output '{output}' cannot be resolved: {reference}")


class TemplateError(ProvisioError):
    """A local file template is missing or has unfilled placeholders."""
