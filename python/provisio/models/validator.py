"""
provisio/models/validator.py

Validates plain Python values (outputs, provider payloads) against a
pydantic-compatible type using TypeAdapter.
"""

from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Coerce `obj` into `expected_type`, e.g. an output value into `str`.

    Args:
        obj (Any): The value read from state.
        expected_type (Type[T]): The type to validate against.

    Returns:
        T: The validated value.

    Raises:
        ValueError: If the value does not fit the type.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Value does not match {expected_type}: {e}") from e
