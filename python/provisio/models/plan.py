"""
provisio/models/plan.py

Pydantic models for an execution plan: an ordered list of create/update/destroy
actions, each listing the actions that must finish before it may start.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal

from pydantic import BaseModel, Field


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"


_SYMBOLS = {
    ActionType.CREATE: "+",
    ActionType.UPDATE: "~",
    ActionType.DESTROY: "-",
}


class Action(BaseModel):
    """One pending operation against one resource.

    Attributes:
        type: create, update or destroy.
        address: 'kind.name' of the target resource.
        kind: Resource kind, used to pick the provider handler.
        name: Logical name.
        changed: Attribute names that differ from state (update/replace only).
        replace: True when this action is half of a destroy+create pair.
        requires: Keys of actions that must complete before this one.
    """

    type: ActionType
    address: str
    kind: str
    name: str
    changed: List[str] = Field(default_factory=list)
    replace: bool = False
    requires: List[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.address}"

    def describe(self) -> str:
        symbol = "-/+" if self.replace else _SYMBOLS[self.type]
        text = f"{symbol} {self.type.value} {self.address}"
        if self.changed:
            text += f" ({', '.join(self.changed)})"
        return text


class Plan(BaseModel):
    """An ordered sequence of actions.

    Create/update actions appear after the actions they depend on; destroy
    actions appear before the destroys of the resources they depend on.
    """

    mode: Literal["apply", "destroy"] = "apply"
    actions: List[Action] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.actions

    def get(self, key: str) -> Action:
        for action in self.actions:
            if action.key == key:
                return action
        raise KeyError(key)

    def keys(self) -> List[str]:
        return [action.key for action in self.actions]

    def summary(self) -> Dict[str, int]:
        """Counts in Terraform terms: replacements count as add + destroy."""
        return {
            "add": sum(1 for a in self.actions if a.type is ActionType.CREATE),
            "change": sum(1 for a in self.actions if a.type is ActionType.UPDATE),
            "destroy": sum(1 for a in self.actions if a.type is ActionType.DESTROY),
        }

    def render(self) -> str:
        if self.is_empty():
            return "No changes. Infrastructure matches the declarations."
        lines = [action.describe() for action in self.actions]
        counts = self.summary()
        lines.append(
            f"Plan: {counts['add']} to add, {counts['change']} to change, "
            f"{counts['destroy']} to destroy."
        )
        return "\n".join(lines)
