"""
provisio/engine/planner.py

Dependency Resolver / Planner: diffs declared resources against state and
produces an ordered Plan.

For each declared resource, in dependency order:
  - absent from state                      -> create
  - same config as last applied            -> no action
  - an immutable attribute changed         -> destroy + create (replace)
  - only mutable attributes changed        -> update

An attribute that references a resource being created or replaced in the same
plan counts as changed, since the value it resolves to will change. A
resource whose applied config references a replaced resource is replaced too, so
the old object is never destroyed while still in use. Only the dependency set
changing (e.g. `depends_on`) is an update that records the new edges. Resources in
state that are no longer declared are destroyed. Destroys run in reverse
dependency order (from the dependencies recorded in state) and are listed
before creates and updates.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set

from provisio.engine.expressions import collect_references
from provisio.engine.loader import Declarations
from provisio.models.graph import ResourceGraph
from provisio.models.plan import Action, ActionType, Plan
from provisio.models.resource import Resource
from provisio.models.state import State
from provisio.providers.base import Provider

logger = logging.getLogger(__name__)

_CREATE = "create"
_REPLACE = "replace"
_UPDATE = "update"
_NOOP = "noop"


def _action_type(status: str) -> ActionType:
    return ActionType.UPDATE if status == _UPDATE else ActionType.CREATE


def changed_attributes(prior: Dict[str, Any], declared: Dict[str, Any]) -> List[str]:
    """Names of attributes added, removed or modified, declared ones first."""
    keys = list(declared) + [key for key in prior if key not in declared]
    return [
        key
        for key in keys
        if key not in prior or key not in declared or prior[key] != declared[key]
    ]


def state_order(state: State) -> List[str]:
    """Addresses in state, each after the resources it depended on when applied.

    Ties keep the order in which resources were recorded.

    Raises:
        CycleError: If the recorded dependencies form a cycle.
    """
    graph = ResourceGraph(
        Resource(
            kind=entry.kind,
            name=entry.name,
            depends_on=[dep for dep in entry.dependencies if dep in state.resources],
        )
        for entry in state.resources.values()
    )
    return [resource.address for resource in graph.topological_order()]


def _destroy_actions(
    state: State,
    targets: Set[str],
    replaced: Set[str],
    updated: Optional[Set[str]] = None,
) -> List[Action]:
    """Destroy actions for `targets`, dependents first.

    Removing a resource that is no longer declared also waits for the in-place
    updates of its recorded dependents, which drop their references to it.
    """
    updated = updated or set()
    order = [address for address in reversed(state_order(state)) if address in targets]
    dependents: Dict[str, List[str]] = {address: [] for address in state.resources}
    for entry in state.resources.values():
        for dep in entry.dependencies:
            if dep in dependents:
                dependents[dep].append(entry.address)

    actions = []
    for address in order:
        entry = state.resources[address]
        actions.append(
            Action(
                type=ActionType.DESTROY,
                address=address,
                kind=entry.kind,
                name=entry.name,
                replace=address in replaced,
                requires=[
                    f"{ActionType.DESTROY.value}:{dependent}"
                    for dependent in dependents[address]
                    if dependent in targets
                ]
                + [
                    f"{ActionType.UPDATE.value}:{dependent}"
                    for dependent in dependents[address]
                    if dependent in updated and address not in replaced
                ],
            )
        )
    return actions


def build_plan(declarations: Declarations, state: State, provider: Provider) -> Plan:
    """Compute the actions needed to make state match the declarations.

    Args:
        declarations: Loaded declarations.
        state: State from the previous run (empty on first run).
        provider: Supplies each kind's immutable attributes.

    Returns:
        Plan: destroys first (dependents before dependencies), then creates and
        updates (dependencies before dependents).

    Raises:
        CycleError: If declared references form a cycle.
        UnsupportedKindError: If the provider has no handler for a declared kind.
    """
    graph = declarations.graph
    order = graph.topological_order()

    status: Dict[str, str] = {}
    changes: Dict[str, List[str]] = {}
    for resource in order:
        handler = provider.handler(resource.kind, resource.address)
        prior = state.resources.get(resource.address)
        if prior is None:
            status[resource.address] = _CREATE
            continue

        changed = changed_attributes(prior.config, resource.attributes)
        fresh = {a for a, s in status.items() if s in (_CREATE, _REPLACE)}
        replaced_so_far = {a for a, s in status.items() if s == _REPLACE}
        # Still holding the id of a resource that is destroyed before it is recreated
        rewired = {ref.address for ref in collect_references(prior.config)} & replaced_so_far
        for key, value in resource.attributes.items():
            if key in changed:
                continue
            if any(ref.address in fresh for ref in collect_references(value)):
                changed.append(key)
        if not changed and set(prior.dependencies) != set(
            graph.dependencies(resource.address)
        ):
            changed.append("depends_on")

        changes[resource.address] = changed
        if not changed:
            status[resource.address] = _NOOP
        elif rewired or handler.immutable.intersection(changed):
            status[resource.address] = _REPLACE
        else:
            status[resource.address] = _UPDATE

    orphans = {address for address in state.resources if address not in graph}
    replaced = {a for a, s in status.items() if s == _REPLACE}
    updated = {a for a, s in status.items() if s == _UPDATE}
    actions = _destroy_actions(state, orphans | replaced, replaced, updated)

    pending = {a for a, s in status.items() if s != _NOOP}
    for resource in order:
        address = resource.address
        current = status[address]
        if current == _NOOP:
            continue
        requires = [
            f"{_action_type(status[dep]).value}:{dep}"
            for dep in graph.dependencies(address)
            if dep in pending
        ]
        if current == _REPLACE:
            requires.insert(0, f"{ActionType.DESTROY.value}:{address}")
        actions.append(
            Action(
                type=_action_type(current),
                address=address,
                kind=resource.kind,
                name=resource.name,
                changed=changes.get(address, []),
                replace=current == _REPLACE,
                requires=list(dict.fromkeys(requires)),
            )
        )

    plan = Plan(mode="apply", actions=actions)
    logger.info("Planned: %s", plan.summary())
    return plan


def build_destroy_plan(state: State) -> Plan:
    """Plan the destruction of everything recorded in state, dependents first."""
    plan = Plan(
        mode="destroy",
        actions=_destroy_actions(state, set(state.resources), set()),
    )
    logger.info("Planned destroy: %s", plan.summary())
    return plan
