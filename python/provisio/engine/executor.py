"""
provisio/engine/executor.py

Apply Executor: walks a Plan with a bounded pool of concurrent actions.

  - An action becomes ready once every action it requires has completed.
    Ready actions start in plan order, at most `settings.parallelism` at a time.
  - Provider calls are retried on ProviderTransientError with bounded
    exponential backoff. Exhausted retries or a ProviderFatalError fail the action.
  - State is updated and persisted after every single action, behind one lock.
  - After a failure no new action starts; in-flight ones finish and are recorded,
    then ApplyError is raised. Nothing is rolled back.
  - Setting `cancel_event` likewise stops dispatching; ApplyCanceled is raised once
    in-flight actions have finished.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from pydantic import BaseModel, Field

from provisio.engine.expressions import (
    UNCHANGED,
    lookup_path,
    parse_reference,
    substitute,
    unescape,
)
from provisio.engine.loader import Declarations
from provisio.errors import (
    ApplyCanceled,
    ApplyError,
    ProviderError,
    ProviderFatalError,
    ProviderTransientError,
)
from provisio.models.plan import Action, ActionType, Plan
from provisio.models.settings import EngineSettings
from provisio.models.state import ResourceState, State
from provisio.providers.base import Provider
from provisio.utils.async_retry import async_retry
from provisio.utils.state_storage import StateStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

_OPERATIONS = {
    ActionType.CREATE: "create",
    ActionType.UPDATE: "update",
    ActionType.DESTROY: "delete",
}


class ApplyResult(BaseModel):
    """Outcome of a fully successful apply."""

    plan: Plan
    state: State
    applied: List[str] = Field(default_factory=list)


def resolve_from_state(value: Any, state: State) -> Any:
    """Replace ${kind.name.attr} references in `value` with attributes from state.

    Raises:
        KeyError: With the unresolvable expression, if a referenced resource or
            attribute is not in state.
    """

    def resolver(expression: str) -> Any:
        ref = parse_reference(expression)
        if ref is None:
            return UNCHANGED
        entry = state.resources.get(ref.address)
        if entry is None:
            raise KeyError(expression)
        try:
            return lookup_path(entry.attributes, ref.path)
        except KeyError:
            raise KeyError(expression) from None

    return unescape(substitute(value, resolver))


class Executor:
    """Applies plans through a provider, persisting state through a storage."""

    def __init__(
        self,
        provider: Provider,
        storage: StateStorage,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.provider = provider
        self.storage = storage
        self.settings = settings or EngineSettings()
        self._lock = asyncio.Lock()

    async def _call(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Invoke a provider operation under the retry policy."""

        @async_retry(
            retries=self.settings.max_attempts,
            delay=self.settings.base_delay,
            max_delay=self.settings.max_delay,
            retry_on=(ProviderTransientError,),
            jitter=self.settings.jitter,
            noisy=True,
        )
        async def _once() -> T:
            return await func(*args)

        return await _once()

    async def _commit(self, state: State, update: Callable[[State], None]) -> None:
        async with self._lock:
            update(state)
            await self.storage.save(state)

    async def _run_action(
        self, action: Action, state: State, declarations: Optional[Declarations]
    ) -> None:
        operation = _OPERATIONS[action.type]
        handler = self.provider.handler(action.kind, action.address)
        logger.info("%s %s: starting", operation, action.address)

        if action.type is ActionType.DESTROY:
            entry = state.resources.get(action.address)
            if entry is None:
                logger.info("%s: already absent from state", action.address)
                return
            await self._call(handler.delete, action.address, dict(entry.attributes))
            await self._commit(state, lambda s: s.forget(action.address))
            logger.info("%s %s: done", operation, action.address)
            return

        if declarations is None:
            raise ValueError("declarations are required to create or update resources")
        resource = declarations.graph.get(action.address)
        async with self._lock:
            try:
                attrs = resolve_from_state(resource.attributes, state)
            except KeyError as exc:
                raise ProviderFatalError(
                    action.address, operation, f"cannot resolve ${{{exc.args[0]}}}"
                ) from None
            prior = state.resources.get(action.address)

        if action.type is ActionType.CREATE or prior is None:
            assigned = await self._call(handler.create, action.address, attrs)
        else:
            assigned = await self._call(
                handler.update, action.address, dict(prior.attributes), attrs
            )

        # Provider-assigned attributes (ids, addresses) survive an in-place update
        kept: Dict[str, Any] = {}
        if action.type is ActionType.UPDATE and prior is not None:
            kept = {k: v for k, v in prior.attributes.items() if k not in prior.config}

        entry = ResourceState(
            kind=resource.kind,
            name=resource.name,
            config=resource.attributes,
            attributes={**kept, **attrs, **assigned},
            dependencies=declarations.graph.dependencies(action.address),
        )
        if action.type is ActionType.UPDATE and prior is not None:
            entry.created_at = prior.created_at
        await self._commit(state, lambda s: s.record(entry))
        logger.info("%s %s: done", operation, action.address)

    async def apply(
        self,
        plan: Plan,
        state: State,
        declarations: Optional[Declarations] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ApplyResult:
        """Execute `plan`, mutating and persisting `state` as actions complete.

        Args:
            plan: The plan to execute.
            state: The state the plan was computed against; updated in place.
            declarations: Required when the plan creates or updates resources.
            cancel_event: When set, no further actions are started.

        Returns:
            ApplyResult: the plan, final state and applied action keys.

        Raises:
            ApplyError: One or more actions failed (state holds what was applied).
            ApplyCanceled: Dispatching stopped because `cancel_event` was set.
        """
        actions: Dict[str, Action] = {action.key: action for action in plan.actions}
        waiting: Dict[str, Set[str]] = {
            key: {req for req in action.requires if req in actions}
            for key, action in actions.items()
        }
        done: List[str] = []
        failures: List[ProviderError] = []
        in_flight: Dict["asyncio.Task[None]", str] = {}
        parallelism = self.settings.parallelism

        def dispatch() -> None:
            for key in plan.keys():
                if len(in_flight) >= parallelism:
                    return
                if key in waiting and not waiting[key].difference(done):
                    del waiting[key]
                    task = asyncio.create_task(
                        self._run_action(actions[key], state, declarations)
                    )
                    in_flight[task] = key

        def collect(task: "asyncio.Task[None]") -> None:
            key = in_flight.pop(task)
            action = actions[key]
            if task.cancelled():
                failures.append(
                    ProviderFatalError(action.address, _OPERATIONS[action.type], "cancelled")
                )
                return
            exc = task.exception()
            if exc is None:
                done.append(key)
            elif isinstance(exc, ProviderError):
                logger.error("%s", exc)
                failures.append(exc)
            else:
                logger.exception("Unexpected error in %s", key, exc_info=exc)
                failures.append(
                    ProviderFatalError(action.address, _OPERATIONS[action.type], repr(exc))
                )

        try:
            while True:
                stopping = bool(failures) or (
                    cancel_event is not None and cancel_event.is_set()
                )
                if not stopping:
                    dispatch()
                if not in_flight:
                    break
                finished, _ = await asyncio.wait(
                    set(in_flight), return_when=asyncio.FIRST_COMPLETED
                )
                for task in finished:
                    collect(task)
        except asyncio.CancelledError:
            logger.warning(
                "Apply cancelled; waiting for %d in-flight action(s)", len(in_flight)
            )
            await asyncio.shield(
                asyncio.gather(*in_flight, return_exceptions=True)
            )
            raise

        if failures:
            raise ApplyError(failures, state)
        if waiting:
            raise ApplyCanceled(state, [key for key in plan.keys() if key in waiting])

        logger.info("Apply complete: %d action(s)", len(done))
        return ApplyResult(plan=plan, state=state, applied=done)

    async def refresh(self, state: State) -> List[str]:
        """Re-read every recorded resource from the provider.

        Resources the provider no longer has are dropped from state (so the next
        plan recreates them); others get their attributes refreshed.

        Returns:
            List[str]: Addresses dropped from state.
        """
        dropped: List[str] = []
        for address, entry in list(state.resources.items()):
            handler = self.provider.handler(entry.kind, address)
            fresh = await self._call(handler.read, address, dict(entry.attributes))
            if fresh is None:
                logger.warning("%s no longer exists remotely; dropping from state", address)
                dropped.append(address)
                state.forget(address)
            else:
                entry.attributes = {**entry.attributes, **fresh}
        async with self._lock:
            await self.storage.save(state)
        return dropped
