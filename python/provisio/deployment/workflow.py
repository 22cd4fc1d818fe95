"""
filename: provisio/deployment/workflow.py

Plan / apply / destroy workflows tying the engine together:

  load declarations -> load state -> (refresh) -> plan -> execute
  -> store outputs -> render (or remove) local files

Each workflow takes an already-built Workspace so callers (the CLI, tests) choose
the provider and state storage.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from provisio.engine.executor import ApplyResult, Executor
from provisio.engine.loader import Declarations, load_declarations
from provisio.engine.planner import build_destroy_plan, build_plan
from provisio.engine.renderer import (
    remove_local_files,
    render_local_files,
    resolve_outputs,
)
from provisio.models.plan import Plan
from provisio.models.settings import EngineSettings
from provisio.models.state import State, StateRef
from provisio.providers import get_provider
from provisio.providers.base import Provider
from provisio.utils.state_storage import StateStorage, storage_from_settings

logger = logging.getLogger(__name__)


class Workspace(BaseModel):
    """Declarations plus the provider and state storage they are applied with."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    declarations: Declarations
    provider: Provider
    storage: StateStorage
    settings: EngineSettings


def project_name(paths: Sequence[str]) -> str:
    """Derive a state project name from the first declaration path."""
    first = os.path.abspath(paths[0]) if paths else os.getcwd()
    if os.path.isfile(first):
        first = os.path.dirname(first)
    name = re.sub(r"[^A-Za-z0-9_-]+", "_", os.path.basename(first.rstrip(os.sep)))
    return name or "default"


def open_workspace(
    paths: Sequence[str],
    settings: EngineSettings,
    variables: Optional[Dict[str, Any]] = None,
    workspace: str = "default",
) -> Workspace:
    """Load declarations and build the provider and storage they name.

    Raises:
        DeclarationError: For any structural problem in the declarations.
        ValueError: For an unknown provider or an invalid workspace name.
    """
    declarations = load_declarations(paths, variables)
    provider = get_provider(declarations.provider)
    ref = StateRef(project=project_name(paths), workspace=workspace)
    storage = storage_from_settings(ref, settings)
    logger.debug(
        "Workspace %s/%s with provider '%s'", ref.project, ref.workspace, provider.name
    )
    return Workspace(
        declarations=declarations,
        provider=provider,
        storage=storage,
        settings=settings,
    )


async def _load_state(ws: Workspace, refresh: bool) -> Tuple[State, Executor]:
    executor = Executor(ws.provider, ws.storage, ws.settings)
    state = await ws.storage.load()
    if refresh and not state.is_empty():
        dropped = await executor.refresh(state)
        if dropped:
            logger.warning("Refresh dropped %d resource(s): %s", len(dropped), ", ".join(dropped))
    return state, executor


async def plan(ws: Workspace, refresh: bool = False) -> Tuple[Plan, State]:
    """Compute the plan for `ws` against its stored state."""
    state, _ = await _load_state(ws, refresh)
    return build_plan(ws.declarations, state, ws.provider), state


async def apply(
    ws: Workspace,
    refresh: bool = False,
    cancel_event: Optional[asyncio.Event] = None,
) -> Tuple[ApplyResult, List[str]]:
    """Plan and apply, then store outputs and render local files.

    Returns:
        (ApplyResult, List[str]): the executor result and local file paths written.

    Raises:
        ApplyError / ApplyCanceled: From the executor; state holds what was applied.
        UnresolvedOutputError / TemplateError: After a successful apply.
    """
    state, executor = await _load_state(ws, refresh)
    the_plan = build_plan(ws.declarations, state, ws.provider)
    result = await executor.apply(the_plan, state, ws.declarations, cancel_event)

    outputs = resolve_outputs(ws.declarations, result.state)
    if outputs != result.state.outputs:
        result.state.outputs = outputs
        await ws.storage.save(result.state)
    written = await render_local_files(ws.declarations, result.state, ws.settings)
    return result, written


async def destroy(
    ws: Workspace,
    cancel_event: Optional[asyncio.Event] = None,
) -> Tuple[ApplyResult, List[str]]:
    """Destroy everything recorded in state and remove managed local file blocks.

    Returns:
        (ApplyResult, List[str]): the executor result and local file paths touched.
    """
    state, executor = await _load_state(ws, refresh=False)
    the_plan = build_destroy_plan(state)
    result = await executor.apply(the_plan, state, ws.declarations, cancel_event)
    if result.state.outputs:
        result.state.outputs = {}
        await ws.storage.save(result.state)
    touched = await remove_local_files(ws.declarations)
    return result, touched
