"""
provisio/engine/renderer.py

Local Side-Effect Renderer: resolves outputs against final state and renders
local files (such as an SSH client config stanza) from templates.

Template variants are chosen by configuration rather than by branching: a
template name like '{host_os}-ssh-config.tpl' becomes 'linux-ssh-config.tpl' or
'windows-ssh-config.tpl' depending on EngineSettings.host_os. Placeholders use
`string.Template` syntax ($name / ${name}).

Rendered text is written as a managed block:

    # BEGIN provisio <name>
    ...
    # END provisio <name>

so re-applying replaces the block in place and destroying removes it, leaving
the rest of the file (e.g. a user's ~/.ssh/config) untouched.
"""

from __future__ import annotations

import logging
import os
import re
import string
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os
import aiofiles.ospath

from provisio.engine.executor import resolve_from_state
from provisio.engine.expressions import UNCHANGED, substitute
from provisio.engine.loader import Declarations, LocalFile
from provisio.errors import TemplateError, UnresolvedOutputError
from provisio.models.settings import EngineSettings
from provisio.models.state import OutputValue, State

logger = logging.getLogger(__name__)

BEGIN_MARKER = "# BEGIN provisio {name}"
END_MARKER = "# END provisio {name}"


def resolve_outputs(declarations: Declarations, state: State) -> Dict[str, OutputValue]:
    """Evaluate every declared output against `state`.

    Raises:
        UnresolvedOutputError: If an output references a resource (or attribute)
            that is not recorded as created.
    """
    resolved: Dict[str, OutputValue] = {}
    for name, decl in declarations.outputs.items():
        try:
            value = resolve_from_state(decl.value, state)
        except KeyError as exc:
            raise UnresolvedOutputError(name, f"${{{exc.args[0]}}}") from None
        resolved[name] = OutputValue(value=value, sensitive=decl.sensitive)
    return resolved


def template_path(local_file: LocalFile, settings: EngineSettings) -> str:
    """Path of the template variant selected by the settings."""
    try:
        name = local_file.decl.template.format(host_os=settings.host_os)
    except (KeyError, IndexError) as exc:
        raise TemplateError(
            f"local file '{local_file.decl.name}': unknown template selector {exc}"
        ) from None
    return os.path.join(local_file.base_dir, os.path.expanduser(name))


def _resolve_vars(local_file: LocalFile, state: State) -> Dict[str, Any]:
    name = local_file.decl.name

    def output_resolver(expression: str) -> Any:
        if not expression.startswith("output."):
            return UNCHANGED
        output_name = expression[len("output.") :]
        if output_name not in state.outputs:
            raise UnresolvedOutputError(name, f"${{{expression}}}")
        return state.outputs[output_name].value

    try:
        with_outputs = substitute(local_file.decl.vars, output_resolver)
        return resolve_from_state(with_outputs, state)
    except KeyError as exc:
        raise UnresolvedOutputError(name, f"${{{exc.args[0]}}}") from None


async def render_text(local_file: LocalFile, state: State, settings: EngineSettings) -> str:
    """Render the template variant for `local_file` with its resolved vars."""
    path = template_path(local_file, settings)
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            source = await f.read()
    except FileNotFoundError:
        raise TemplateError(
            f"local file '{local_file.decl.name}': template not found: {path}"
        ) from None

    values = {key: str(value) for key, value in _resolve_vars(local_file, state).items()}
    try:
        return string.Template(source).substitute(values)
    except KeyError as exc:
        raise TemplateError(
            f"local file '{local_file.decl.name}': no value for placeholder {exc}"
        ) from None
    except ValueError as exc:
        raise TemplateError(f"local file '{local_file.decl.name}': {exc}") from None


def _block_pattern(name: str) -> "re.Pattern[str]":
    begin = re.escape(BEGIN_MARKER.format(name=name))
    end = re.escape(END_MARKER.format(name=name))
    return re.compile(rf"{begin}\n.*?{end}\n?", re.DOTALL)


def replace_block(existing: str, name: str, body: Optional[str]) -> str:
    """Return `existing` with the managed block `name` replaced (or removed if body is None)."""
    pattern = _block_pattern(name)
    if body is None:
        return pattern.sub("", existing)

    block = (
        f"{BEGIN_MARKER.format(name=name)}\n"
        f"{body.rstrip()}\n"
        f"{END_MARKER.format(name=name)}\n"
    )
    if pattern.search(existing):
        return pattern.sub(lambda _: block, existing, count=1)
    if existing and not existing.endswith("\n"):
        existing += "\n"
    return existing + block


async def _read_existing(path: str) -> str:
    if not await aiofiles.ospath.exists(path):
        return ""
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        return await f.read()


async def _write(path: str, text: str, file_permission: Optional[str]) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(text)
    if file_permission:
        os.chmod(path, int(file_permission, 8))


async def render_local_files(
    declarations: Declarations, state: State, settings: EngineSettings
) -> List[str]:
    """Render every declared local file into its target path.

    Returns:
        List[str]: The paths written.

    Raises:
        UnresolvedOutputError: If a var cannot be resolved from state/outputs.
        TemplateError: If a template is missing or incomplete.
    """
    written: List[str] = []
    for local_file in declarations.local_files:
        body = await render_text(local_file, state, settings)
        path = os.path.expanduser(local_file.decl.path)
        existing = await _read_existing(path)
        updated = replace_block(existing, local_file.decl.name, body)
        if updated != existing:
            await _write(path, updated, local_file.decl.file_permission)
            logger.info("Rendered %s into %s", local_file.decl.name, path)
        written.append(path)
    return written


async def remove_local_files(declarations: Declarations) -> List[str]:
    """Remove the managed blocks written by render_local_files.

    Files left empty afterwards are deleted.

    Returns:
        List[str]: The paths modified or removed.
    """
    touched: List[str] = []
    for local_file in declarations.local_files:
        path = os.path.expanduser(local_file.decl.path)
        existing = await _read_existing(path)
        if not existing:
            continue
        updated = replace_block(existing, local_file.decl.name, None)
        if updated == existing:
            continue
        if updated.strip():
            await _write(path, updated, None)
        else:
            await aiofiles.os.remove(path)
        logger.info("Removed %s from %s", local_file.decl.name, path)
        touched.append(path)
    return touched
