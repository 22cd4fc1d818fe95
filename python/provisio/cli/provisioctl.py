#!/usr/bin/env python3
"""
provisio/cli/provisioctl.py

CLI for the provisioning engine:

  1) "plan":    Show the actions needed to match the declarations.
  2) "apply":   Plan and execute, then store outputs and render local files.
  3) "destroy": Tear down everything in state (dependents first).
  4) "output":  Print outputs recorded by the last apply.
  5) "show":    Print the stored state as JSON.

Exit status is 0 on success and 1 on any error (structural or execution).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

import yaml

from provisio.deployment.workflow import (
    Workspace,
    apply,
    destroy,
    open_workspace,
    plan,
)
from provisio.errors import ApplyCanceled, ApplyError, ProvisioError
from provisio.models.settings import EngineSettings
from provisio.models.state import OutputValue


def _parse_vars(pairs: List[str]) -> Dict[str, Any]:
    """Parse repeated NAME=VALUE flags; values are read as YAML scalars."""
    variables: Dict[str, Any] = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"--var expects NAME=VALUE, got '{pair}'")
        variables[name] = yaml.safe_load(raw) if raw else ""
    return variables


def _build_workspace(args: argparse.Namespace) -> Workspace:
    settings = EngineSettings.load(
        args.config,
        parallelism=args.parallelism,
        host_os=args.host_os,
    )
    return open_workspace(
        [args.dir],
        settings,
        variables=_parse_vars(args.var),
        workspace=args.workspace,
    )


def _install_cancel_handlers(cancel_event: asyncio.Event) -> List[signal.Signals]:
    """Route SIGINT/SIGTERM to `cancel_event` so in-flight actions can finish."""
    loop = asyncio.get_running_loop()
    installed = []

    def request_cancel(sig: signal.Signals) -> None:
        print(
            f"Received {sig.name}; finishing in-flight actions (no new ones will start).",
            file=sys.stderr,
        )
        cancel_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_cancel, sig)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            pass
    return installed


def _remove_cancel_handlers(installed: List[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)


def _report_partial(exc: ProvisioError) -> None:
    if isinstance(exc, (ApplyError, ApplyCanceled)):
        recorded = ", ".join(exc.state.resources) or "(none)"
        print(f"State records: {recorded}", file=sys.stderr)
    if isinstance(exc, ApplyError):
        for failure in exc.failures:
            print(
                f"  {failure.address}: {failure.operation} failed: {failure.provider_message}",
                file=sys.stderr,
            )


async def _run_plan(args: argparse.Namespace) -> int:
    """Handle the 'plan' subcommand."""
    ws = _build_workspace(args)
    try:
        the_plan, _ = await plan(ws, refresh=args.refresh)
    finally:
        await ws.provider.close()
    print(the_plan.render())
    return 0


async def _run_apply(args: argparse.Namespace) -> int:
    """Handle the 'apply' subcommand."""
    ws = _build_workspace(args)
    cancel_event = asyncio.Event()
    installed = _install_cancel_handlers(cancel_event)
    try:
        result, written = await apply(ws, refresh=args.refresh, cancel_event=cancel_event)
    finally:
        _remove_cancel_handlers(installed)
        await ws.provider.close()

    print(result.plan.render())
    counts = result.plan.summary()
    print(
        f"Apply complete! Resources: {counts['add']} added, "
        f"{counts['change']} changed, {counts['destroy']} destroyed."
    )
    _print_outputs(result.state.outputs, show_sensitive=False)
    for path in written:
        print(f"Rendered {path}")
    return 0


async def _run_destroy(args: argparse.Namespace) -> int:
    """Handle the 'destroy' subcommand."""
    ws = _build_workspace(args)
    cancel_event = asyncio.Event()
    installed = _install_cancel_handlers(cancel_event)
    try:
        result, touched = await destroy(ws, cancel_event=cancel_event)
    finally:
        _remove_cancel_handlers(installed)
        await ws.provider.close()

    print(result.plan.render())
    print(f"Destroy complete! Resources: {result.plan.summary()['destroy']} destroyed.")
    for path in touched:
        print(f"Cleaned {path}")
    return 0


def _print_outputs(outputs: Dict[str, OutputValue], show_sensitive: bool) -> None:
    for name, output in outputs.items():
        value = output.value if (show_sensitive or not output.sensitive) else "<sensitive>"
        print(f"{name} = {json.dumps(value)}")


async def _run_output(args: argparse.Namespace) -> int:
    """Handle the 'output' subcommand."""
    ws = _build_workspace(args)
    state = await ws.storage.load()
    if args.name:
        if args.name not in state.outputs:
            print(f"ERROR: output '{args.name}' not found in state.", file=sys.stderr)
            return 1
        value = state.outputs[args.name].value
        print(value if isinstance(value, str) else json.dumps(value))
        return 0
    if not state.outputs:
        print("No outputs found.")
        return 0
    _print_outputs(state.outputs, show_sensitive=args.show_sensitive)
    return 0


async def _run_show(args: argparse.Namespace) -> int:
    """Handle the 'show' subcommand to print stored state."""
    ws = _build_workspace(args)
    state = await ws.storage.load()
    print(json.dumps(state.model_dump(mode="json"), indent=2))
    return 0


async def _dispatch(args: argparse.Namespace) -> int:
    try:
        return await args.func(args)
    except ProvisioError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        _report_partial(exc)
        return 1
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-C",
        "--dir",
        default=".",
        help="Directory (or file) holding the declaration documents (default: .).",
    )
    parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Set a declaration variable; may be repeated.",
    )
    parser.add_argument(
        "--config",
        default="provisio.yaml",
        help="Engine settings file (default: provisio.yaml, ignored if absent).",
    )
    parser.add_argument(
        "--workspace",
        default="default",
        help="State workspace name (default: 'default').",
    )
    parser.add_argument(
        "--parallelism",
        type=int,
        default=None,
        help="Maximum number of concurrent actions.",
    )
    parser.add_argument(
        "--host-os",
        default=None,
        help="Host OS used to pick local template variants (e.g. linux, windows).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Enable debug logging.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="provisio",
        description="Declarative provisioning: plan, apply and destroy resources.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan_parser = subparsers.add_parser("plan", help="Show pending actions.")
    _add_common_arguments(plan_parser)
    plan_parser.add_argument(
        "--refresh",
        action="store_true",
        default=False,
        help="Re-read resources from the provider before planning.",
    )
    plan_parser.set_defaults(func=_run_plan)

    apply_parser = subparsers.add_parser("apply", help="Plan and execute.")
    _add_common_arguments(apply_parser)
    apply_parser.add_argument(
        "--refresh",
        action="store_true",
        default=False,
        help="Re-read resources from the provider before planning.",
    )
    apply_parser.set_defaults(func=_run_apply)

    destroy_parser = subparsers.add_parser(
        "destroy", help="Destroy every resource recorded in state."
    )
    _add_common_arguments(destroy_parser)
    destroy_parser.set_defaults(func=_run_destroy)

    output_parser = subparsers.add_parser("output", help="Print stored outputs.")
    _add_common_arguments(output_parser)
    output_parser.add_argument("name", nargs="?", default=None, help="A single output.")
    output_parser.add_argument(
        "--show-sensitive",
        action="store_true",
        default=False,
        help="Print sensitive output values instead of masking them.",
    )
    output_parser.set_defaults(func=_run_output)

    show_parser = subparsers.add_parser("show", help="Print the stored state as JSON.")
    _add_common_arguments(show_parser)
    show_parser.set_defaults(func=_run_show)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point; exits with the command's status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(_dispatch(args)))


if __name__ == "__main__":
    main()
