"""Command line interface: resgraph {preview,apply,destroy,refresh,outputs} STACK_FILE."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional, Sequence

from .config import EngineConfig, configure_logging
from .errors import ConfigError, GraphError, PartialRunError, PlanError, ResgraphError
from .executor import ExecutionResult
from .loader import load_stack
from .planner import Planner, Plan
from .providers import default_registry
from .refresh import refresh_state
from .run import apply_stack, destroy_stack, open_store, preview, read_exports

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_INVALID = 2


def _config_from_args(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig.from_env(
        concurrency=args.concurrency,
        state_backend=args.backend,
        state_path=args.state,
        max_retries=args.max_retries,
        default_timeout=args.timeout,
        refresh=True if args.refresh else None,
        log_level=args.log_level,
    )


def _print_plan(plan: Plan) -> None:
    for op in plan.operations:
        if op.replace:
            continue
        marker = {
            "create": "+",
            "update": "~",
            "replace": "-/+",
            "delete": "-",
            "noop": " ",
        }[op.kind.value]
        print(f"{marker:>3} {op.node_id} ({op.resource_kind}): {op.reason}")
    summary = ", ".join(
        f"{n} to {name}" for name, n in plan.summary().items() if n and name != "noop"
    )
    print(f"Plan: {summary or 'no changes'}")


def _print_result(result: ExecutionResult) -> None:
    for node_id, node in result.results.items():
        line = f"{node_id}: {node.status.value}"
        if node.reason and not node.success:
            line += f" ({node.reason})"
        print(line)
    if result.exports:
        print(json.dumps(result.exports, indent=2, sort_keys=True, default=str))


async def _close(store: Any) -> None:
    close = getattr(store, "close", None)
    if close is not None:
        close()


async def _cmd_preview(args: argparse.Namespace, config: EngineConfig) -> int:
    stack = load_stack(args.stack_file)
    registry = default_registry()
    store = open_store(config, stack.name)
    try:
        plan = await preview(stack, registry, store, refresh=config.refresh)
    finally:
        await _close(store)
    _print_plan(plan)
    return EXIT_OK


async def _cmd_apply(args: argparse.Namespace, config: EngineConfig) -> int:
    stack = load_stack(args.stack_file)
    registry = default_registry()
    store = open_store(config, stack.name)
    try:
        result = await apply_stack(
            stack,
            registry,
            store,
            concurrency=config.concurrency,
            max_retries=config.max_retries,
            default_timeout=config.default_timeout,
            retry_backoff=config.retry_backoff,
            refresh=config.refresh,
            raise_on_failure=False,
        )
    finally:
        await _close(store)
    _print_result(result)
    return result.exit_code()


async def _cmd_destroy(args: argparse.Namespace, config: EngineConfig) -> int:
    stack = load_stack(args.stack_file)
    registry = default_registry()
    store = open_store(config, stack.name)
    try:
        if not args.yes:
            plan = Planner(registry).plan_destroy(await store.load(), stack=stack.name)
            _print_plan(plan)
            print("Re-run with --yes to destroy these resources.")
            return EXIT_OK
        result = await destroy_stack(
            registry,
            store,
            stack_name=stack.name,
            concurrency=config.concurrency,
            max_retries=config.max_retries,
            default_timeout=config.default_timeout,
            retry_backoff=config.retry_backoff,
            raise_on_failure=False,
        )
    finally:
        await _close(store)
    _print_result(result)
    return result.exit_code()


async def _cmd_refresh(args: argparse.Namespace, config: EngineConfig) -> int:
    stack = load_stack(args.stack_file)
    store = open_store(config, stack.name)
    try:
        report = await refresh_state(store, default_registry(), concurrency=config.concurrency)
    finally:
        await _close(store)
    for node_id in report.drifted:
        print(f"{node_id}: drifted")
    for node_id in report.missing:
        print(f"{node_id}: missing")
    for node_id, error in sorted(report.errors.items()):
        print(f"{node_id}: unreadable ({error})")
    if not report.has_drift and not report.errors:
        print("No drift detected")
    return EXIT_PARTIAL if report.errors else EXIT_OK


async def _cmd_outputs(args: argparse.Namespace, config: EngineConfig) -> int:
    stack = load_stack(args.stack_file)
    store = open_store(config, stack.name)
    try:
        exports = await read_exports(stack, store)
    finally:
        await _close(store)
    print(json.dumps(exports, indent=2, sort_keys=True, default=str))
    return EXIT_OK


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("stack_file", help="Path to the stack YAML file.")
    parser.add_argument("--state", default=None, help="State file path (file backend).")
    parser.add_argument(
        "--backend",
        default=None,
        choices=["file", "memory", "mongodb"],
        help="State backend (defaults to RESGRAPH_STATE_BACKEND or file).",
    )
    parser.add_argument("--concurrency", type=int, default=None, help="Maximum operations in flight.")
    parser.add_argument("--max-retries", type=int, default=None, help="Retries for retryable kinds.")
    parser.add_argument("--timeout", type=float, default=None, help="Provider call timeout in seconds.")
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Read every recorded resource before planning.",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, DEBUG, ...).")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="resgraph")
    subparsers = parser.add_subparsers(dest="command", required=True)

    preview_parser = subparsers.add_parser("preview", help="Show what apply would change.")
    _add_common_args(preview_parser)
    preview_parser.set_defaults(handler=_cmd_preview)

    apply_parser = subparsers.add_parser("apply", help="Create, update and delete resources.")
    _add_common_args(apply_parser)
    apply_parser.set_defaults(handler=_cmd_apply)

    destroy_parser = subparsers.add_parser("destroy", help="Delete every recorded resource.")
    _add_common_args(destroy_parser)
    destroy_parser.add_argument("--yes", action="store_true", help="Actually delete.")
    destroy_parser.set_defaults(handler=_cmd_destroy)

    refresh_parser = subparsers.add_parser("refresh", help="Reconcile state with the providers.")
    _add_common_args(refresh_parser)
    refresh_parser.set_defaults(handler=_cmd_refresh)

    outputs_parser = subparsers.add_parser("outputs", help="Print the stack's exports from state.")
    _add_common_args(outputs_parser)
    outputs_parser.set_defaults(handler=_cmd_outputs)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = _config_from_args(args)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_INVALID
    configure_logging(config.log_level)

    try:
        return asyncio.run(args.handler(args, config))
    except (ConfigError, GraphError, PlanError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_INVALID
    except PartialRunError as e:
        _print_result(e.result)
        return EXIT_PARTIAL
    except ResgraphError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return EXIT_PARTIAL


if __name__ == "__main__":
    sys.exit(main())
