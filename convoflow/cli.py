# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Convoflow command-line interface."""

import argparse
import json
import logging
import sys
from pathlib import Path

from .config import load_config
from .loader import GraphLoader
from .runtime.context import Context
from .runtime.dispatcher import EffectDispatcher
from .runtime.errors import EngineError, EvaluationError
from .runtime.expression import ExpressionEvaluator
from .runtime.graph import Graph
from .runtime.handlers import NODE_HANDLERS
from .runtime.lifecycle import LocalEventBus
from .runtime.memory_store import MemoryStore
from .runtime.orchestrator import Orchestrator, timer_key
from .runtime.result import Effect, EffectKind
from .runtime.run import Run
from .runtime.states import RunStatus, WaitKind
from .runtime.timers import ManualScheduler
from .runtime.types import ConversationKey

# Known subcommands for routing
_SUBCOMMANDS = {"validate", "eval", "simulate", "publish", "sweep"}

# Upper bound on timer waits fast-forwarded by one simulation
_MAX_SIMULATED_TIMERS = 1000


def _build_validate_parser(parser: argparse.ArgumentParser) -> None:
    """Add validate-specific arguments to *parser*."""
    parser.add_argument(
        "graphs",
        nargs="+",
        metavar="GRAPH",
        help="Graph JSON file or directory (repeatable)",
    )


def _build_eval_parser(parser: argparse.ArgumentParser) -> None:
    """Add eval-specific arguments to *parser*."""
    parser.add_argument("expression", metavar="EXPR", help="Condition expression or template")
    parser.add_argument(
        "--context",
        metavar="FILE",
        help="JSON file with globals/input/output/variables",
    )
    parser.add_argument(
        "--interpolate",
        action="store_true",
        help="Render EXPR as a {{...}} template instead of evaluating it",
    )


def _build_simulate_parser(parser: argparse.ArgumentParser) -> None:
    """Add simulate-specific arguments to *parser*."""
    parser.add_argument("graph", metavar="GRAPH", help="Graph JSON file")
    parser.add_argument(
        "--graph-id",
        help="Graph to run when the file holds several (default: the first)",
    )
    parser.add_argument(
        "--message",
        default="",
        help="Triggering message text",
    )
    parser.add_argument(
        "--reply",
        action="append",
        dest="replies",
        metavar="TEXT",
        help="Reply delivered when the run waits for one (repeatable, in order)",
    )
    parser.add_argument(
        "--conversation",
        default="tenant:session:contact",
        metavar="T:S:C",
        help="Conversation key (default: tenant:session:contact)",
    )
    parser.add_argument(
        "--compact",
        action="store_true",
        help="Output compact JSON (no indentation)",
    )


def _build_publish_parser(parser: argparse.ArgumentParser) -> None:
    """Add publish-specific arguments to *parser*."""
    parser.add_argument(
        "graphs",
        nargs="+",
        metavar="GRAPH",
        help="Graph JSON file or directory (repeatable)",
    )
    parser.add_argument(
        "--no-validate",
        action="store_true",
        help="Skip structural validation",
    )


def _build_sweep_parser(parser: argparse.ArgumentParser) -> None:
    """Add sweep-specific arguments to *parser*."""
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep sweeping every sweep_interval_seconds until interrupted",
    )


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add arguments shared by all subcommands."""
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="Path to convoflow config file (JSON). "
        "Defaults to convoflow.config.json in cwd, ~/.convoflow/, or /etc/convoflow/",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        metavar="FILE",
        help="Log to file instead of stderr",
    )


def _configure_logging(parsed: argparse.Namespace) -> None:
    """Set up logging from parsed CLI args."""
    log_handlers: list[logging.Handler] = []
    if parsed.log_file:
        log_handlers.append(logging.FileHandler(parsed.log_file))
    else:
        log_handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, parsed.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=log_handlers,
    )


def _load_graphs(paths: list[str]) -> list[Graph] | None:
    try:
        return GraphLoader.load_paths(paths)
    except FileNotFoundError as e:
        print(f"Error: File not found: {e.filename}", file=sys.stderr)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
    return None


# =========================================================================
# Subcommand handlers
# =========================================================================


def _handle_validate(parsed: argparse.Namespace) -> int:
    """Execute the validate subcommand."""
    graphs = _load_graphs(parsed.graphs)
    if graphs is None:
        return 1

    failed = 0
    for graph in graphs:
        problems = graph.validate()
        for node in graph.nodes:
            if node.kind not in NODE_HANDLERS:
                problems.append(f"node '{node.id}' has unknown type '{node.kind}'")
        if problems:
            failed += 1
            for problem in problems:
                print(f"Error: {graph.id}: {problem}", file=sys.stderr)

    if failed:
        return 1
    print(f"OK: {len(graphs)} graph(s) valid", file=sys.stderr)
    return 0


def _handle_eval(parsed: argparse.Namespace) -> int:
    """Execute the eval subcommand."""
    context = Context()
    if parsed.context:
        try:
            context = Context.from_dict(json.loads(Path(parsed.context).read_text()))
        except FileNotFoundError:
            print(f"Error: File not found: {parsed.context}", file=sys.stderr)
            return 1
        except (OSError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    evaluator = ExpressionEvaluator()
    if parsed.interpolate:
        print(evaluator.interpolate(parsed.expression, context))
        return 0
    try:
        result = evaluator.evaluate(parsed.expression, context)
    except EvaluationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print("true" if result else "false")
    return 0


def _settle_timers(orchestrator: Orchestrator, scheduler: ManualScheduler, run: Run) -> Run:
    """Fire timer waits until the run finishes or waits for a reply."""
    for _ in range(_MAX_SIMULATED_TIMERS):
        if run.status != RunStatus.WAITING or run.wait is None or run.wait.kind != WaitKind.TIMER:
            break
        if not scheduler.fire(timer_key(run.id)):
            break
        run = orchestrator.get_run(run.id)
    return run


def _handle_simulate(parsed: argparse.Namespace) -> int:
    """Execute the simulate subcommand."""
    config = load_config(parsed.config)
    graphs = _load_graphs([parsed.graph])
    if graphs is None:
        return 1
    if not graphs:
        print(f"Error: No graphs in {parsed.graph}", file=sys.stderr)
        return 1
    try:
        conversation = ConversationKey.parse(parsed.conversation)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    store = MemoryStore()
    for graph in graphs:
        store.save_graph(graph)
    graph_id = parsed.graph_id or graphs[0].id

    outbox: list[Effect] = []
    dispatcher = EffectDispatcher()
    for kind in (EffectKind.SEND_MESSAGE, EffectKind.SEND_MEDIA, EffectKind.SEND_INTERACTIVE):
        dispatcher.register_sink(kind, lambda effect, run: outbox.append(effect))
    bus = LocalEventBus()
    scheduler = ManualScheduler()
    orchestrator = Orchestrator(
        store,
        store,
        store,
        dispatcher=dispatcher,
        publisher=bus,
        scheduler=scheduler,
        config=config.engine,
    )

    try:
        run = orchestrator.start(graph_id, conversation, parsed.message or None)
        run = _settle_timers(orchestrator, scheduler, run)
        for reply in parsed.replies or []:
            if run.status != RunStatus.WAITING:
                print(
                    f"Warning: run is {run.status}, reply not delivered: {reply}",
                    file=sys.stderr,
                )
                break
            run = orchestrator.resume(run.id, reply)
            run = _settle_timers(orchestrator, scheduler, run)
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    report = {
        "run": run.to_dict(),
        "events": [event.to_dict() for event in bus.events],
        "outbox": [effect.to_dict() for effect in outbox],
    }
    print(json.dumps(report, indent=None if parsed.compact else 2, default=str))
    return 1 if run.status == RunStatus.ERROR else 0


def _handle_publish(parsed: argparse.Namespace) -> int:
    """Execute the publish subcommand."""
    from pymongo.errors import PyMongoError

    from .runtime.mongo_store import MongoStore

    config = load_config(parsed.config)
    graphs = _load_graphs(parsed.graphs)
    if graphs is None:
        return 1

    try:
        store = MongoStore.from_config(config.mongodb)
        count = GraphLoader.publish(graphs, store, validate=not parsed.no_validate)
        store.close()
    except (EngineError, PyMongoError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"OK: {count} graph(s) published", file=sys.stderr)
    return 0


def _handle_sweep(parsed: argparse.Namespace) -> int:
    """Execute the sweep subcommand."""
    from pymongo.errors import PyMongoError

    from .runtime.mongo_store import MongoStore
    from .runtime.sweeper import ExpirySweeper

    config = load_config(parsed.config)
    try:
        store = MongoStore.from_config(config.mongodb)
    except PyMongoError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    orchestrator = Orchestrator(store, store, store, config=config.engine)
    sweeper = ExpirySweeper(orchestrator)
    try:
        if parsed.loop:
            try:
                sweeper.start(block=True)
            except KeyboardInterrupt:
                sweeper.stop()
            print(f"OK: {sweeper.expired_total} run(s) expired", file=sys.stderr)
        else:
            expired = sweeper.run_once()
            print(f"OK: {expired} run(s) expired", file=sys.stderr)
    finally:
        store.close()
    return 0


# =========================================================================
# Main entry point
# =========================================================================

_HANDLERS = {
    "validate": (_build_validate_parser, _handle_validate, "Validate graph definitions"),
    "eval": (_build_eval_parser, _handle_eval, "Evaluate a condition expression"),
    "simulate": (
        _build_simulate_parser,
        _handle_simulate,
        "Run a graph against an in-memory store",
    ),
    "publish": (_build_publish_parser, _handle_publish, "Save graph definitions to MongoDB"),
    "sweep": (_build_sweep_parser, _handle_sweep, "Expire runs past their deadline"),
}


def main(args: list[str] | None = None) -> int:
    """Main entry point for the convoflow CLI.

    Args:
        args: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    argv = args if args is not None else sys.argv[1:]

    if not argv or argv[0] not in _SUBCOMMANDS:
        commands = ", ".join(sorted(_SUBCOMMANDS))
        print(f"Usage: convoflow {{{commands}}} ...", file=sys.stderr)
        return 1

    subcommand, remaining = argv[0], argv[1:]
    build, handle, description = _HANDLERS[subcommand]
    parser = argparse.ArgumentParser(prog=f"convoflow {subcommand}", description=description)
    build(parser)
    _add_common_args(parser)
    parsed = parser.parse_args(remaining)
    _configure_logging(parsed)
    return handle(parsed)


if __name__ == "__main__":
    sys.exit(main())
