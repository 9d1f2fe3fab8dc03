"""Karel entry point and interactive stepper wiring."""

from __future__ import annotations
import argparse
import asyncio
import sys
from typing import Callable, List, Optional

from extensions import KarelExtensionError, load_runtime_services
from interpreter import DEFAULT_DELAY_MS, DEFAULT_MAX_ITERATIONS, Interpreter, TracebackFormatter
from parser import Diagnostic, SEVERITY_ERROR
from world import KarelRuntimeError, World, WorldContractError, load_world


def format_diagnostic(filename: str, diagnostic: Diagnostic) -> str:
    return f"{filename}:{diagnostic.line}:{diagnostic.column}: {diagnostic.severity}: {diagnostic.message}"


def _report_error(interpreter: Interpreter, error: KarelRuntimeError, verbose: bool, as_json: bool) -> None:
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
    if as_json:
        print(formatter.to_json(error), file=sys.stderr)


def run_stepper(interpreter: Interpreter, input_provider: Callable[[str], str] = input) -> int:
    print("\x1b[38;2;153;221;255mKarel\033[0m stepper. Enter = step, r = run to end, reset, q = quit.")
    print(interpreter.world.render())
    while True:
        try:
            command = input_provider("\x1b[38;2;153;221;255mstep>\033[0m ").strip().lower()
        except EOFError:
            print()
            break
        if command in ("q", "quit"):
            break
        if command == "reset":
            interpreter.reset()
            print(interpreter.world.render())
            continue
        if command in ("r", "run"):
            while interpreter.step():
                pass
        elif command == "":
            interpreter.step()
        else:
            print(f"Unknown command '{command}'", file=sys.stderr)
            continue
        print(f"line {interpreter.current_line}")
        print(interpreter.world.render())
        if interpreter.is_step_completed:
            break
    return 1 if interpreter.last_error is not None else 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Karel the Robot interpreter")
    parser.add_argument("program", help="Karel program source file")
    parser.add_argument("-w", "--world", dest="world", help="World map file (.klm JSON); defaults to an empty 10x10 world")
    parser.add_argument("--check", action="store_true", help="Only parse the program and print diagnostics")
    parser.add_argument("--step", action="store_true", help="Advance one instruction at a time interactively")
    parser.add_argument("--delay", type=int, default=DEFAULT_DELAY_MS, help="Delay between steps in milliseconds (50-2000)")
    parser.add_argument("--max-iterations", type=int, default=DEFAULT_MAX_ITERATIONS, help="Runaway loop ceiling")
    parser.add_argument("--beepers", type=int, default=None, help="Override the number of beepers Karel starts with")
    parser.add_argument("--ext", action="append", default=[], help="Load an extension by file path or bundled name, e.g. trail (repeatable)")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit world snapshots in tracebacks")
    parser.add_argument("--quiet", action="store_true", help="Do not draw the world after each step")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    args = parser.parse_args(argv)

    try:
        with open(args.program, "r", encoding="utf-8") as handle:
            source_text = handle.read()
    except OSError as exc:
        print(f"Failed to read {args.program}: {exc}", file=sys.stderr)
        return 1

    try:
        if args.world:
            world = load_world(args.world)
        else:
            world = World.empty(10, 10)
        if args.beepers is not None:
            description = world.to_description()
            description["karel"]["beepers"] = args.beepers
            world = World.from_description(description)
    except OSError as exc:
        print(f"Failed to read {args.world}: {exc}", file=sys.stderr)
        return 1
    except WorldContractError as exc:
        print(f"WorldError: {exc}", file=sys.stderr)
        return 1

    try:
        services = load_runtime_services(args.ext)
    except KarelExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    interpreter = Interpreter(
        world,
        filename=args.program,
        delay_ms=args.delay,
        max_iterations=args.max_iterations,
        verbose=args.verbose,
        services=services,
    )
    diagnostics = interpreter.load(source_text)
    for diagnostic in diagnostics:
        print(format_diagnostic(args.program, diagnostic), file=sys.stderr)
    if any(d.severity == SEVERITY_ERROR for d in diagnostics):
        return 1
    if args.check:
        return 0

    if args.step:
        code = run_stepper(interpreter)
        if interpreter.last_error is not None:
            _report_error(interpreter, interpreter.last_error, args.verbose, args.traceback_json)
        return code

    if not args.quiet:
        interpreter.hook_registry.add_step_rule(
            name="render",
            every_n=1,
            handler=lambda interp, ctx: print(f"line {ctx.line}: {ctx.rule}\n{interp.world.render()}\n"),
            ext_name="cli",
        )
    asyncio.run(interpreter.run())
    if interpreter.last_error is not None:
        _report_error(interpreter, interpreter.last_error, args.verbose, args.traceback_json)
        return 1
    print(interpreter.world.render())
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
