"""ITL entry point and REPL wiring."""

from __future__ import annotations
import argparse
import signal
import sys
from contextlib import contextmanager
from typing import Iterator, List, Optional

from extensions import ITLExtensionError, RuntimeServices, load_runtime_services
from host import Host
from interpreter import ExitSignal, Interpreter, ITLRuntimeError, TracebackFormatter
from segmenter import ITLFatalError


__version__ = "0.5.0"

PROMPT_COLOR = "\x1b[38;2;153;221;255m"  # light blue


@contextmanager
def interrupts_to(interpreter: Interpreter) -> Iterator[None]:
    """Route Ctrl-C to the interpreter's interrupt flag while a program runs."""

    def _handler(signum, frame) -> None:
        interpreter.request_interrupt()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # signal handlers can only be installed from the main thread
        previous = None
    try:
        yield
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


def _report(interpreter: Interpreter, error: ITLRuntimeError, *, verbose: bool, trace_json: bool) -> None:
    interpreter.host.ensure_newline()
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
    if trace_json:
        print(formatter.to_json(error), file=sys.stderr)


def run_repl(host: Host, services: RuntimeServices, *, verbose: bool, trace_json: bool) -> int:
    interpreter = Interpreter(
        host=host,
        services=services,
        verbose=verbose,
        show_assignments=True,
        interactive=True,
    )
    title = f"{PROMPT_COLOR}ITL\x1b[0m" if host.ansi else "ITL"
    host.output_sink(f"{title} (Incredibly Tiny Language) REPL v{__version__}\n")
    host.write("Type ':help' for the list of commands.\nType ':exit' to quit.\n\n")

    while True:
        host.ensure_newline()
        try:
            line = host.prompt(f"{len(interpreter.program) + 1}> ", PROMPT_COLOR)
        except EOFError:
            host.write("\n")
            return 0
        except KeyboardInterrupt:
            host.write("\n")
            continue

        line = line.rstrip("\r\n")
        if line == "":
            continue

        try:
            if line.startswith(":"):
                if not interpreter.commands.execute(line[1:]):
                    host.write(f"Unknown command: {line}\nType ':help' for the list of commands.\n")
                continue
            with interrupts_to(interpreter):
                interpreter.submit(line)
        except ExitSignal as sig:
            return sig.code
        except ITLRuntimeError as error:
            # keep the session alive; the program text stays as typed
            _report(interpreter, error, verbose=verbose, trace_json=trace_json)


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="ITL (Incredibly Tiny Language) interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit variable snapshots in tracebacks")
    parser.add_argument("--trace-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension (.py) or pointer file (.itlx); repeatable")
    parser.add_argument("--seed", type=int, default=None, help="Seed the random source deterministically")
    parser.add_argument("--gfx-snapshot", default=None, metavar="PATH", help="Write the pixel surface to a PNG on grefresh()")
    args = parser.parse_args(argv)

    try:
        services = load_runtime_services(args.ext)
    except ITLExtensionError as exc:
        print(f"Extension error: {exc}", file=sys.stderr)
        return 1

    host = Host(ansi=sys.stdout.isatty(), seed=args.seed, snapshot_path=args.gfx_snapshot)

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(host, services, verbose=args.verbose, trace_json=args.trace_json)

    interpreter = Interpreter(host=host, services=services, verbose=args.verbose)
    if args.source_mode:
        interpreter.load_source(args.program)
    else:
        try:
            interpreter.load_file(args.program)
        except ITLFatalError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1

    try:
        with interrupts_to(interpreter):
            interpreter.run()
    except ExitSignal as sig:
        return sig.code
    except ITLRuntimeError as error:
        _report(interpreter, error, verbose=args.verbose, trace_json=args.trace_json)
        return 1
    host.ensure_newline()
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
