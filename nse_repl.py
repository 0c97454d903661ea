import argparse
import sys
from pathlib import Path

import yaml

from nse.nse_runtime import ScriptRunner
from nse.nse_printer import Printer
from nse.nse_serialize import load_records

# The prompt reader; tests replace it.
read_line = input


def _print_result(result, printer: Printer, show_value: bool = True):
    # Print side effects (from `print` and `cat`)
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        return
    if show_value and result.value is not None:
        print(printer.pformat(result.value))


def _is_assignment(runner: ScriptRunner, source: str) -> bool:
    """Top-level assignments print nothing at the prompt."""
    try:
        stmts = runner.parse(source)
    except SyntaxError:
        return False
    return bool(stmts) and getattr(stmts[-1], 'fname', None) == "<-"


def _is_incomplete(runner: ScriptRunner, source: str) -> bool:
    try:
        runner.parse(source)
    except SyntaxError as e:
        return e.msg == "unexpected end of input"
    return False


def make_runner(data_path=None, name="data") -> ScriptRunner:
    runner = ScriptRunner()
    if data_path:
        runner.bind(name, load_records(Path(data_path)))
    return runner


def run_script_file(file_path: str, runner: ScriptRunner) -> int:
    """Run an NSE script file non-interactively and return the exit status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        return 1
    result = runner.handle_script(source)
    _print_result(result, Printer(), show_value=not _is_assignment(runner, source))
    return 1 if result.status == 'error' else 0


def repl(runner: ScriptRunner):
    print("NSE REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")
    printer = Printer()

    while True:
        try:
            line = read_line("> ").strip()
            if not line:
                continue
            if line == "exit":
                break
            # Keep reading while the input is an unfinished expression
            source = line
            while _is_incomplete(runner, source):
                source += "\n" + read_line("+ ")

            result = runner.handle_script(source)
            _print_result(result, printer, show_value=not _is_assignment(runner, source))
        except EOFError:
            print("\nExiting.")
            break


def main(argv=None) -> int:
    """Run a script file when provided, otherwise start the interactive REPL."""
    parser = argparse.ArgumentParser(prog="nse", description="Run NSE scripts or start a REPL.")
    parser.add_argument("file", nargs="?", help="script to run")
    parser.add_argument("--data", metavar="PATH", help="JSON, YAML or TOML file bound as a variable")
    parser.add_argument("--name", default="data", help="variable name for --data (default: data)")
    args = parser.parse_args(argv)

    try:
        runner = make_runner(args.data, args.name)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: cannot load data: {e}", file=sys.stderr)
        return 1

    if args.file:
        return run_script_file(args.file, runner)
    repl(runner)
    return 0


def run():
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    run()
