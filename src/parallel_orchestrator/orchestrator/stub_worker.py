"""Deterministic stand-in for the task engine, used by integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Print progress lines, optionally record timing, and exit with a chosen code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--task", default=None)
    parser.add_argument("--from", dest="from_id", default=None)
    parser.add_argument("--to", dest="to_id", default=None)
    parser.add_argument("--cwd", default=".")
    parser.add_argument("--headless", action="store_true")
    parser.add_argument("--steps", type=int, default=2)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--fail", action="append", default=[], help="Task id that should fail.")
    parser.add_argument("--hang", action="append", default=[], help="Task id that never exits.")
    parser.add_argument("--record", default=None, help="File receiving start/end lines.")
    parser.add_argument(
        "--touch",
        action="append",
        default=[],
        help="File under --cwd overwritten with the task label.",
    )
    args = parser.parse_args(argv)

    label = args.task or f"{args.from_id}..{args.to_id}"
    owned = {args.task, args.from_id, args.to_id} - {None}
    _record(args.record, f"start {label}")

    if owned & set(args.hang):
        while True:
            time.sleep(1)

    steps = max(args.steps, 1)
    for step in range(1, steps + 1):
        if args.sleep:
            time.sleep(args.sleep / steps)
        print(f"progress: {step * 100 // steps}", flush=True)

    for name in args.touch:
        (Path(args.cwd) / name).write_text(f"{label}\n", encoding="utf-8")
    _record(args.record, f"end {label}")
    if owned & set(args.fail):
        print(f"task {label} failed on purpose", flush=True)
        return 3
    return 0


def _record(path: str | None, line: str) -> None:
    if path is None:
        return
    with Path(path).open("a", encoding="utf-8") as handle:
        handle.write(f"{line}\n")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
