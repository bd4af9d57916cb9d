"""Local deterministic demo agent for command runner integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from fnmatch import fnmatchcase

FAILED_EXIT_CODE = 1
ERROR_EXIT_CODE = 3


def main(argv: list[str] | None = None) -> int:
    """Simulate one trial; the outcome is picked by matching the trial label."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--task", required=True)
    parser.add_argument("--model", required=True)
    parser.add_argument("--trial", required=True, type=int)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--fail", action="append", default=[], help="Label glob to fail.")
    parser.add_argument("--error", action="append", default=[], help="Label glob to error.")
    parser.add_argument("--error-message", default="HTTP 429 too many requests")
    args = parser.parse_args(argv)

    label = f"{args.task}/{args.model}#{args.trial}"
    print(f"echo_runner: {label}", flush=True)
    if args.sleep > 0:
        time.sleep(args.sleep)

    if any(fnmatchcase(label, pattern) for pattern in args.error):
        print(args.error_message, file=sys.stderr, flush=True)
        return ERROR_EXIT_CODE
    if any(fnmatchcase(label, pattern) for pattern in args.fail):
        print("assertion failed", flush=True)
        return FAILED_EXIT_CODE
    print("ok", flush=True)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
