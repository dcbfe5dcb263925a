"""Local deterministic agent for CLI backend integration tests.

Replays a file of line-delimited JSON events to stdout, optionally records the
prompt and session it was launched with, then exits.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Replay a scripted event stream."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--script", required=True)
    parser.add_argument("--prompt", default="")
    parser.add_argument("--session-id", default="")
    parser.add_argument("--record")
    parser.add_argument("--hold-seconds", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    if args.record:
        with Path(args.record).open("a", encoding="utf-8") as handle:
            handle.write(
                json.dumps({"prompt": args.prompt, "session_id": args.session_id or None}) + "\n",
            )

    for line in Path(args.script).read_text("utf-8").splitlines():
        if not line.strip():
            continue
        sys.stdout.write(line + "\n")
        sys.stdout.flush()

    if args.hold_seconds > 0:
        time.sleep(args.hold_seconds)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
