#!/usr/bin/env python3
"""Stand-in for an agent CLI: speaks the flags and JSON-lines envelope planforge expects."""

from __future__ import annotations

import argparse
import json
import sys
import time
import uuid
from pathlib import Path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fake agent CLI for planforge integration tests")
    parser.add_argument("-p", "--prompt", required=True)
    parser.add_argument("--model")
    parser.add_argument("--resume")
    parser.add_argument("--max-turns", type=int)
    parser.add_argument("--add-dir", action="append", default=[])
    parser.add_argument("--output-format", choices=["json"], default="json")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--write", type=Path, help="file to create in the working directory")
    parser.add_argument("--report-error", action="store_true")
    parser.add_argument("--exit-code", type=int, default=0)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.sleep > 0:
        time.sleep(args.sleep)

    session_id = args.resume or uuid.uuid4().hex
    print(json.dumps({"type": "system", "subtype": "init", "session_id": session_id}), flush=True)

    if args.write:
        args.write.parent.mkdir(parents=True, exist_ok=True)
        args.write.write_text(args.prompt.splitlines()[0] + "\n", encoding="utf-8")

    result = {
        "type": "result",
        "session_id": session_id,
        "is_error": args.report_error,
        "result": "could not finish" if args.report_error else "done",
        "num_turns": 1,
        "duration_ms": int(args.sleep * 1000),
        "usage": {"input_tokens": len(args.prompt), "output_tokens": 5},
        "modelUsage": {args.model or "default": {"inputTokens": len(args.prompt)}},
    }
    print(json.dumps(result), flush=True)
    if args.exit_code:
        print("forced failure", file=sys.stderr, flush=True)
    return args.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
