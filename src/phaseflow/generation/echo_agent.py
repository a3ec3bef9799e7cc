"""Local deterministic agent for CLI generation tests and demos."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

MODES = ("complete", "reject", "silent", "timeout", "failure", "empty", "sleep")


def main(argv: list[str] | None = None) -> int:
    """Print one outcome for the phase described in ``--request-file``."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--request-file", required=True)
    parser.add_argument("--mode", choices=MODES, default="complete")
    parser.add_argument("--restart-from-step", type=int, default=None)
    parser.add_argument("--sleep-seconds", type=float, default=5.0)
    args = parser.parse_args(argv)

    request = json.loads(Path(args.request_file).read_text("utf-8"))
    context = request.get("context", {})
    step = context.get("step", 0)
    purpose = context.get("purpose", "")
    answer = f"Step {step} done: {purpose}".strip()

    if args.mode == "empty":
        return 0
    if args.mode == "sleep":
        time.sleep(args.sleep_seconds)
        return 0

    payload: dict[str, object]
    if args.mode == "complete":
        payload = {
            "status": "success",
            "response": {"answer": answer},
            "tool_calls": [{"name": "task_complete_step", "arguments": {"result": answer}}],
        }
    elif args.mode == "reject":
        arguments: dict[str, object] = {"reason": f"echo agent rejected step {step}"}
        if args.restart_from_step is not None:
            arguments["restart_from_step"] = args.restart_from_step
        payload = {
            "status": "success",
            "response": {"answer": answer},
            "tool_calls": [{"name": "task_reject_step", "arguments": arguments}],
        }
    elif args.mode == "silent":
        payload = {"status": "success", "response": {"answer": answer}}
    elif args.mode == "timeout":
        payload = {"status": "timeout"}
    else:
        payload = {"status": "failure", "response": f"echo agent failed step {step}"}

    sys.stdout.write(json.dumps(payload))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
