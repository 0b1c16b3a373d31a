#!/usr/bin/env python3
"""Run one turn-timeout sweep: skip stalled turns, time out guesses, clean up."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run the Phraseotomy turn-timeout sweep once."
    )
    parser.add_argument(
        "--now",
        type=int,
        default=None,
        help="Evaluate timers as if the current unix time were this value.",
    )
    args = parser.parse_args()

    load_dotenv()
    os.environ.setdefault("TURN_SCHEDULER_MODE", "external")

    from app import services  # Imported after env setup.

    evaluated_now = args.now if args.now is not None else int(time.time())

    try:
        summary = services.run_turn_timeout_sweep(evaluated_now)
    except Exception as exc:
        payload = {
            "ok": False,
            "error": f"{type(exc).__name__}: {exc}",
            "evaluated_now": evaluated_now,
            "metrics": services.get_runtime_metrics(),
        }
        print(json.dumps(payload, indent=2))
        return 2

    payload = {
        "ok": True,
        "evaluated_now": evaluated_now,
        "summary": summary,
        "metrics": services.get_runtime_metrics(),
    }
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
