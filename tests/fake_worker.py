"""Scripted stand-in for a worker process.

Behaviour comes from the FAKE_WORKER_SCENARIO environment variable, a JSON
object:

    {
        "argv_file": "/tmp/argv.json",     # optional, argv[1:] is written here
        "stdin_file": "/tmp/stdin.jsonl",  # optional, every stdin line read is appended
        "steps": [
            {"emit": {...}},          # one JSON line on stdout
            {"raw": "not json"},      # a raw stdout line
            {"stderr": "text"},       # a stderr line
            {"sleep": 0.5},
            {"read_stdin": true},     # wait for one more stdin line
            {"spawn_child": "/tmp/child.pid"},  # start a long sleeper, record its pid
            {"exit": 3}
        ]
    }

With "turns" (a list of such objects) and "counter_file", each invocation
plays the next turn.
"""

import json
import os
import subprocess
import sys
import time
from pathlib import Path


def pick_turn(scenario: dict) -> dict:
    turns = scenario.get("turns")
    if not turns:
        return scenario
    counter = Path(scenario["counter_file"])
    index = int(counter.read_text()) if counter.exists() else 0
    counter.write_text(str(index + 1))
    return {**scenario, **turns[min(index, len(turns) - 1)]}


def record_stdin(scenario: dict, line: str) -> None:
    if scenario.get("stdin_file") and line:
        with open(scenario["stdin_file"], "a", encoding="utf-8") as f:
            f.write(line if line.endswith("\n") else line + "\n")


def main() -> int:
    scenario = pick_turn(json.loads(os.environ.get("FAKE_WORKER_SCENARIO", "{}")))

    if scenario.get("argv_file"):
        Path(scenario["argv_file"]).write_text(json.dumps(sys.argv[1:]))

    record_stdin(scenario, sys.stdin.readline())

    for step in scenario.get("steps", []):
        if "emit" in step:
            print(json.dumps(step["emit"]), flush=True)
        elif "raw" in step:
            print(step["raw"], flush=True)
        elif "stderr" in step:
            print(step["stderr"], file=sys.stderr, flush=True)
        elif "sleep" in step:
            time.sleep(step["sleep"])
        elif "read_stdin" in step:
            record_stdin(scenario, sys.stdin.readline())
        elif "spawn_child" in step:
            child = subprocess.Popen(
                [sys.executable, "-c", "import time; time.sleep(60)"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            Path(step["spawn_child"]).write_text(str(child.pid))
        elif "exit" in step:
            return int(step["exit"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
