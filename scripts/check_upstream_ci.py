#!/usr/bin/env python3
"""Run check-upstream for every package in $PACKAGES_JSON and publish the results to CI."""
from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List

REPO_ROOT = Path(__file__).resolve().parents[1]


def check_package(pkg: str) -> List[Dict[str, Any]]:
    cmd = [sys.executable, str(REPO_ROOT / "scripts" / "package.py"), "check-upstream", pkg]
    completed = subprocess.run(cmd, capture_output=True, text=True, cwd=REPO_ROOT)
    results = []
    for line in completed.stdout.strip().splitlines():
        try:
            results.append(json.loads(line))
        except json.JSONDecodeError:
            print(line)
    # 2 means an update is available
    if completed.returncode not in (0, 2):
        print(completed.stdout)
        print(completed.stderr, file=sys.stderr)
        completed.check_returncode()
    return results


def collect_results(packages: Iterable[str]) -> List[Dict[str, Any]]:
    results: List[Dict[str, Any]] = []
    for pkg in packages:
        results.extend(check_package(pkg))
    return results


def write_output(name: str, value) -> None:
    serialized = json.dumps(value)
    output_path = os.environ.get("GITHUB_OUTPUT")
    if not output_path:
        return
    with open(output_path, "a", encoding="utf-8") as fh:
        fh.write(f"{name}<<EOF\n{serialized}\nEOF\n")


def main() -> int:
    packages_json = os.environ.get("PACKAGES_JSON")
    if not packages_json:
        print("::warning::PACKAGES_JSON not provided; nothing to check")
        return 0

    results = collect_results(json.loads(packages_json))
    updates = [r for r in results if r.get("status") == "update_available"]
    print(json.dumps(results, indent=2))

    write_output("results", results)
    write_output("updates", updates)
    write_output("updates_count", len(updates))
    return 0


if __name__ == "__main__":
    sys.exit(main())
