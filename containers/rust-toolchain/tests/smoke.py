#!/usr/bin/env python3
"""Smoke test a built rust-toolchain image. Requires docker."""
from __future__ import annotations

import json
import os
import re
import subprocess
from pathlib import Path

import yaml

package_dir = Path(__file__).resolve().parent.parent
metadata = yaml.safe_load((package_dir / "container.yaml").read_text(encoding="utf-8"))

IMAGE = os.environ.get("IMAGE") or f"{metadata['publish']['image']}:{metadata['version']['current']}"
EXPECTED_VERSION = os.environ.get("EXPECTED_VERSION") or metadata["version"]["current"]
INSTALLER = metadata["provision"]["installer"]["filename"]

I128_PROBE = "fn main() { let x = 0i128; std::process::exit(x as i32); }"


def _docker_run(*command: str) -> subprocess.CompletedProcess:
    cmd = ["docker", "run", "--rm", IMAGE, *command]
    print("→", " ".join(cmd))
    return subprocess.run(cmd, capture_output=True, text=True)


def _assert(condition, message):
    if not condition:
        raise SystemExit(message)


def test_default_command():
    completed = _docker_run()
    _assert(completed.returncode == 0, f"default command failed: {completed.stderr.strip()}")
    lines = [line for line in completed.stdout.splitlines() if line.strip()]
    _assert(len(lines) == 3, f"expected three version lines, got {lines!r}")
    for prefix, line in zip(("rustup ", "cargo ", "rustc "), lines):
        _assert(line.startswith(prefix), f"expected {prefix.strip()} version, got {line!r}")


def test_probes_exit_cleanly():
    for probe in metadata["provision"]["probes"]:
        completed = _docker_run(*probe.split())
        _assert(completed.returncode == 0, f"{probe!r} exited {completed.returncode}")
        _assert(completed.stdout.strip(), f"{probe!r} printed nothing")


def _reported_version(tool: str) -> str:
    completed = _docker_run(tool, "--version")
    reported = completed.stdout.split()
    _assert(len(reported) > 1, f"unexpected {tool} output {completed.stdout!r}")
    return reported[1]


def test_toolchain_version():
    # Named channels (stable, beta, nightly) carry no fixed version to compare.
    if not re.fullmatch(r"\d+\.\d+(\.\d+)?", EXPECTED_VERSION):
        return
    # cargo has shipped with the matching rustc version number since 1.26
    for tool in ("rustc", "cargo"):
        version = _reported_version(tool)
        _assert(
            version == EXPECTED_VERSION or version.startswith(EXPECTED_VERSION + "."),
            f"{tool} reports {version!r}, expected {EXPECTED_VERSION!r}",
        )


def test_installer_removed():
    completed = _docker_run("sh", "-c", f"test ! -e /{INSTALLER} && test ! -e /root/{INSTALLER}")
    _assert(completed.returncode == 0, f"{INSTALLER} left behind in image")


def test_caches_empty():
    patterns = " ".join(metadata["provision"]["cleanup"])
    # Unmatched globs stay literal and fail ls, hence the discarded stderr.
    completed = _docker_run("sh", "-c", f"ls -d {patterns} 2>/dev/null; true")
    leftovers = completed.stdout.split()
    _assert(not leftovers, f"residual cache files: {leftovers[:5]}")


def test_compiles_i128_probe():
    script = f"printf '%s' '{I128_PROBE}' > /tmp/probe.rs && rustc -o /tmp/probe /tmp/probe.rs && /tmp/probe"
    completed = _docker_run("sh", "-c", script)
    _assert(completed.returncode == 0, f"i128 probe failed: {completed.stderr.strip()}")


def main():
    test_default_command()
    test_probes_exit_cleanly()
    test_toolchain_version()
    test_installer_removed()
    test_caches_empty()
    test_compiles_i128_probe()
    print(json.dumps({"status": "ok", "image": IMAGE}))


if __name__ == "__main__":
    main()
