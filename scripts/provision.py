#!/usr/bin/env python3
"""Provision the current host the same way the container image is provisioned.

The pipeline mirrors the package Dockerfile: prepare the base system, install
the toolchain through its remote installer, put the install dir on PATH, then
run the version probes. Parameters come from the ``provision`` block of the
package's container.yaml.
"""
from __future__ import annotations

import argparse
import glob
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from package import load_metadata

DEFAULT_PACKAGE = "rust-toolchain"


def provision_config(metadata: Dict[str, Any]) -> Dict[str, Any]:
    config = metadata.get("provision")
    if not config:
        raise SystemExit("provision block must be set in container.yaml")
    for key in ("packages", "installer", "install_dir", "probes"):
        if key not in config:
            raise SystemExit(f"provision.{key} must be set in container.yaml")
    installer = config["installer"]
    for key in ("url", "filename", "profile", "default_version"):
        if not installer.get(key):
            raise SystemExit(f"provision.installer.{key} must be set in container.yaml")
    return config


def resolve_version(config: Dict[str, Any], requested: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> str:
    """Pick the toolchain version: explicit flag, then $VER, then the configured default.

    Empty strings count as unset, like ``${VER:-default}`` in the Dockerfile.
    """
    if requested:
        return requested
    env = os.environ if environ is None else environ
    return env.get("VER") or str(config["installer"]["default_version"])


def base_commands(config: Dict[str, Any]) -> List[List[str]]:
    return [
        ["apt-get", "update"],
        ["apt-get", "install", "-qqy", *config["packages"]],
        ["apt-get", "clean", "autoclean"],
        ["apt-get", "autoremove", "-y", "--purge"],
    ]


def installer_command(config: Dict[str, Any], installer_path: Path, version: str) -> List[str]:
    return [
        str(installer_path),
        "-y",
        "--no-modify-path",
        "--profile",
        config["installer"]["profile"],
        "--default-toolchain",
        version,
    ]


def _run(cmd: Sequence[str], dry_run: bool = False, **kwargs: Any) -> None:
    print("→", " ".join(shlex.quote(part) for part in cmd))
    if not dry_run:
        subprocess.run(list(cmd), check=True, **kwargs)


def cleanup(patterns: Sequence[str], dry_run: bool = False) -> List[str]:
    """Remove everything matching the cleanup globs, like ``rm -rf``.

    A dry run prints the patterns themselves so the plan does not depend on
    what happens to exist on this host.
    """
    if dry_run:
        for pattern in patterns:
            print(f"→ rm -rf {pattern}")
        return list(patterns)

    removed = []
    for pattern in patterns:
        for match in sorted(glob.glob(pattern)):
            print(f"→ rm -rf {match}")
            removed.append(match)
            path = Path(match)
            # Entries may vanish between glob and removal (e.g. in /tmp).
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path, ignore_errors=True)
            else:
                path.unlink(missing_ok=True)
    return removed


def prepare_base(config: Dict[str, Any], dry_run: bool = False) -> None:
    for cmd in base_commands(config):
        _run(cmd, dry_run=dry_run)
    cleanup(config.get("cleanup", []), dry_run=dry_run)


def fetch_installer(url: str, destination: Path) -> Path:
    from urllib.request import urlopen

    print(f"→ fetch {url} -> {destination}")
    print("! installer integrity is not verified (no checksum pinned)", file=sys.stderr)
    with urlopen(url) as response:
        destination.write_bytes(response.read())
    destination.chmod(0o755)
    return destination


def install_toolchain(config: Dict[str, Any], version: str, workdir: Path, dry_run: bool = False) -> None:
    installer = config["installer"]
    installer_path = workdir / installer["filename"]
    cmd = installer_command(config, installer_path, version)

    if dry_run:
        print(f"→ fetch {installer['url']} -> {installer_path}")
        _run(cmd, dry_run=True)
        print(f"→ rm {installer_path}")
        return

    try:
        fetch_installer(installer["url"], installer_path)
        _run(cmd)
    finally:
        if installer_path.exists():
            print(f"→ rm {installer_path}")
            installer_path.unlink()


def configure_environment(
    config: Dict[str, Any],
    environ: Optional[Dict[str, str]] = None,
    export: bool = False,
) -> Dict[str, str]:
    """Return a copy of the environment with the install dir appended to PATH.

    With ``export`` set under GitHub Actions, the dir is also appended to
    $GITHUB_PATH so later workflow steps see it.
    """
    env = dict(os.environ if environ is None else environ)
    install_dir = str(config["install_dir"])
    entries = [p for p in env.get("PATH", "").split(os.pathsep) if p]
    if install_dir not in entries:
        entries.append(install_dir)
    env["PATH"] = os.pathsep.join(entries)

    github_path = env.get("GITHUB_PATH")
    if export and github_path:
        with open(github_path, "a", encoding="utf-8") as fh:
            fh.write(f"{install_dir}\n")
    return env


def run_probes(config: Dict[str, Any], env: Dict[str, str]) -> List[Dict[str, Any]]:
    """Run each probe in order, unguarded, and collect its exit status and stdout."""
    results = []
    for probe in config["probes"]:
        cmd = shlex.split(probe)
        print("→", probe)
        # Resolve against the probe env, not ours.
        executable = shutil.which(cmd[0], path=env.get("PATH")) or cmd[0]
        try:
            completed = subprocess.run([executable, *cmd[1:]], capture_output=True, text=True, env=env)
        except FileNotFoundError:
            print(f"{cmd[0]}: command not found", file=sys.stderr)
            results.append({"command": probe, "returncode": 127, "output": ""})
            continue
        output = completed.stdout.strip()
        if output:
            print(output)
        if completed.stderr.strip():
            print(completed.stderr.strip(), file=sys.stderr)
        results.append({"command": probe, "returncode": completed.returncode, "output": output})
    return results


def provision(config: Dict[str, Any], version: str, workdir: Path, dry_run: bool = False) -> int:
    prepare_base(config, dry_run=dry_run)
    install_toolchain(config, version, workdir, dry_run=dry_run)
    if dry_run:
        print(f"→ export PATH=\"$PATH:{config['install_dir']}\"")
        for probe in config["probes"]:
            print("→", probe)
        return 0
    results = run_probes(config, configure_environment(config, export=True))
    return results[-1]["returncode"] if results else 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--package", default=DEFAULT_PACKAGE, help="Package slug whose provision block to use")
    parser.add_argument("--toolchain", help="Toolchain version or channel (default: $VER, then container.yaml)")
    parser.add_argument("--workdir", default=".", help="Directory the installer is downloaded into")
    parser.add_argument(
        "command",
        choices=["plan", "run", "probe"],
        help="plan: print the commands; run: provision this host; probe: run the version probes",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    metadata, _ = load_metadata(args.package)
    config = provision_config(metadata)

    if args.command == "probe":
        results = run_probes(config, configure_environment(config))
        return results[-1]["returncode"] if results else 0

    version = resolve_version(config, args.toolchain)
    print(f"Toolchain: {version}")
    workdir = Path(args.workdir).resolve()
    return provision(config, version, workdir, dry_run=args.command == "plan")


if __name__ == "__main__":
    sys.exit(main())
