#!/usr/bin/env python3
"""Helper CLI for building, testing, and publishing toolchain container packages."""
from __future__ import annotations

import argparse
import json
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

ROOT = Path(__file__).resolve().parents[1]
CONTAINERS_DIR = ROOT / "containers"


def load_metadata(slug: str) -> Tuple[Dict[str, Any], Path]:
    package_dir = CONTAINERS_DIR / slug
    metadata_path = package_dir / "container.yaml"
    if not metadata_path.exists():
        raise SystemExit(f"container metadata not found: {metadata_path}")
    metadata = _load_yaml(metadata_path)
    return metadata, package_dir


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        import yaml  # type: ignore
    except ModuleNotFoundError:
        raise SystemExit("Install pyyaml (pip install pyyaml) to use this script.")

    return yaml.safe_load(path.read_text()) or {}


def resolve_token(metadata: Dict[str, Any], value: Any) -> Any:
    if isinstance(value, str) and value.startswith("!"):
        return resolve_path(metadata, value[1:])
    return value


def resolve_path(metadata: Dict[str, Any], path: str) -> Any:
    node: Any = metadata
    for part in path.split("."):
        if isinstance(node, dict) and part in node:
            node = node[part]
        else:
            raise SystemExit(f"unable to resolve token '!{path}' in metadata")
    return node


def parse_build_arg(raw: str) -> Tuple[str, str]:
    key, sep, value = raw.partition("=")
    if not sep or not key:
        raise SystemExit(f"build arg must look like KEY=VALUE: {raw!r}")
    return key, value


def flatten_build_args(metadata: Dict[str, Any], overrides: Sequence[str] = ()) -> Dict[str, str]:
    args = metadata.get("build", {}).get("args", {}) or {}
    resolved = {key: str(resolve_token(metadata, value)) for key, value in args.items()}
    for raw in overrides:
        key, value = parse_build_arg(raw)
        resolved[key] = value
    return resolved


def compute_tags(metadata: Dict[str, Any], override: Sequence[str] = ()) -> List[str]:
    publish = metadata.get("publish", {})
    image = publish.get("image")
    if not image:
        raise SystemExit("publish.image must be set in container.yaml")
    tags = list(override) or publish.get("tags", [])
    if not tags:
        raise SystemExit("publish.tags must contain at least one entry")
    return [f"{image}:{resolve_token(metadata, tag)}" for tag in tags]


def docker_build(package_dir: Path, metadata: Dict[str, Any], args: argparse.Namespace) -> None:
    build = metadata.get("build", {})
    dockerfile = build.get("dockerfile", "Dockerfile")
    context_dir = package_dir / build.get("context", ".")
    if not context_dir.exists():
        raise SystemExit(f"build context not found: {context_dir}")

    tags = compute_tags(metadata, getattr(args, "tag", None) or ())
    build_args = flatten_build_args(metadata, getattr(args, "build_arg", None) or ())

    cmd = ["docker", "build", str(context_dir), "-f", str(package_dir / dockerfile)]

    for tag in tags:
        cmd.extend(["-t", tag])

    if getattr(args, "platform", None):
        cmd.extend(["--platform", args.platform])

    for key, value in build_args.items():
        cmd.extend(["--build-arg", f"{key}={value}"])

    print("→ docker", " ".join(cmd[1:]))
    subprocess.run(cmd, check=True, cwd=package_dir)


def build_test_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ if environ is None else environ)
    venv_bin = ROOT / ".venv" / "bin"
    if venv_bin.is_dir():
        path_entries = [p for p in env.get("PATH", "").split(os.pathsep) if p]
        venv_str = str(venv_bin)
        if venv_str not in path_entries:
            env["PATH"] = os.pathsep.join([venv_str, *path_entries])
        env.setdefault("VIRTUAL_ENV", str(venv_bin.parent))
    return env


def run_tests(package_dir: Path, metadata: Dict[str, Any], args: argparse.Namespace) -> None:
    tests = metadata.get("tests") or []
    if not tests:
        print(f"no tests defined for {package_dir.name}; skipping")
        return

    env = build_test_env()
    for test in tests:
        name = test.get("name") or "unnamed"
        if not test.get("command"):
            print(f"Skipping test '{name}' with no command")
            continue
        # Test commands are written relative to the package dir.
        print(f"→ running test '{name}'")
        subprocess.run(["bash", "-c", test["command"]], check=True, cwd=package_dir, env=env)


def docker_push(metadata: Dict[str, Any]) -> None:
    for tag in compute_tags(metadata):
        print(f"→ docker push {tag}")
        subprocess.run(["docker", "push", tag], check=True)


def show_info(metadata: Dict[str, Any]) -> None:
    print(json.dumps(metadata, indent=2))


def version_key(value: Any) -> Tuple[Tuple[int, Any], ...]:
    """Sort key for dotted versions; named tokens (stable, beta) sort below numbers."""
    parts = []
    for token in str(value).replace("-", ".").split("."):
        if token.isdigit():
            parts.append((1, int(token)))
        else:
            parts.append((0, token))
    return tuple(parts)


def fetch_latest(source: Dict[str, Any]) -> str:
    """Return the highest version matched by source.regex in the page at source.url."""
    from urllib.request import urlopen

    url = source["url"]
    pattern = source.get("regex") or source.get("pattern")
    timeout = float(source.get("timeout", 10))

    with urlopen(url, timeout=timeout) as response:
        payload = response.read().decode("utf-8", "ignore")

    matches = re.findall(pattern, payload, flags=re.IGNORECASE)
    if not matches:
        raise LookupError("no matches from http-directory source")
    if isinstance(matches[0], tuple):
        matches = [m[0] for m in matches]
    return max(matches, key=version_key)


def check_upstream(metadata: Dict[str, Any], package_dir: Path) -> int:
    slug = metadata.get("slug") or package_dir.name
    version_cfg = metadata.get("version", {})
    strategy = version_cfg.get("strategy", "manual")
    current = version_cfg.get("current")
    if not current:
        raise SystemExit("version.current must be set for upstream checks")

    result: Dict[str, Any] = {
        "package": slug,
        "strategy": strategy,
        "current": current,
        "status": "skipped",
    }

    if strategy != "http-directory":
        print(json.dumps(result))
        return 0

    source = version_cfg.get("source", {}) or {}
    if not source.get("url") or not (source.get("regex") or source.get("pattern")):
        result["status"] = "error"
        result["error"] = "missing http-directory configuration"
        print(json.dumps(result))
        return 0

    result["source"] = source["url"]
    try:
        latest = fetch_latest(source)
    except Exception as exc:  # pylint: disable=broad-except
        result["status"] = "error"
        result["error"] = str(exc)
        print(json.dumps(result))
        return 0

    result["latest"] = latest
    if version_key(latest) > version_key(current):
        result["status"] = "update_available"
        print(json.dumps(result))
        return 2

    result["status"] = "up_to_date"
    print(json.dumps(result))
    return 0


def detect_version(metadata: Dict[str, Any]) -> None:
    version = metadata.get("version", {})
    strategy = version.get("strategy")
    print(f"Strategy: {strategy}")
    print(f"Current: {version.get('current')}")
    notes = version.get("notes")
    if notes:
        print(f"Notes: {notes}")
    if strategy == "http-directory":
        print(f"Source: {version.get('source', {}).get('url')}")
    elif strategy != "manual":
        print("Implement automated detection by extending scripts/package.py")


def list_packages() -> Iterable[str]:
    """Slugs of every containers/<slug>/ that carries a container.yaml."""
    return (
        path.name
        for path in sorted(CONTAINERS_DIR.iterdir())
        if not path.name.startswith(".") and (path / "container.yaml").exists()
    )


# Subcommands that take only a package slug.
SIMPLE_COMMANDS = {
    "test": "Run the package tests listed in container.yaml",
    "publish": "Push image tags to a registry",
    "show": "Pretty-print package metadata",
    "detect-version": "Display version strategy information",
    "check-upstream": "Check upstream for new toolchain releases",
}


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    subparsers = parser.add_subparsers(dest="command")

    build_parser = subparsers.add_parser("build", help="Build the container image")
    build_parser.add_argument("package", help="Package slug")
    build_parser.add_argument("--platform", help="Target platform for buildx (e.g. linux/amd64)")
    build_parser.add_argument(
        "--build-arg",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a build arg from container.yaml (e.g. VER=1.70.0)",
    )
    build_parser.add_argument(
        "--tag",
        action="append",
        default=[],
        help="Tag to apply instead of publish.tags (repeatable)",
    )

    for name, help_text in SIMPLE_COMMANDS.items():
        subparsers.add_parser(name, help=help_text).add_argument("package", help="Package slug")

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)

    if not args.command:
        print("Available packages:")
        print("\n".join(f"- {slug}" for slug in list_packages()))
        return

    metadata, package_dir = load_metadata(args.package)
    handlers = {
        "build": lambda: docker_build(package_dir, metadata, args),
        "test": lambda: run_tests(package_dir, metadata, args),
        "publish": lambda: docker_push(metadata),
        "show": lambda: show_info(metadata),
        "detect-version": lambda: detect_version(metadata),
        "check-upstream": lambda: sys.exit(check_upstream(metadata, package_dir)),
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"unknown command: {args.command}")
    handler()


if __name__ == "__main__":
    main()
