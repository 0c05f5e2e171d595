#!/usr/bin/env python3
"""Apply upstream toolchain version updates to container metadata and Dockerfiles."""
from __future__ import annotations

import json
import os
import re
from pathlib import Path

import yaml

ROOT = Path(__file__).resolve().parents[1]
CONTAINERS_DIR = ROOT / "containers"

VER_DEFAULT = re.compile(r"\$\{VER:-[^}]*\}")


def replace_key(lines: list[str], key: str, value: str) -> bool:
    for idx, line in enumerate(lines):
        stripped = line.lstrip()
        if stripped.startswith(f"{key}:"):
            indent = line[: len(line) - len(stripped)]
            replacement = f'{indent}{key}: "{value}"\n'
            if lines[idx] == replacement:
                return False
            lines[idx] = replacement
            return True
    return False


def update_dockerfile(path: Path, version: str) -> bool:
    if not path.exists():
        return False
    text = path.read_text()
    updated = VER_DEFAULT.sub(f"${{VER:-{version}}}", text)
    if updated == text:
        return False
    path.write_text(updated)
    return True


def update_container(entry: dict) -> bool:
    slug = entry.get("package")
    latest = entry.get("latest")
    if not slug or not latest:
        return False

    package_dir = CONTAINERS_DIR / slug
    metadata_path = package_dir / "container.yaml"
    if not metadata_path.exists():
        raise SystemExit(f"Missing container metadata: {metadata_path}")

    text = metadata_path.read_text()
    data = yaml.safe_load(text) or {}
    lines = text.splitlines(keepends=True)

    changed = replace_key(lines, "current", str(latest))
    if data.get("provision", {}).get("installer", {}).get("default_version") is not None:
        if replace_key(lines, "default_version", str(latest)):
            changed = True

    if changed:
        metadata_path.write_text("".join(lines))

    dockerfile = data.get("build", {}).get("dockerfile", "Dockerfile")
    if update_dockerfile(package_dir / dockerfile, str(latest)):
        changed = True
    return changed


def apply_updates(updates: list[dict]) -> list[str]:
    """Apply every entry that reports an available update; return the touched slugs."""
    touched = set()
    for entry in updates:
        if entry.get("status", "update_available") != "update_available":
            continue
        if update_container(entry):
            touched.add(entry["package"])
    return sorted(touched)


def main() -> None:
    updates = json.loads(os.environ.get("UPDATES_JSON") or "[]")
    if not updates:
        print("No upstream updates to apply.")
        return

    touched = apply_updates(updates)
    print("Updated: " + ", ".join(touched) if touched else "Toolchain pins already current.")


if __name__ == "__main__":
    main()
