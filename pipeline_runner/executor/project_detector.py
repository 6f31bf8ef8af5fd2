"""
Project Detector
================
Detects the project type from repository signals (marker files).

Detection is deterministic — same workspace always yields the same type.
Only the workspace root is inspected.
"""
import os
from typing import Optional


# ---------------------------------------------------------------------------
# Signal File → Project Type mapping (ordered by priority)
# ---------------------------------------------------------------------------
# Order matters: first match wins.
SIGNAL_MAP: list[tuple[str, str]] = [
    ("pom.xml",          "java"),
    ("build.gradle",     "gradle"),
    ("build.gradle.kts", "gradle"),
    ("package.json",     "node"),
    ("pyproject.toml",   "python"),
    ("requirements.txt", "python"),
    ("setup.py",         "python"),
    ("go.mod",           "go"),
]


def detect_project_type(workspace_path: str) -> Optional[str]:
    """
    Scan the workspace root for signal files and return the project type.

    Returns None if the directory does not exist or no signal file is found.
    """
    if not os.path.isdir(workspace_path):
        return None

    for signal_file, project_type in SIGNAL_MAP:
        if os.path.isfile(os.path.join(workspace_path, signal_file)):
            return project_type

    return None


def has_dockerfile(workspace_path: str) -> bool:
    """True if the workspace root can be built into a container image."""
    return os.path.isfile(os.path.join(workspace_path, "Dockerfile"))


def detect_all_signals(workspace_path: str) -> list[str]:
    """Return all signal files (and Dockerfile) found in the workspace root."""
    if not os.path.isdir(workspace_path):
        return []

    names = [signal for signal, _ in SIGNAL_MAP] + ["Dockerfile"]
    return [n for n in names if os.path.isfile(os.path.join(workspace_path, n))]
