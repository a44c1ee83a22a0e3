"""
Project Detector
================
Guesses the project toolchain from marker files at the working-tree root.
The result only picks default commands for success criteria that carry no
explicit command; it never changes what a run does otherwise.
"""
import os
from typing import Optional


# Order matters: first marker found wins.
PROJECT_MARKERS: list[tuple[str, str]] = [
    ("package.json",     "node"),
    ("pyproject.toml",   "python"),
    ("setup.py",         "python"),
    ("requirements.txt", "python"),
    ("go.mod",           "go"),
    ("Cargo.toml",       "rust"),
    ("pom.xml",          "java"),
]


def detect_project_type(project_path: str) -> Optional[str]:
    """Return "node" / "python" / "go" / "rust" / "java", or None."""
    if not os.path.isdir(project_path):
        return None

    for marker, project_type in PROJECT_MARKERS:
        if os.path.isfile(os.path.join(project_path, marker)):
            return project_type
    return None
