"""Version management for vidresolve."""

import tomllib
from importlib import metadata
from pathlib import Path


def get_version() -> str:
    """Get the current version from pyproject.toml, or the installed metadata."""
    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    try:
        with open(pyproject_path, "rb") as f:
            return tomllib.load(f)["project"]["version"]
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        pass
    try:
        return metadata.version("vidresolve")
    except metadata.PackageNotFoundError:
        return "0.0.0"


__version__ = get_version()
