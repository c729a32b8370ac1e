"""
Version information for the BindLayer SDK.

Installed distributions report their metadata version; a source checkout
reads ``pyproject.toml`` next to the package.
"""
import importlib.metadata
import pathlib
from typing import Tuple

import tomli

DISTRIBUTION = "bindlayer-sdk"
FALLBACK_VERSION = "0.1.0"


def _pyproject_version() -> str:
    path = pathlib.Path(__file__).parent.parent / "pyproject.toml"
    try:
        with open(path, "rb") as f:
            return tomli.load(f)["project"]["version"]
    except (FileNotFoundError, KeyError, tomli.TOMLDecodeError):
        return FALLBACK_VERSION


def _lookup_version() -> str:
    try:
        return importlib.metadata.version(DISTRIBUTION)
    except importlib.metadata.PackageNotFoundError:
        return _pyproject_version()


__version__ = _lookup_version()
version_info: Tuple[int, ...] = tuple(int(p) for p in __version__.split(".")[:3] if p.isdigit())
