import json
import tomllib
from pathlib import Path

from safelog.core.constants import MANIFEST_FILES
from safelog.core.exceptions.domain import ManifestError


def _name_from_pyproject(path: Path) -> str:
    data = tomllib.loads(path.read_text(encoding="utf-8"))
    project = data.get("project")
    if isinstance(project, dict) and project.get("name"):
        return project["name"]
    tool = data.get("tool")
    poetry = tool.get("poetry") if isinstance(tool, dict) else None
    if isinstance(poetry, dict):
        return poetry.get("name") or ""
    return ""


def _name_from_json(path: Path) -> str:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        return ""
    return data.get("name") or ""


def read_manifest_name(path: Path) -> str:
    """Read the project name from a single manifest file."""
    try:
        if path.suffix == ".toml":
            return str(_name_from_pyproject(path))
        return str(_name_from_json(path))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
        raise ManifestError(str(path), str(e)) from e


def get_app_name(directory: str | Path = ".", fallback: str = "") -> str:
    """Resolve the application name.

    The first manifest found in ``directory`` wins, checked in the order
    pyproject.toml, package.json, deno.json. Without a manifest, or when it
    has no name, the ``fallback`` (normally LOGGER_APP_NAME) is returned.
    """
    base = Path(directory)
    for filename in MANIFEST_FILES:
        manifest = base / filename
        if manifest.is_file():
            return read_manifest_name(manifest) or fallback
    return fallback
