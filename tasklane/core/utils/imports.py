"""
Locating task manifests for the CLI.

A locator is ``module.path:attr`` or ``path/to/file.py:attr``.  The caller
controls sys.path; the only convenience is adding cwd when it is a project
root.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import os
import sys
from typing import Any

from tasklane.core.logging import get_logger

logger = get_logger('imports')


def find_project_root(start_dir: str) -> str | None:
    """Return start_dir if it holds pyproject.toml, setup.cfg or setup.py. Does not walk up."""
    start_dir = os.path.abspath(start_dir)
    for marker in ('pyproject.toml', 'setup.cfg', 'setup.py'):
        if os.path.exists(os.path.join(start_dir, marker)):
            return start_dir
    return None


def setup_sys_path_from_cwd() -> str | None:
    """Put cwd on sys.path when it is a project root; returns cwd if added."""
    cwd = os.getcwd()
    if find_project_root(cwd) and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f'Added cwd to sys.path: {cwd}')
        return cwd
    return None


def is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def parse_locator(locator: str) -> tuple[str, str | None]:
    """
    "app.tasks:registry" -> ("app.tasks", "registry")
    "app/tasks.py"       -> ("app/tasks.py", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr or None)
    return (locator, None)


def _synthetic_module_name(path: str) -> str:
    digest = hashlib.sha256(os.path.realpath(path).encode()).hexdigest()[:12]
    return f'tasklane_manifest_{digest}'


def import_file_path(file_path: str, add_parent_to_path: bool = True) -> Any:
    """Import a module from a file path under a stable synthetic name."""
    file_path = os.path.realpath(file_path)
    if not os.path.exists(file_path):
        raise FileNotFoundError(f'Module file not found: {file_path}')

    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, '__file__', None)
        if mod_file and os.path.realpath(mod_file) == file_path:
            return mod

    if add_parent_to_path:
        parent_dir = os.path.dirname(file_path)
        if parent_dir not in sys.path:
            sys.path.insert(0, parent_dir)

    module_name = _synthetic_module_name(file_path)
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {file_path}')
    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    spec.loader.exec_module(mod)
    return mod


def import_locator_module(module_path: str) -> Any:
    if is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        return import_file_path(module_path)
    return importlib.import_module(module_path)
