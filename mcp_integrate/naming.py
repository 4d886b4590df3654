"""Mapping between plugin capabilities and server tool names.

Server tools are named "<plugin>_<snake_case_method>" (github_get_repo).
Callers may address them as "<plugin>.<method>" with the method in
snake_case or camelCase ("github.get_repo", "github.getRepo"). The map is
built once from the configured plugins.
"""

import re
from typing import Iterable

from .config import Plugin


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case ("listOwnRepos" -> "list_own_repos")."""
    return re.sub(r"[A-Z]", lambda m: f"_{m.group(0).lower()}", name)


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase ("list_own_repos" -> "listOwnRepos")."""
    return re.sub(r"_([a-z])", lambda m: m.group(1).upper(), name)


def method_to_tool_name(method: str, plugin_id: str) -> str:
    """Full tool name for a plugin method ("getRepo", "github" -> "github_get_repo")."""
    return f"{plugin_id}_{camel_to_snake(method)}"


def tool_name_to_method(tool_name: str) -> str:
    """Method name of a tool, without the plugin prefix ("github_get_repo" -> "getRepo")."""
    without_prefix = re.sub(r"^[^_]+_", "", tool_name, count=1)
    return snake_to_camel(without_prefix)


def build_capability_map(plugins: Iterable[Plugin]) -> dict[str, str]:
    """Map "<plugin>.<method>" capability names to tool names.

    Only tools that carry their plugin's prefix get a capability name;
    each is reachable in both snake_case and camelCase.
    """
    capabilities: dict[str, str] = {}
    for plugin in plugins:
        prefix = f"{plugin.id}_"
        for tool in plugin.tools:
            if not tool.startswith(prefix):
                continue
            method = tool[len(prefix):]
            capabilities[f"{plugin.id}.{method}"] = tool
            capabilities[f"{plugin.id}.{snake_to_camel(method)}"] = tool

    return capabilities
