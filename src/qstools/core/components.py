"""Registry of the configuration components qs-tools can back up."""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from .config import Config
from .errors import LocalIOError, UnknownComponentError, UnsupportedComponentError

# %NAME%, $NAME and ${NAME}
_ENV_REFERENCE = re.compile(r"%(\w+)%|\$\{(\w+)\}|\$(\w+)")


def platform_family(platform: Optional[str] = None) -> str:
    """Return ``"windows"`` or ``"posix"`` for a ``sys.platform`` value."""
    platform = platform or sys.platform
    return "windows" if platform.startswith("win") else "posix"


def expand_path(template: str, env: Optional[Mapping[str, str]] = None) -> Path:
    """Expand ``~`` and environment references in a path template.

    Raises:
        LocalIOError: If a referenced environment variable is not set.
    """
    env = os.environ if env is None else env

    def substitute(match: "re.Match[str]") -> str:
        name = next(group for group in match.groups() if group)
        if name not in env:
            raise LocalIOError(f"Environment variable {name} is not set (needed for {template})")
        return env[name]

    expanded = _ENV_REFERENCE.sub(substitute, template)
    if expanded == "~" or expanded.startswith(("~/", "~\\")):
        home = env.get("HOME") or env.get("USERPROFILE") or str(Path.home())
        expanded = home + expanded[1:]
    return Path(expanded)


@dataclass
class Component:
    """A named configuration directory that can be backed up and restored.

    Attributes:
        name: Registry key, also used in the remote object name.
        display_name: Human readable name.
        paths: Path template per platform family (``posix``/``windows``).
        aliases: Other names accepted on the command line.
    """

    name: str
    display_name: str
    paths: Dict[str, str]
    aliases: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def platforms(self) -> Tuple[str, ...]:
        return tuple(sorted(self.paths))

    def supports(self, platform: Optional[str] = None) -> bool:
        return platform_family(platform) in self.paths

    def local_path(
        self, platform: Optional[str] = None, env: Optional[Mapping[str, str]] = None
    ) -> Path:
        """Resolve the component's directory on ``platform``.

        Raises:
            UnsupportedComponentError: If the component has no path for the platform.
            LocalIOError: If the path references an unset environment variable.
        """
        family = platform_family(platform)
        template = self.paths.get(family)
        if template is None:
            raise UnsupportedComponentError(
                f"{self.display_name} is only supported on {', '.join(self.platforms)} systems",
                component=self.name,
            )
        return expand_path(template, env)


class ComponentRegistry:
    """Lookup of components by name or alias."""

    def __init__(self, components: List[Component]) -> None:
        self._components: Dict[str, Component] = {}
        self._aliases: Dict[str, str] = {}
        for component in components:
            self._components[component.name] = component
        for component in components:
            for alias in component.aliases:
                self._aliases.setdefault(alias, component.name)

    @classmethod
    def from_config(cls, config: Config) -> "ComponentRegistry":
        components = [
            Component(
                name=name,
                display_name=component_config["name"],
                paths=dict(component_config["paths"]),
                aliases=tuple(component_config.get("aliases", [])),
            )
            for name, component_config in config.get_component_configs().items()
        ]
        return cls(components)

    def get(self, name: str) -> Component:
        """Return the component called ``name`` (or aliased as ``name``).

        Raises:
            UnknownComponentError: If nothing is registered under that name.
        """
        key = name.strip().lower()
        key = self._aliases.get(key, key) if key not in self._components else key
        try:
            return self._components[key]
        except KeyError:
            raise UnknownComponentError(
                f"Unsupported component: {name} (available: {', '.join(self.names())})",
                component=name,
            ) from None

    def names(self) -> List[str]:
        return sorted(self._components)

    def __iter__(self) -> Iterator[Component]:
        return iter(self._components[name] for name in self.names())

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        return name in self._components or name in self._aliases

    def __len__(self) -> int:
        return len(self._components)
