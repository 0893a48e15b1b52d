"""Package registry access.

The planner only needs the published versions of internal packages, to
decide whether dependent requirements can still be satisfied. Registries
are optional: when one is unavailable the published set is treated as
empty.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Protocol, runtime_checkable

from .errors import RegistryUnavailableError
from .requirements import VersionRequirement, max_satisfying
from .versions import compare_versions, is_valid_version, parse_version

logger = logging.getLogger(__name__)


@runtime_checkable
class Registry(Protocol):
    def versions(self, name: str) -> list[str]: ...

    def latest(self, name: str) -> str | None: ...


class StaticRegistry:
    """Registry backed by an in-memory ``name -> versions`` map."""

    def __init__(self, published: Mapping[str, Iterable[str]] | None = None) -> None:
        self._published = {name: list(vs) for name, vs in (published or {}).items()}

    def versions(self, name: str) -> list[str]:
        return list(self._published.get(name, []))

    def latest(self, name: str) -> str | None:
        valid = [v for v in self.versions(name) if is_valid_version(v)]
        if not valid:
            return None
        latest = valid[0]
        for v in valid[1:]:
            if compare_versions(v, latest) > 0:
                latest = v
        return latest


class CachedRegistry:
    """Wraps a registry, remembering answers for one invocation.

    Lookups are cached by package name, and resolved requirements by
    ``(name, normalized requirement)``. A registry that raises
    :class:`RegistryUnavailableError` is logged once per name and treated
    as having no versions.
    """

    def __init__(self, registry: Registry) -> None:
        self.registry = registry
        self._versions: dict[str, list[str]] = {}
        self._resolved: dict[tuple[str, str], str | None] = {}

    def versions(self, name: str) -> list[str]:
        if name not in self._versions:
            try:
                self._versions[name] = list(self.registry.versions(name))
            except RegistryUnavailableError as e:
                logger.warning("Registry unavailable for %s: %s", name, e)
                self._versions[name] = []
        return list(self._versions[name])

    def latest(self, name: str) -> str | None:
        return StaticRegistry({name: self.versions(name)}).latest(name)

    def resolve(self, name: str, requirement: str) -> str | None:
        """Highest published version of ``name`` satisfying ``requirement``."""
        req = VersionRequirement.parse(requirement)
        key = (name, req.raw.strip())
        if key not in self._resolved:
            candidates = [parse_version(v) for v in self.versions(name) if is_valid_version(v)]
            best = max_satisfying(candidates, [req])
            self._resolved[key] = str(best) if best is not None else None
        return self._resolved[key]

    def published_versions(self, names: Iterable[str]) -> dict[str, list[str]]:
        return {name: self.versions(name) for name in sorted(set(names))}
