"""Conflict Detector: finds existing resources that collide with a stage's names."""

from __future__ import annotations

from typing import Callable, Iterable

import structlog

from stagecraft.provisioning.base import (
    CredentialContext,
    ExistingResource,
    ProvisioningAPI,
    ResourceKind,
)

logger = structlog.get_logger()

LOG_GROUP_PREFIX = "/aws/lambda/"


def _contains(prefix: str) -> Callable[[ExistingResource], bool]:
    return lambda resource: prefix in resource.name


def _starts_with(prefix: str) -> Callable[[ExistingResource], bool]:
    return lambda resource: resource.name.startswith(prefix)


# Distributions have no name of their own; the template writes the prefix into the comment.
MATCHERS: dict[ResourceKind, Callable[[str], Callable[[ExistingResource], bool]]] = {
    ResourceKind.DISTRIBUTION: _contains,
    ResourceKind.BUCKET: _starts_with,
    ResourceKind.FUNCTION: _starts_with,
    ResourceKind.ROLE: _starts_with,
    ResourceKind.LOG_GROUP: lambda prefix: _starts_with(f"{LOG_GROUP_PREFIX}{prefix}"),
    ResourceKind.CERTIFICATE: lambda domain: lambda resource: resource.name == domain,
}


class ConflictDetector:
    """Scans the target environment for name collisions."""

    def __init__(self, api: ProvisioningAPI) -> None:
        self._api = api

    def scan(
        self,
        credentials: CredentialContext,
        name_prefix: str,
        kinds: Iterable[ResourceKind],
    ) -> list[ExistingResource]:
        matches: list[ExistingResource] = []
        for kind in kinds:
            matcher = MATCHERS[kind](name_prefix)
            found = [r for r in self._api.list_resources(credentials, kind) if matcher(r)]
            logger.debug("conflict_scan", kind=str(kind), prefix=name_prefix, matches=len(found))
            matches.extend(found)
        if matches:
            logger.warning(
                "conflicts_detected",
                prefix=name_prefix,
                resources=[f"{m.kind}:{m.name}" for m in matches],
            )
        return matches

    def scan_many(
        self,
        credentials: CredentialContext,
        names: Iterable[str],
        kinds: Iterable[ResourceKind],
    ) -> list[ExistingResource]:
        """Scan once per name (e.g. each certificate domain), de-duplicated."""
        kinds = list(kinds)
        seen: set[tuple[ResourceKind, str]] = set()
        matches: list[ExistingResource] = []
        for name in names:
            for resource in self.scan(credentials, name, kinds):
                key = (resource.kind, resource.identifier)
                if key not in seen:
                    seen.add(key)
                    matches.append(resource)
        return matches
