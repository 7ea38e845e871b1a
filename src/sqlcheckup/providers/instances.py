"""Resolve a target host into the instance identities it runs."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from ..assessment.snapshot import DEFAULT_INSTANCE, InstanceIdentity
from ..targets import Target, TargetResolutionError


class InstanceResolver(Protocol):
    """Maps a target to one or more instance identities."""

    def resolve(self, target: Target) -> Sequence[InstanceIdentity]:
        """Return the instances hosted by *target*."""
        ...


@dataclass(slots=True, frozen=True)
class InventoryInstanceResolver:
    """Resolve instances from the target list itself.

    Targets without pinned instances resolve to the default instance.
    """

    use_fqdn: bool = False

    def resolve(self, target: Target) -> Sequence[InstanceIdentity]:
        """Return one identity per pinned instance, or the default instance."""
        server = target.address(self.use_fqdn)
        if not server:
            raise TargetResolutionError("Target has no host name.")
        names = target.instances or (DEFAULT_INSTANCE,)
        identities: list[InstanceIdentity] = []
        for name in names:
            is_default = name.upper() in {DEFAULT_INSTANCE, "MSSQLSERVER"}
            normalised = DEFAULT_INSTANCE if is_default else name
            identity = InstanceIdentity(server_name=server, instance_name=normalised)
            if identity not in identities:
                identities.append(identity)
        return tuple(identities)


__all__ = ["InstanceResolver", "InventoryInstanceResolver", "TargetResolutionError"]
