"""Target list parsing.

Targets come from ``--target`` options, plain text files (one ``host`` or
``host,domain`` per line, ``#`` comments allowed) or YAML files holding a list
of strings or mappings with ``host``, ``domain`` and ``instances`` keys.
A ``host\\INSTANCE`` spelling pins a named instance.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

import yaml

YAML_SUFFIXES = {".yml", ".yaml"}


class TargetListError(RuntimeError):
    """Raised when a target specification cannot be parsed."""


class TargetResolutionError(RuntimeError):
    """Raised when a target cannot be resolved to any instance."""


@dataclass(slots=True, frozen=True)
class Target:
    """A host to inspect, optionally with a domain suffix and pinned instances."""

    host: str
    domain: str | None = None
    instances: tuple[str, ...] = ()

    def address(self, use_fqdn: bool = False) -> str:
        """Return the host name, qualified with the domain when requested."""
        if use_fqdn and self.domain and "." not in self.host:
            return f"{self.host}.{self.domain}"
        return self.host

    def __str__(self) -> str:
        return self.address(use_fqdn=True)


def _clean_domain(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lstrip(".")
    return text or None


def parse_target(text: str, *, default_domain: str | None = None) -> Target:
    """Parse ``host``, ``host,domain`` or ``host\\instance`` into a Target."""
    raw = text.strip()
    if not raw:
        raise TargetListError("Empty target specification.")
    host_part, _, domain_part = raw.partition(",")
    host_part = host_part.strip()
    instances: tuple[str, ...] = ()
    if "\\" in host_part:
        host_part, _, instance = host_part.partition("\\")
        instance = instance.strip()
        if not instance:
            raise TargetListError(f"Missing instance name in target '{raw}'.")
        instances = (instance,)
    host = host_part.strip()
    if not host:
        raise TargetListError(f"Missing host name in target '{raw}'.")
    domain = _clean_domain(domain_part) or default_domain
    return Target(host=host, domain=domain, instances=instances)


def _target_from_mapping(
    entry: Mapping[str, object],
    *,
    default_domain: str | None,
    label: str,
) -> Target:
    unknown = set(entry.keys()) - {"host", "domain", "instances"}
    if unknown:
        joined = ", ".join(sorted(str(key) for key in unknown))
        raise TargetListError(f"Unknown keys in {label}: {joined}.")
    host = entry.get("host")
    if not isinstance(host, str) or not host.strip():
        raise TargetListError(f"{label} requires a non-empty 'host'.")
    target = parse_target(host, default_domain=default_domain)
    domain = _clean_domain(entry.get("domain"))
    if domain:
        target = replace(target, domain=domain)
    raw_instances = entry.get("instances")
    if raw_instances is None:
        return target
    if isinstance(raw_instances, str) or not isinstance(raw_instances, Sequence):
        raise TargetListError(f"{label}.instances must be a list of names.")
    names = tuple(str(name).strip() for name in raw_instances if str(name).strip())
    return replace(target, instances=target.instances + names)


def parse_yaml_targets(text: str, *, default_domain: str | None = None) -> list[Target]:
    """Parse a YAML document listing targets."""
    try:
        data = yaml.safe_load(text) or []
    except yaml.YAMLError as exc:
        raise TargetListError(f"Invalid YAML target list: {exc}") from exc
    if isinstance(data, Mapping):
        data = data.get("targets", [])
    if not isinstance(data, list):
        raise TargetListError("YAML target list must be a sequence.")

    targets: list[Target] = []
    for index, entry in enumerate(data):
        label = f"targets[{index}]"
        if isinstance(entry, str):
            targets.append(parse_target(entry, default_domain=default_domain))
        elif isinstance(entry, Mapping):
            targets.append(
                _target_from_mapping(entry, default_domain=default_domain, label=label)
            )
        else:
            raise TargetListError(f"{label} must be a string or mapping.")
    return targets


def parse_text_targets(
    lines: Iterable[str],
    *,
    default_domain: str | None = None,
) -> list[Target]:
    """Parse plain-text target lines, skipping blanks and comments."""
    targets: list[Target] = []
    for line in lines:
        stripped = line.split("#", 1)[0].strip()
        if stripped:
            targets.append(parse_target(stripped, default_domain=default_domain))
    return targets


def load_targets(path: Path, *, default_domain: str | None = None) -> list[Target]:
    """Load targets from a text or YAML file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise TargetListError(f"Cannot read target list {path}: {exc}") from exc
    if path.suffix.lower() in YAML_SUFFIXES:
        return parse_yaml_targets(text, default_domain=default_domain)
    return parse_text_targets(text.splitlines(), default_domain=default_domain)


__all__ = [
    "Target",
    "TargetListError",
    "TargetResolutionError",
    "load_targets",
    "parse_target",
    "parse_text_targets",
    "parse_yaml_targets",
]
