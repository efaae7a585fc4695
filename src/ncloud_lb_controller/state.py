# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""State this controller persists on the Service it manages.

The annotations are the only durable store. Three keys are used, all under
the configured annotation domain:

- `lb-id`: the cloud load balancer instance number.
- `target-groups`: comma-joined target group numbers in port order.
- `target-group-map`: comma-joined `PROTOCOL:port=number` entries, the
  explicit mapping from a Service port to its target group.

Objects written before the mapping existed only carry `target-groups`; they
are decoded positionally against the live port list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Iterable, Mapping

from ncloud_lb_controller.config import Settings
from ncloud_lb_controller.errors import StateError

_PORT_KEY_PATTERN = re.compile(r"^([A-Z]+:\d{1,5}|#\d+)$")
_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")


def port_key(port) -> str:
    """Stable identifier of a Service port: protocol and port number."""
    protocol = (getattr(port, "protocol", None) or "TCP").upper()
    return f"{protocol}:{int(port.port)}"


def orphan_key(index: int) -> str:
    return f"#{index}"


@dataclass(frozen=True)
class ServiceState:
    lb_id: str | None = None
    # (port key, target group id) pairs in creation order
    target_groups: tuple[tuple[str, str], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.lb_id and not self.target_groups

    @property
    def target_group_ids(self) -> list[str]:
        return [tg_id for _, tg_id in self.target_groups]

    def target_group_for(self, key: str) -> str | None:
        for k, tg_id in self.target_groups:
            if k == key:
                return tg_id
        return None

    def key_for(self, tg_id: str) -> str | None:
        for k, v in self.target_groups:
            if v == tg_id:
                return k
        return None

    def with_lb_id(self, lb_id: str | None) -> "ServiceState":
        return replace(self, lb_id=lb_id or None)

    def with_target_group(self, key: str, tg_id: str) -> "ServiceState":
        """Record `tg_id` for `key`.

        An id already recorded for `key` is left alone. An id recorded for another
        key raises `StateError`: a target group serves exactly one port.
        """
        owner = self.key_for(tg_id)
        if owner == key:
            return self
        if owner is not None:
            raise StateError(f"target group {tg_id} is already recorded for {owner}, not {key}")
        entries = [(k, v) for k, v in self.target_groups if k != key]
        entries.append((key, tg_id))
        return replace(self, target_groups=tuple(entries))

    def without_target_groups(self, tg_ids: Iterable[str]) -> "ServiceState":
        drop = set(tg_ids)
        return replace(
            self, target_groups=tuple((k, v) for k, v in self.target_groups if v not in drop)
        )


def _split(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def decode(annotations: Mapping[str, str] | None, ports, settings: Settings) -> ServiceState:
    """Read the persisted state from a Service's annotations.

    `ports` is the live port list, used only for objects that carry the
    positional `target-groups` list without a mapping.
    """
    annotations = annotations or {}
    lb_id = (annotations.get(settings.lb_id_annotation) or "").strip() or None
    legacy = _split(annotations.get(settings.target_groups_annotation))
    raw_map = annotations.get(settings.target_group_map_annotation)

    if lb_id is not None and not _ID_PATTERN.match(lb_id):
        raise StateError(f"invalid load balancer id {lb_id!r}")

    for tg_id in legacy:
        if not _ID_PATTERN.match(tg_id):
            raise StateError(f"invalid target group id {tg_id!r}")

    if raw_map is None:
        keys = [port_key(p) for p in (ports or [])]
        entries = []
        for index, tg_id in enumerate(legacy):
            key = keys[index] if index < len(keys) else orphan_key(index)
            entries.append((key, tg_id))
        return ServiceState(lb_id=lb_id, target_groups=tuple(entries))

    entries = []
    seen_keys = set()
    seen_ids = set()
    for part in _split(raw_map):
        key, sep, tg_id = part.partition("=")
        key, tg_id = key.strip(), tg_id.strip()
        if not sep or not _PORT_KEY_PATTERN.match(key) or not _ID_PATTERN.match(tg_id):
            raise StateError(f"malformed target group mapping entry {part!r}")
        if key in seen_keys:
            raise StateError(f"duplicate target group mapping for port {key}")
        if tg_id in seen_ids:
            raise StateError(f"target group {tg_id} is mapped to more than one port")
        seen_keys.add(key)
        seen_ids.add(tg_id)
        entries.append((key, tg_id))

    if legacy and legacy != [tg_id for _, tg_id in entries]:
        raise StateError(
            "target group list and target group mapping disagree: "
            f"{','.join(legacy)} vs {raw_map}"
        )
    return ServiceState(lb_id=lb_id, target_groups=tuple(entries))


def encode(state: ServiceState, settings: Settings) -> dict[str, str | None]:
    """Annotation values for `state`; None marks a key to remove."""
    ids = state.target_group_ids
    return {
        settings.lb_id_annotation: state.lb_id or None,
        settings.target_groups_annotation: ",".join(ids) or None,
        settings.target_group_map_annotation: ",".join(f"{k}={v}" for k, v in state.target_groups)
        or None,
    }


def apply_annotations(current: dict[str, str] | None, changes: Mapping[str, str | None]) -> tuple[dict[str, str], bool]:
    """Return the annotations with `changes` applied and whether anything changed."""
    result = dict(current or {})
    changed = False
    for key, value in changes.items():
        if value is None:
            if key in result:
                del result[key]
                changed = True
        elif result.get(key) != value:
            result[key] = value
            changed = True
    return result, changed
