# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Map cluster nodes to cloud server instances."""

from __future__ import annotations

import logging
import re

from ncloud_lb_controller.errors import CloudAPIError

logger = logging.getLogger(__name__)

CONTROL_PLANE_KEYS = (
    "node-role.kubernetes.io/master",
    "node-role.kubernetes.io/control-plane",
)
INSTANCE_ID_ANNOTATION = "naver.cloud/instance-id"

_NUMERIC = re.compile(r"^\d+$")


def is_control_plane(node) -> bool:
    labels = node.metadata.labels or {}
    if any(key in labels for key in CONTROL_PLANE_KEYS):
        return True
    taints = (node.spec.taints if node.spec else None) or []
    return any(taint.key in CONTROL_PLANE_KEYS for taint in taints)


def internal_ip(node) -> str | None:
    addresses = (node.status.addresses if node.status else None) or []
    for address in addresses:
        if address.type == "InternalIP" and address.address:
            return address.address
    return None


def known_instance_id(node) -> str | None:
    """Instance number the node already advertises, if any.

    Checked in order: the last segment of `spec.providerID`
    (`ncloud:///<zone>/<instance>`), the instance id annotation, and a node
    name that is itself an instance number.
    """
    provider_id = (node.spec.providerID if node.spec else None) or ""
    if provider_id:
        last = provider_id.rstrip("/").rsplit("/", 1)[-1]
        if last:
            return last
    annotations = node.metadata.annotations or {}
    if annotations.get(INSTANCE_ID_ANNOTATION):
        return annotations[INSTANCE_ID_ANNOTATION]
    if _NUMERIC.match(node.metadata.name or ""):
        return node.metadata.name
    return None


class NodeResolver:
    """Resolves worker nodes to the server instances to register as targets.

    Network interface listings are fetched at most once per `resolve` call
    and shared between nodes.
    """

    def __init__(self, store, gateway, waiter):
        self.store = store
        self.gateway = gateway
        self.waiter = waiter

    def resolve(self) -> list[str]:
        """Instance numbers of every resolvable worker node, in node order."""
        nodes = self.store.list_nodes()
        cache: dict[str, object] = {}
        instances: list[str] = []

        for node in nodes:
            name = node.metadata.name
            if is_control_plane(node):
                logger.debug("skipping control plane node %s", name)
                continue
            ip = internal_ip(node)
            if not ip:
                logger.info("skipping node %s: no internal IP", name)
                continue

            instance_id = known_instance_id(node) or self.instance_by_ip(ip, cache)
            if not instance_id:
                logger.warning("skipping node %s: no server instance found for %s", name, ip)
                continue
            if instance_id not in instances:
                instances.append(instance_id)
            logger.debug("node %s (%s) is instance %s", name, ip, instance_id)

        return instances

    def instance_by_ip(self, ip: str, cache: dict | None = None) -> str | None:
        cache = {} if cache is None else cache
        self.waiter.check()

        if "interfaces" not in cache:
            try:
                cache["interfaces"] = self.gateway.list_network_interfaces()
            except CloudAPIError as e:
                logger.info("network interface listing failed, scanning servers: %s", e)
                cache["interfaces"] = []
        for nic in cache["interfaces"]:
            if nic.ip == ip and nic.instance_id:
                return nic.instance_id

        return self._scan_servers(ip, cache)

    def _scan_servers(self, ip: str, cache: dict) -> str | None:
        if "servers" not in cache:
            try:
                cache["servers"] = self.gateway.list_server_instances()
            except CloudAPIError as e:
                logger.warning("server instance listing failed: %s", e)
                return None
        per_server = cache.setdefault("server_interfaces", {})

        for server in cache["servers"]:
            if server.id not in per_server:
                self.waiter.check()
                try:
                    per_server[server.id] = self.gateway.list_network_interfaces(server.id)
                except CloudAPIError as e:
                    logger.info("network interfaces of server %s unavailable: %s", server.id, e)
                    per_server[server.id] = []
            if any(nic.ip == ip for nic in per_server[server.id]):
                logger.info("matched %s to server %s (%s)", ip, server.id, server.name)
                return server.id
        return None
