# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Kubernetes access for the controller, on top of lightkube."""

from __future__ import annotations

import base64
import logging
from typing import Callable

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.resources.core_v1 import ConfigMap, Node, Secret, Service
from lightkube.types import PatchType

from ncloud_lb_controller.state import apply_annotations

logger = logging.getLogger(__name__)

FIELD_MANAGER = "ncloud-lb-controller"


def new_client(namespace: str | None = None):
    """Create a lightkube client from in-cluster config or the local kubeconfig."""
    if namespace:
        return Client(namespace=namespace, field_manager=FIELD_MANAGER)
    return Client(field_manager=FIELD_MANAGER)


def _is_not_found(e: ApiError) -> bool:
    return e.status.code == 404


def ingress_of(service) -> list[dict[str, str]]:
    """The load balancer ingress entries of a Service as plain dicts."""
    status = getattr(service, "status", None)
    lb = getattr(status, "loadBalancer", None) if status else None
    entries = []
    for ingress in (getattr(lb, "ingress", None) or []) if lb else []:
        entry = {}
        if getattr(ingress, "ip", None):
            entry["ip"] = ingress.ip
        if getattr(ingress, "hostname", None):
            entry["hostname"] = ingress.hostname
        entries.append(entry)
    return entries


class ServiceStore:
    """Reads and writes the objects the controller works with.

    Writes always start from a freshly fetched object. Conflicts (409) are not
    retried here: the caller requeues and the next pass starts over.
    """

    def __init__(self, client):
        self.client = client

    def get_service(self, namespace: str, name: str):
        """Return the Service or None when it no longer exists."""
        try:
            return self.client.get(Service, name=name, namespace=namespace)
        except ApiError as e:
            if _is_not_found(e):
                return None
            raise

    def list_nodes(self) -> list:
        return list(self.client.list(Node))

    def mutate_service(self, namespace: str, name: str, mutate: Callable[[Service], bool]):
        """Apply `mutate` to the latest Service and replace it if it reports a change.

        Returns the stored object, or None if the Service is gone.
        """
        latest = self.get_service(namespace, name)
        if latest is None:
            return None
        if not mutate(latest):
            return latest
        logger.debug("replacing Service %s/%s", namespace, name)
        return self.client.replace(latest)

    def update_annotations(self, namespace: str, name: str, changes: dict[str, str | None]):
        def _mutate(svc) -> bool:
            annotations, changed = apply_annotations(svc.metadata.annotations, changes)
            if changed:
                svc.metadata.annotations = annotations
            return changed

        return self.mutate_service(namespace, name, _mutate)

    def add_finalizer(self, namespace: str, name: str, finalizer: str):
        def _mutate(svc) -> bool:
            finalizers = list(svc.metadata.finalizers or [])
            if finalizer in finalizers:
                return False
            svc.metadata.finalizers = finalizers + [finalizer]
            return True

        return self.mutate_service(namespace, name, _mutate)

    def remove_finalizer(self, namespace: str, name: str, finalizer: str):
        def _mutate(svc) -> bool:
            finalizers = list(svc.metadata.finalizers or [])
            if finalizer not in finalizers:
                return False
            svc.metadata.finalizers = [f for f in finalizers if f != finalizer]
            return True

        return self.mutate_service(namespace, name, _mutate)

    def set_ingress(self, namespace: str, name: str, entries: list[dict[str, str]]) -> bool:
        """Set `status.loadBalancer.ingress` unless it already holds `entries`.

        Returns whether a write was issued.
        """
        latest = self.get_service(namespace, name)
        if latest is None:
            return False
        if ingress_of(latest) == entries:
            logger.debug("ingress of %s/%s already up to date", namespace, name)
            return False
        self.client.patch(
            Service.Status,
            name,
            {"status": {"loadBalancer": {"ingress": entries or None}}},
            namespace=namespace,
            patch_type=PatchType.MERGE,
        )
        return True

    def read_secret(self, namespace: str, name: str) -> dict[str, str]:
        """Decoded data of a Secret; raises ApiError if it cannot be read."""
        secret = self.client.get(Secret, name=name, namespace=namespace)
        data = {}
        for key, value in (secret.data or {}).items():
            data[key] = base64.b64decode(value).decode()
        for key, value in (getattr(secret, "stringData", None) or {}).items():
            data[key] = value
        return data

    def read_config_map(self, namespace: str, name: str) -> dict[str, str] | None:
        try:
            cm = self.client.get(ConfigMap, name=name, namespace=namespace)
        except ApiError as e:
            if _is_not_found(e):
                return None
            raise
        return dict(cm.data or {})
