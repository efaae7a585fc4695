# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""The per-Service reconcile loop.

`Reconciler.reconcile` is called with a Service's namespace and name whenever
it may need attention. It is level-triggered: it reads the current object and
the state recorded on it, and never relies on the event that caused the call.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from lightkube.core.exceptions import ApiError

from ncloud_lb_controller import state as state_codec
from ncloud_lb_controller.config import Settings
from ncloud_lb_controller.errors import Cancelled, ControllerError, ReconcileError
from ncloud_lb_controller.provisioner import Provisioner, ProvisioningStatus
from ncloud_lb_controller.teardown import Teardown
from ncloud_lb_controller.waiting import Waiter

logger = logging.getLogger(__name__)

LOAD_BALANCER_TYPE = "LoadBalancer"
STATUS_RETRY_S = 5.0

_IPV4_PATTERN = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")


@dataclass(frozen=True)
class Result:
    """What the work queue should do after a successful reconcile."""

    requeue_after: float | None = None


def ingress_for(address: str) -> dict[str, str]:
    if _IPV4_PATTERN.match(address):
        return {"ip": address}
    return {"hostname": address}


class Reconciler:
    def __init__(self, store, gateway, settings: Settings, waiter: Waiter | None = None):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self.waiter = waiter or Waiter()

    def provisioner(self, waiter: Waiter) -> Provisioner:
        return Provisioner(self.store, self.gateway, self.settings, waiter)

    def teardown(self, waiter: Waiter) -> Teardown:
        return Teardown(self.store, self.gateway, self.settings, waiter)

    def reconcile(self, namespace: str, name: str) -> Result:
        """Reconcile one Service.

        Raises `ReconcileError` carrying the requeue delay when the pass failed.
        """
        ref = f"{namespace}/{name}"
        waiter = self.waiter.with_deadline(self.settings.reconcile_timeout_s)

        service = self._get(namespace, name)
        if service is None:
            logger.debug("Service %s no longer exists", ref)
            return Result()

        finalizer = self.settings.finalizer
        finalizers = service.metadata.finalizers or []
        is_load_balancer = service.spec.type == LOAD_BALANCER_TYPE
        try:
            current = state_codec.decode(service.metadata.annotations, service.spec.ports, self.settings)
        except ControllerError as e:
            raise ReconcileError(f"invalid state on {ref}: {e}", self.settings.requeue_error_s) from e

        if not is_load_balancer and current.is_empty and finalizer not in finalizers:
            logger.debug("ignoring Service %s of type %s", ref, service.spec.type)
            return Result()

        if service.metadata.deletionTimestamp is not None:
            if finalizer in finalizers:
                self._teardown(service, waiter)
                self._call(self.store.remove_finalizer, namespace, name, finalizer)
                logger.info("released Service %s", ref)
            return Result()

        if not is_load_balancer:
            return self._release(service, waiter)

        if finalizer not in finalizers:
            self._call(self.store.add_finalizer, namespace, name, finalizer)
            logger.info("added finalizer to %s", ref)
            return Result(requeue_after=0.0)

        try:
            result = self.provisioner(waiter).provision(service)
        except Cancelled:
            raise
        except (ControllerError, ApiError) as e:
            logger.error("reconciling load balancer for %s failed: %s", ref, e)
            raise ReconcileError(f"reconciling {ref} failed: {e}", self.settings.requeue_pending_s) from e

        if result.status in (ProvisioningStatus.PENDING, ProvisioningStatus.CREATING):
            logger.info(
                "load balancer %s for %s is %s, checking again in %ss",
                result.lb_id, ref, result.status.value, self.settings.requeue_pending_s,
            )
            return Result(requeue_after=self.settings.requeue_pending_s)

        if result.status == ProvisioningStatus.ERROR:
            raise ReconcileError(
                f"load balancer {result.lb_id} for {ref} is in error state", self.settings.requeue_error_s
            )

        if result.address:
            entry = ingress_for(result.address)
            try:
                if self.store.set_ingress(namespace, name, [entry]):
                    logger.info("set ingress of %s to %s", ref, entry)
            except ApiError as e:
                raise ReconcileError(f"updating status of {ref} failed: {e}", STATUS_RETRY_S) from e
        return Result()

    def _get(self, namespace: str, name: str):
        try:
            return self.store.get_service(namespace, name)
        except ApiError as e:
            raise ReconcileError(
                f"reading Service {namespace}/{name} failed: {e}", self.settings.requeue_pending_s
            ) from e

    def _call(self, fn, *args):
        try:
            return fn(*args)
        except ApiError as e:
            raise ReconcileError(f"updating Service {'/'.join(args[:2])} failed: {e}", STATUS_RETRY_S) from e

    def _teardown(self, service, waiter: Waiter) -> None:
        ref = f"{service.metadata.namespace}/{service.metadata.name}"
        try:
            self.teardown(waiter).run(service)
        except Cancelled:
            raise
        except (ControllerError, ApiError) as e:
            logger.error("removing load balancer of %s failed: %s", ref, e)
            raise ReconcileError(f"teardown of {ref} failed: {e}", self.settings.requeue_delete_s) from e

    def _release(self, service, waiter: Waiter) -> Result:
        """Clean up after a Service that stopped being a LoadBalancer."""
        namespace, name = service.metadata.namespace, service.metadata.name
        logger.info("Service %s/%s is no longer a LoadBalancer, removing its load balancer", namespace, name)
        self._teardown(service, waiter)
        cleared = state_codec.encode(state_codec.ServiceState(), self.settings)
        self._call(self.store.update_annotations, namespace, name, cleared)
        self._call(self.store.set_ingress, namespace, name, [])
        self._call(self.store.remove_finalizer, namespace, name, self.settings.finalizer)
        return Result()
