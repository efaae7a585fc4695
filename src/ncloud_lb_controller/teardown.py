# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Removal of the cloud resources recorded on a Service."""

from __future__ import annotations

import logging

from ncloud_lb_controller import state as state_codec
from ncloud_lb_controller.config import Settings
from ncloud_lb_controller.errors import CloudAPIError, TeardownError

logger = logging.getLogger(__name__)


class Teardown:
    """Deletes the load balancer, then each of its target groups.

    Listeners go away with the load balancer. Deleted resources are dropped
    from the Service annotations as they go, so a retried teardown only
    touches what is left. A target group that cannot be deleted (typically
    still in use while the load balancer terminates) does not stop the others
    but makes `run` raise, which keeps the finalizer in place.
    """

    def __init__(self, store, gateway, settings: Settings, waiter):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self.waiter = waiter

    def run(self, service) -> None:
        namespace, name = service.metadata.namespace, service.metadata.name
        current = state_codec.decode(service.metadata.annotations, service.spec.ports, self.settings)
        if current.is_empty:
            logger.info("no cloud resources recorded on %s/%s", namespace, name)
            return

        if current.lb_id:
            self._delete_load_balancer(current.lb_id)
            current = current.with_lb_id(None)
            self._persist(service, current)

        deleted, failed = [], []
        for tg_id in current.target_group_ids:
            self.waiter.check()
            try:
                self.gateway.delete_target_group(tg_id)
            except CloudAPIError as e:
                if self._target_group_gone(tg_id):
                    logger.info("target group %s already gone", tg_id)
                    deleted.append(tg_id)
                    continue
                logger.warning("deleting target group %s failed: %s", tg_id, e)
                failed.append(tg_id)
                continue
            logger.info("deleted target group %s", tg_id)
            deleted.append(tg_id)

        if deleted:
            self._persist(service, current.without_target_groups(deleted))
        if failed:
            raise TeardownError(
                f"{len(failed)} target group(s) of {namespace}/{name} could not be deleted: {', '.join(failed)}",
                failed=failed,
            )

    def _delete_load_balancer(self, lb_id: str) -> None:
        self.waiter.check()
        try:
            self.gateway.delete_load_balancer(lb_id)
        except CloudAPIError as e:
            if self._load_balancer_gone(lb_id):
                logger.info("load balancer %s already gone", lb_id)
                return
            raise TeardownError(f"deleting load balancer {lb_id} failed: {e}") from e
        logger.info("deleted load balancer %s", lb_id)

    def _load_balancer_gone(self, lb_id: str) -> bool:
        try:
            return self.gateway.get_load_balancer(lb_id) is None
        except CloudAPIError:
            return False

    def _target_group_gone(self, tg_id: str) -> bool:
        try:
            return self.gateway.get_target_group(tg_id) is None
        except CloudAPIError:
            return False

    def _persist(self, service, current) -> None:
        self.store.update_annotations(
            service.metadata.namespace, service.metadata.name, state_codec.encode(current, self.settings)
        )
