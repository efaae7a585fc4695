# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Create and converge the cloud load balancer behind a Service.

Every step is idempotent. Target groups are recorded on the Service as soon
as they exist, and resources left over from an interrupted pass are found
again by name, so a pass can stop at any point and the next one resumes.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from lightkube.core.exceptions import ApiError

from ncloud_lb_controller import state as state_codec
from ncloud_lb_controller.cloud import FAILED_STATUS_CODES, READY_STATUS_CODES
from ncloud_lb_controller.config import Settings
from ncloud_lb_controller.errors import (
    Cancelled,
    CloudAPIError,
    ControllerError,
    LoadBalancerFailedError,
    NotReadyError,
)
from ncloud_lb_controller.naming import generate_valid_name
from ncloud_lb_controller.nodes import NodeResolver
from ncloud_lb_controller.state import ServiceState, port_key
from ncloud_lb_controller.targets import TargetRegistrar

logger = logging.getLogger(__name__)

LB_NAME_PREFIX = "k8s-lb"
TG_NAME_PREFIX = "tg"
RUNNING_STATUS_NAME = "Running"
READINESS_ERROR_BACKOFF_S = 15
BASE_BACKOFF_S = 10
BACKOFF_STEP_S = 5


class ProvisioningStatus(str, enum.Enum):
    PENDING = "PENDING"
    CREATING = "CREATING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"


@dataclass(frozen=True)
class ProvisionResult:
    status: ProvisioningStatus
    lb_id: str = ""
    address: str = ""


def listener_protocol(port) -> str:
    return "UDP" if (port.protocol or "").upper() == "UDP" else "TCP"


def target_group_suffix(port) -> str:
    """Name suffix identifying a port, e.g. `tcp8080`."""
    return f"{(port.protocol or 'TCP').lower()}{port.port}"


def _ref(service) -> str:
    return f"{service.metadata.namespace}/{service.metadata.name}"


class Provisioner:
    """Drives one Service's load balancer towards its desired state."""

    def __init__(
        self,
        store,
        gateway,
        settings: Settings,
        waiter,
        resolver: NodeResolver | None = None,
        registrar: TargetRegistrar | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self.waiter = waiter
        self.resolver = resolver or NodeResolver(store, gateway, waiter)
        self.registrar = registrar or TargetRegistrar(gateway, waiter, settings.registration_rounds)

    def provision(self, service) -> ProvisionResult:
        ports = list(service.spec.ports or [])
        current = state_codec.decode(service.metadata.annotations, ports, self.settings)
        if current.lb_id:
            return self._update(service, current)
        return self._create(service, current)

    # Creation

    def _create(self, service, current: ServiceState) -> ProvisionResult:
        namespace, name = service.metadata.namespace, service.metadata.name
        logger.info("creating load balancer for %s", _ref(service))

        current = self.ensure_target_groups(service, current)

        lb_id = self.ensure_load_balancer(service)
        current = current.with_lb_id(lb_id)
        self._persist(service, current)

        try:
            self.wait_for_ready(lb_id)
        except LoadBalancerFailedError as e:
            logger.error("load balancer %s for %s failed: %s", lb_id, _ref(service), e)
            return ProvisionResult(ProvisioningStatus.ERROR, lb_id=lb_id)
        except NotReadyError as e:
            logger.info("load balancer %s not ready yet, adding listeners anyway: %s", lb_id, e)

        self.ensure_listeners(lb_id, service, current)
        self._persist(service, current)

        address = self._resolve_address_with_retry(lb_id)
        if address is None:
            fallback = self.fallback_hostname(lb_id)
            logger.warning(
                "no external address for %s/%s yet, using %s and retrying later", namespace, name, fallback
            )
            return ProvisionResult(ProvisioningStatus.PENDING, lb_id=lb_id, address=fallback)

        logger.info("load balancer %s for %s is reachable at %s", lb_id, _ref(service), address)
        return ProvisionResult(ProvisioningStatus.ACTIVE, lb_id=lb_id, address=address)

    def ensure_target_groups(
        self, service, current: ServiceState, register_existing: bool = True, name_by_port: bool = False
    ) -> ServiceState:
        """Make sure every port has a target group and nodes registered in it.

        New target groups are named after the port index, or after the port
        itself with `name_by_port`. A running load balancer uses the latter so a
        replaced port never resolves to the name of the group it replaces.
        """
        for index, port in enumerate(service.spec.ports or []):
            key = port_key(port)
            tg_id = current.target_group_for(key)
            if tg_id is None:
                suffix = target_group_suffix(port) if name_by_port else str(index)
                tg_id = self._create_or_adopt_target_group(service, suffix, port, current)
                current = self._record_target_group(service, current, key, tg_id)
            elif not register_existing:
                continue
            self._register_nodes(tg_id)
        return current

    def _create_or_adopt_target_group(self, service, suffix: str, port, current: ServiceState) -> str:
        namespace, name = service.metadata.namespace, service.metadata.name
        if not port.nodePort:
            raise ControllerError(f"port {port_key(port)} of {_ref(service)} has no node port")

        tg_name = generate_valid_name(TG_NAME_PREFIX, namespace, name, suffix)
        self.waiter.check()
        try:
            group = self.gateway.create_target_group(
                name=tg_name,
                port=port.nodePort,
                health_check_protocol=(port.protocol or "TCP").upper(),
                description=f"Target group for {namespace}/{name} port {port.port}",
            )
            logger.info("created target group %s (%s) for port %s", group.id, tg_name, port.port)
            return group.id
        except CloudAPIError as e:
            # the provider gives no distinct code for an existing name
            logger.info("creating target group %s failed, looking it up by name: %s", tg_name, e)
            create_error = e

        try:
            groups = self.gateway.list_target_groups()
        except CloudAPIError as e:
            logger.warning("listing target groups failed: %s", e)
            groups = []
        key = port_key(port)
        for group in groups:
            if group.name != tg_name:
                continue
            owner = current.key_for(group.id)
            if owner is not None and owner != key:
                raise ControllerError(
                    f"target group {group.id} ({tg_name}) already serves port {owner} of {_ref(service)}, "
                    f"not adopting it for {key}"
                )
            logger.info("adopted existing target group %s (%s)", group.id, tg_name)
            return group.id
        raise create_error

    def _record_target_group(self, service, current: ServiceState, key: str, tg_id: str) -> ServiceState:
        """Persist `tg_id` on the latest Service so target groups survive a restart."""
        current = current.with_target_group(key, tg_id)
        latest = self.store.get_service(service.metadata.namespace, service.metadata.name)
        if latest is None:
            return current
        stored = state_codec.decode(latest.metadata.annotations, latest.spec.ports, self.settings)
        merged = stored.with_target_group(key, tg_id)
        if merged != stored:
            self.store.update_annotations(
                service.metadata.namespace, service.metadata.name, state_codec.encode(merged, self.settings)
            )
        return current

    def _register_nodes(self, tg_id: str) -> None:
        try:
            targets = self.resolver.resolve()
            if not targets:
                logger.warning("no worker node could be resolved for target group %s", tg_id)
                return
            self.registrar.register(tg_id, targets)
        except Cancelled:
            raise
        except (ControllerError, ApiError) as e:
            logger.warning("registering nodes into target group %s failed: %s", tg_id, e)

    def ensure_load_balancer(self, service) -> str:
        namespace, name = service.metadata.namespace, service.metadata.name
        lb_name = generate_valid_name(LB_NAME_PREFIX, namespace, name)
        self.waiter.check()
        try:
            lb = self.gateway.create_load_balancer(
                name=lb_name,
                description=f"Auto-created by ncloud-lb-controller for service {namespace}/{name}",
            )
            logger.info("created load balancer %s (%s)", lb.id, lb_name)
            return lb.id
        except CloudAPIError as e:
            if not e.is_duplicate:
                raise
            logger.info("load balancer %s already exists, looking it up", lb_name)
            create_error = e

        for lb in self.gateway.list_load_balancers():
            if lb.name == lb_name:
                logger.info("adopted existing load balancer %s (%s)", lb.id, lb_name)
                return lb.id
        raise create_error

    def wait_for_ready(self, lb_id: str) -> None:
        """Poll until the load balancer runs; raise `NotReadyError` on timeout."""
        attempts = self.settings.readiness_attempts
        for attempt in range(attempts):
            self.waiter.check()
            try:
                lb = self.gateway.get_load_balancer(lb_id)
            except CloudAPIError as e:
                logger.warning("load balancer %s status check failed (%d/%d): %s", lb_id, attempt + 1, attempts, e)
                self.waiter.sleep(READINESS_ERROR_BACKOFF_S)
                continue

            if lb is None:
                logger.info("load balancer %s not listed yet (%d/%d)", lb_id, attempt + 1, attempts)
            else:
                logger.info(
                    "load balancer %s status %s/%s (%d/%d)",
                    lb_id, lb.status_code, lb.status_name or "unknown", attempt + 1, attempts,
                )
                if lb.status_code in READY_STATUS_CODES and lb.status_name == RUNNING_STATUS_NAME:
                    return
                if lb.status_code in FAILED_STATUS_CODES:
                    raise LoadBalancerFailedError(
                        f"load balancer {lb_id} is in status {lb.status_code} ({lb.status_name})"
                    )

            if attempt < attempts - 1:
                self.waiter.sleep(BASE_BACKOFF_S + attempt * BACKOFF_STEP_S)

        raise NotReadyError(f"load balancer {lb_id} not running after {attempts} checks")

    def ensure_listeners(self, lb_id: str, service, current: ServiceState) -> int:
        """Create the listeners that are missing. Returns how many were created."""
        self.waiter.check()
        try:
            existing = {listener.port for listener in self.gateway.list_listeners(lb_id)}
        except CloudAPIError as e:
            logger.info("listing listeners of %s failed, assuming none: %s", lb_id, e)
            existing = set()

        created = 0
        for port in service.spec.ports or []:
            if port.port in existing:
                continue
            key = port_key(port)
            tg_id = current.target_group_for(key)
            if tg_id is None:
                logger.warning("no target group for port %s of %s, skipping listener", key, _ref(service))
                continue
            protocol = listener_protocol(port)
            try:
                self.gateway.create_listener(
                    load_balancer_id=lb_id, port=port.port, protocol=protocol, target_group_id=tg_id
                )
            except CloudAPIError as e:
                logger.warning("creating %s listener on port %s of %s failed: %s", protocol, port.port, lb_id, e)
                continue
            created += 1
            logger.info("created %s listener on port %s -> target group %s", protocol, port.port, tg_id)
        return created

    def _persist(self, service, current: ServiceState) -> None:
        self.store.update_annotations(
            service.metadata.namespace, service.metadata.name, state_codec.encode(current, self.settings)
        )

    # Address resolution

    def fallback_hostname(self, lb_id: str) -> str:
        return f"lb-{lb_id}.{self.settings.provider_domain_suffix}"

    def resolve_address(self, lb_id: str) -> str:
        """External address of a running load balancer: domain, first IP, or a synthesized name."""
        self.waiter.check()
        lb = self.gateway.get_load_balancer(lb_id)
        if lb is None:
            raise NotReadyError(f"load balancer {lb_id} not found")
        if lb.status_code in FAILED_STATUS_CODES:
            raise LoadBalancerFailedError(f"load balancer {lb_id} is in status {lb.status_code}")
        if not lb.is_ready:
            raise NotReadyError(f"load balancer {lb_id} not ready, status {lb.status_code or 'unknown'}")

        if lb.domain:
            return lb.domain
        for ip in lb.ips:
            if ip:
                return ip
        fallback = self.fallback_hostname(lb_id)
        logger.info("load balancer %s has no domain or IP, using %s", lb_id, fallback)
        return fallback

    def _resolve_address_with_retry(self, lb_id: str) -> str | None:
        attempts = self.settings.address_attempts
        for attempt in range(attempts):
            try:
                return self.resolve_address(lb_id)
            except (CloudAPIError, NotReadyError) as e:
                logger.info("external address of %s unavailable (%d/%d): %s", lb_id, attempt + 1, attempts, e)
            if attempt < attempts - 1:
                self.waiter.sleep(BASE_BACKOFF_S + attempt * BACKOFF_STEP_S)
        return None

    # Update

    def _update(self, service, current: ServiceState) -> ProvisionResult:
        lb_id = current.lb_id
        ports = service.spec.ports or []
        live_keys = {port_key(p) for p in ports}

        for key, tg_id in current.target_groups:
            if key not in live_keys:
                logger.warning(
                    "target group %s of %s belongs to a port (%s) no longer on the Service; kept until deletion",
                    tg_id, _ref(service), key,
                )

        missing = [p for p in ports if current.target_group_for(port_key(p)) is None]
        if missing:
            logger.info(
                "ports %s of %s have no target group yet, converging",
                ", ".join(port_key(p) for p in missing), _ref(service),
            )
            current = self.ensure_target_groups(service, current, register_existing=False, name_by_port=True)
            self._persist(service, current)

        self.ensure_listeners(lb_id, service, current)

        try:
            address = self.resolve_address(lb_id)
        except LoadBalancerFailedError as e:
            logger.error("load balancer %s for %s failed: %s", lb_id, _ref(service), e)
            return ProvisionResult(ProvisioningStatus.ERROR, lb_id=lb_id)
        return ProvisionResult(ProvisioningStatus.ACTIVE, lb_id=lb_id, address=address)
