# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""NAVER Cloud Platform API access.

`CloudGateway` is the narrow surface the reconciliation engine depends on.
`NcloudGateway` implements it against the VPC `vloadbalancer` and `vserver`
REST APIs, signing each request with the API key pair.
"""

from __future__ import annotations

import abc
import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import requests

from ncloud_lb_controller.errors import CloudAPIError

logger = logging.getLogger(__name__)

LOAD_BALANCER_TYPE = "NETWORK_PROXY"
TARGET_TYPE = "VSVR"
TARGET_GROUP_PROTOCOL = "PROXY_TCP"

READY_STATUS_CODES = frozenset({"RUN", "USED"})
FAILED_STATUS_CODES = frozenset({"ERROR", "TERMINATING"})
HEALTHY_TARGET_CODES = frozenset({"HEALTHY", "UP"})
AUTH_FAILURE_STATUSES = frozenset({401, 403})


@dataclass(frozen=True)
class LoadBalancer:
    id: str
    name: str
    status_code: str = ""
    status_name: str = ""
    domain: str | None = None
    ips: tuple[str, ...] = ()

    @property
    def is_ready(self) -> bool:
        return self.status_code in READY_STATUS_CODES


@dataclass(frozen=True)
class TargetGroup:
    id: str
    name: str
    port: int | None = None
    protocol: str = ""
    health_check_protocol: str = ""
    health_check_port: int | None = None
    target_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Listener:
    id: str
    port: int
    protocol: str = ""
    target_group_id: str | None = None


@dataclass(frozen=True)
class Target:
    id: str
    ip: str = ""
    health: str = ""

    @property
    def is_healthy(self) -> bool:
        return self.health.upper() in HEALTHY_TARGET_CODES


@dataclass(frozen=True)
class ServerInstance:
    id: str
    name: str = ""
    network_interface_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class NetworkInterface:
    id: str
    ip: str
    instance_id: str | None = None


class CloudGateway(abc.ABC):
    """Cloud operations used by the reconciliation engine.

    Every method raises `CloudAPIError` on failure. List operations return an
    empty list, never None, when the provider reports nothing.
    """

    @abc.abstractmethod
    def create_target_group(
        self, *, name: str, port: int, health_check_protocol: str, description: str
    ) -> TargetGroup: ...

    @abc.abstractmethod
    def list_target_groups(self) -> list[TargetGroup]: ...

    @abc.abstractmethod
    def get_target_group(self, target_group_id: str) -> TargetGroup | None: ...

    @abc.abstractmethod
    def delete_target_group(self, target_group_id: str) -> None: ...

    @abc.abstractmethod
    def create_load_balancer(self, *, name: str, description: str) -> LoadBalancer: ...

    @abc.abstractmethod
    def list_load_balancers(self) -> list[LoadBalancer]: ...

    @abc.abstractmethod
    def get_load_balancer(self, load_balancer_id: str) -> LoadBalancer | None: ...

    @abc.abstractmethod
    def delete_load_balancer(self, load_balancer_id: str) -> None: ...

    @abc.abstractmethod
    def list_listeners(self, load_balancer_id: str) -> list[Listener]: ...

    @abc.abstractmethod
    def create_listener(
        self, *, load_balancer_id: str, port: int, protocol: str, target_group_id: str
    ) -> Listener: ...

    @abc.abstractmethod
    def add_targets(self, target_group_id: str, target_ids: list[str]) -> None: ...

    @abc.abstractmethod
    def list_targets(self, target_group_id: str) -> list[Target]: ...

    @abc.abstractmethod
    def list_server_instances(self) -> list[ServerInstance]: ...

    @abc.abstractmethod
    def list_network_interfaces(self, server_instance_id: str | None = None) -> list[NetworkInterface]: ...


def _code(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("code") or "")
    return str(value or "")


def _int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _indexed(name: str, values: list[str]) -> dict[str, str]:
    return {f"{name}.{i}": v for i, v in enumerate(values, start=1)}


def parse_load_balancer(item: dict) -> LoadBalancer:
    return LoadBalancer(
        id=str(item.get("loadBalancerInstanceNo", "")),
        name=item.get("loadBalancerName") or "",
        status_code=_code(item.get("loadBalancerInstanceStatus")),
        status_name=item.get("loadBalancerInstanceStatusName") or "",
        domain=item.get("loadBalancerDomain") or None,
        ips=tuple(ip for ip in item.get("loadBalancerIpList") or [] if ip),
    )


def parse_target_group(item: dict) -> TargetGroup:
    return TargetGroup(
        id=str(item.get("targetGroupNo", "")),
        name=item.get("targetGroupName") or "",
        port=_int(item.get("targetGroupPort")),
        protocol=_code(item.get("targetGroupProtocolType")),
        health_check_protocol=_code(item.get("healthCheckProtocolType")),
        health_check_port=_int(item.get("healthCheckPort")),
        target_ids=tuple(str(t) for t in item.get("targetNoList") or []),
    )


def parse_listener(item: dict) -> Listener:
    return Listener(
        id=str(item.get("loadBalancerListenerNo", "")),
        port=_int(item.get("port")) or 0,
        protocol=_code(item.get("protocolType")),
        target_group_id=item.get("targetGroupNo"),
    )


def parse_target(item: dict) -> Target:
    return Target(
        id=str(item.get("targetNo", "")),
        ip=item.get("targetIp") or "",
        health=_code(item.get("healthCheckStatus")),
    )


def parse_server_instance(item: dict) -> ServerInstance:
    return ServerInstance(
        id=str(item.get("serverInstanceNo", "")),
        name=item.get("serverName") or "",
        network_interface_ids=tuple(str(n) for n in item.get("networkInterfaceNoList") or []),
    )


def parse_network_interface(item: dict) -> NetworkInterface:
    instance = item.get("instanceNo") or item.get("serverInstanceNo")
    return NetworkInterface(
        id=str(item.get("networkInterfaceNo", "")),
        ip=item.get("ip") or "",
        instance_id=str(instance) if instance else None,
    )


class NcloudGateway(CloudGateway):
    """`CloudGateway` backed by the NAVER Cloud VPC REST API.

    Credentials (keys, region, VPC and subnet) are fetched from `supplier` on
    every call so rotated secrets are picked up without a restart.
    """

    def __init__(self, supplier, *, endpoint: str, timeout: float = 30.0, session=None):
        self.supplier = supplier
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def sign(method: str, uri: str, timestamp: str, access_key: str, secret_key: str) -> str:
        message = f"{method} {uri}\n{timestamp}\n{access_key}"
        digest = hmac.new(secret_key.encode(), message.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def _call(self, service: str, action: str, params: dict[str, Any]) -> dict:
        creds = self.supplier.fetch()
        query = {"regionCode": creds.region, **params, "responseFormatType": "json"}
        uri = f"/{service}/v2/{action}?{urlencode({k: v for k, v in query.items() if v is not None})}"
        timestamp = str(int(time.time() * 1000))
        headers = {
            "x-ncp-apigw-timestamp": timestamp,
            "x-ncp-iam-access-key": creds.api_key,
            "x-ncp-apigw-signature-v2": self.sign("GET", uri, timestamp, creds.api_key, creds.api_secret),
        }

        logger.debug("calling %s/%s", service, action)
        try:
            resp = self.session.get(self.endpoint + uri, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise CloudAPIError(f"{action} request failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if resp.status_code in AUTH_FAILURE_STATUSES:
            # the keys may have been rotated; the next call fetches them again
            invalidate = getattr(self.supplier, "invalidate", None)
            if invalidate is not None:
                logger.info(
                    "%s rejected the credentials (HTTP %d), dropping the cached copy", action, resp.status_code
                )
                invalidate()

        if resp.status_code >= 400 or "responseError" in body or "error" in body:
            err = body.get("responseError") or body.get("error") or {}
            raise CloudAPIError(
                f"{action} failed: {err.get('returnMessage') or err.get('message') or resp.text or resp.reason}",
                code=str(err.get("returnCode") or err.get("errorCode") or "") or None,
                status=resp.status_code,
            )

        result = body.get(f"{action}Response")
        if result is None:
            raise CloudAPIError(f"{action} returned an unexpected body", status=resp.status_code)
        return result

    def _vpc(self) -> str:
        return self.supplier.fetch().vpc_no

    # Target groups

    def create_target_group(self, *, name, port, health_check_protocol, description):
        result = self._call(
            "vloadbalancer",
            "createTargetGroup",
            {
                "vpcNo": self._vpc(),
                "targetGroupName": name,
                "targetTypeCode": TARGET_TYPE,
                "targetGroupPort": port,
                "targetGroupProtocolTypeCode": TARGET_GROUP_PROTOCOL,
                "targetGroupDescription": description,
                "healthCheckProtocolTypeCode": health_check_protocol,
                "healthCheckPort": port,
            },
        )
        groups = result.get("targetGroupList") or []
        if not groups:
            raise CloudAPIError("createTargetGroup returned no target group")
        return parse_target_group(groups[0])

    def list_target_groups(self):
        result = self._call("vloadbalancer", "getTargetGroupList", {"vpcNo": self._vpc()})
        return [parse_target_group(i) for i in result.get("targetGroupList") or []]

    def get_target_group(self, target_group_id):
        result = self._call("vloadbalancer", "getTargetGroupDetail", {"targetGroupNo": target_group_id})
        groups = result.get("targetGroupList") or []
        return parse_target_group(groups[0]) if groups else None

    def delete_target_group(self, target_group_id):
        self._call("vloadbalancer", "deleteTargetGroups", _indexed("targetGroupNoList", [target_group_id]))

    # Load balancers

    def create_load_balancer(self, *, name, description):
        creds = self.supplier.fetch()
        result = self._call(
            "vloadbalancer",
            "createLoadBalancerInstance",
            {
                "vpcNo": creds.vpc_no,
                "loadBalancerName": name,
                "loadBalancerDescription": description,
                "loadBalancerTypeCode": LOAD_BALANCER_TYPE,
                **_indexed("subnetNoList", [creds.subnet_no]),
            },
        )
        instances = result.get("loadBalancerInstanceList") or []
        if not instances:
            raise CloudAPIError("createLoadBalancerInstance returned no load balancer")
        return parse_load_balancer(instances[0])

    def list_load_balancers(self):
        result = self._call("vloadbalancer", "getLoadBalancerInstanceList", {"vpcNo": self._vpc()})
        return [parse_load_balancer(i) for i in result.get("loadBalancerInstanceList") or []]

    def get_load_balancer(self, load_balancer_id):
        result = self._call(
            "vloadbalancer", "getLoadBalancerInstanceDetail", {"loadBalancerInstanceNo": load_balancer_id}
        )
        instances = result.get("loadBalancerInstanceList") or []
        return parse_load_balancer(instances[0]) if instances else None

    def delete_load_balancer(self, load_balancer_id):
        self._call(
            "vloadbalancer",
            "deleteLoadBalancerInstances",
            _indexed("loadBalancerInstanceNoList", [load_balancer_id]),
        )

    # Listeners

    def list_listeners(self, load_balancer_id):
        result = self._call(
            "vloadbalancer", "getLoadBalancerListenerList", {"loadBalancerInstanceNo": load_balancer_id}
        )
        return [parse_listener(i) for i in result.get("loadBalancerListenerList") or []]

    def create_listener(self, *, load_balancer_id, port, protocol, target_group_id):
        result = self._call(
            "vloadbalancer",
            "createLoadBalancerListener",
            {
                "loadBalancerInstanceNo": load_balancer_id,
                "protocolTypeCode": protocol,
                "port": port,
                "targetGroupNo": target_group_id,
            },
        )
        listeners = result.get("loadBalancerListenerList") or []
        if listeners:
            return parse_listener(listeners[0])
        return Listener(id="", port=port, protocol=protocol, target_group_id=target_group_id)

    # Targets

    def add_targets(self, target_group_id, target_ids):
        self._call(
            "vloadbalancer",
            "addTarget",
            {"targetGroupNo": target_group_id, **_indexed("targetNoList", list(target_ids))},
        )

    def list_targets(self, target_group_id):
        result = self._call("vloadbalancer", "getTargetList", {"targetGroupNo": target_group_id})
        return [parse_target(i) for i in result.get("targetList") or []]

    # Servers

    def list_server_instances(self):
        result = self._call("vserver", "getServerInstanceList", {"vpcNo": self._vpc()})
        return [parse_server_instance(i) for i in result.get("serverInstanceList") or []]

    def list_network_interfaces(self, server_instance_id=None):
        params = {"instanceNo": server_instance_id} if server_instance_id else {}
        result = self._call("vserver", "getNetworkInterfaceList", params)
        return [parse_network_interface(i) for i in result.get("networkInterfaceList") or []]
