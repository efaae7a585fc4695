"""Shared fakes: an in-memory cloud, an in-memory API server and a waiter that never sleeps."""

import copy
import itertools
from dataclasses import replace
from datetime import datetime, timezone

import httpx
import pytest
from lightkube.core.exceptions import ApiError
from lightkube.models.core_v1 import (
    LoadBalancerIngress,
    LoadBalancerStatus,
    NodeAddress,
    NodeSpec,
    NodeStatus,
    ServicePort,
    ServiceSpec,
    ServiceStatus,
    Taint,
)
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.core_v1 import ConfigMap, Node, Secret, Service

from ncloud_lb_controller.cloud import (
    CloudGateway,
    Listener,
    LoadBalancer,
    Target,
    TargetGroup,
)
from ncloud_lb_controller.config import Settings
from ncloud_lb_controller.errors import Cancelled, CloudAPIError
from ncloud_lb_controller.kube import ServiceStore
from ncloud_lb_controller.waiting import Waiter


def api_error(code: int, message: str = "error") -> ApiError:
    request = httpx.Request("GET", "https://kubernetes.invalid")
    response = httpx.Response(
        code,
        json={"kind": "Status", "apiVersion": "v1", "code": code, "message": message},
        request=request,
    )
    return ApiError(request=request, response=response)


def make_service(
    name="web",
    namespace="default",
    *,
    type="LoadBalancer",
    ports=((80, 8080, 30080, "TCP"),),
    annotations=None,
    finalizers=None,
    deleting=False,
):
    return Service(
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=dict(annotations) if annotations else None,
            finalizers=list(finalizers) if finalizers else None,
            deletionTimestamp=datetime.now(timezone.utc) if deleting else None,
            resourceVersion="1",
        ),
        spec=ServiceSpec(
            type=type,
            ports=[
                ServicePort(port=p, targetPort=t, nodePort=n, protocol=proto)
                for p, t, n, proto in ports
            ],
        ),
    )


def make_node(name, ip=None, *, labels=None, taints=None, provider_id=None, annotations=None):
    return Node(
        metadata=ObjectMeta(name=name, labels=labels, annotations=annotations),
        spec=NodeSpec(
            providerID=provider_id,
            taints=[Taint(key=k, effect="NoSchedule") for k in taints] if taints else None,
        ),
        status=NodeStatus(addresses=[NodeAddress(address=ip, type="InternalIP")] if ip else None),
    )


class FakeKubeClient:
    """Just enough of `lightkube.Client` for `ServiceStore`."""

    def __init__(self):
        self.services = {}
        self.nodes = []
        self.secrets = {}
        self.config_maps = {}
        self.replaced = []
        self.patched = []
        self.replace_errors = []

    def add_service(self, service):
        self.services[(service.metadata.namespace, service.metadata.name)] = copy.deepcopy(service)

    def service(self, namespace="default", name="web"):
        return self.services.get((namespace, name))

    def get(self, res, name, *, namespace=None):
        if res is Service:
            found = self.services.get((namespace, name))
        elif res is Secret:
            found = self.secrets.get((namespace, name))
        elif res is ConfigMap:
            found = self.config_maps.get((namespace, name))
        else:
            found = None
        if found is None:
            raise api_error(404, f"{name} not found")
        return copy.deepcopy(found)

    def list(self, res, **kwargs):
        assert res is Node
        return iter(copy.deepcopy(self.nodes))

    def replace(self, obj):
        if self.replace_errors:
            raise self.replace_errors.pop(0)
        key = (obj.metadata.namespace, obj.metadata.name)
        if key not in self.services:
            raise api_error(404)
        obj = copy.deepcopy(obj)
        obj.metadata.resourceVersion = str(int(obj.metadata.resourceVersion or "0") + 1)
        self.services[key] = obj
        self.replaced.append(copy.deepcopy(obj))
        return copy.deepcopy(obj)

    def patch(self, res, name, obj, *, namespace=None, patch_type=None):
        assert res is Service.Status
        stored = self.services[(namespace, name)]
        entries = obj["status"]["loadBalancer"]["ingress"] or []
        stored.status = ServiceStatus(
            loadBalancer=LoadBalancerStatus(ingress=[LoadBalancerIngress(**e) for e in entries])
        )
        self.patched.append((namespace, name, entries))
        return copy.deepcopy(stored)


class FakeGateway(CloudGateway):
    """In-memory cloud. `failures[method]` holds errors to raise, in order; None means succeed."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.load_balancers = {}
        self.target_groups = {}
        self.listeners = {}
        self.targets = {}
        self.servers = []
        self.interfaces = []
        self.server_interfaces = {}
        self.lb_status = ("RUN", "Running")
        self.lb_domain = None
        self.lb_ips = ()
        self.dropped_targets = set()
        self._ids = itertools.count(1)

    def _record(self, method, **kwargs):
        self.calls.append((method, kwargs))
        queue = self.failures.get(method)
        if queue:
            error = queue.pop(0)
            if error is not None:
                raise error

    def called(self, method):
        return [kwargs for name, kwargs in self.calls if name == method]

    def methods(self):
        return [name for name, _ in self.calls]

    def create_target_group(self, *, name, port, health_check_protocol, description):
        self._record("create_target_group", name=name, port=port)
        if any(tg.name == name for tg in self.target_groups.values()):
            raise CloudAPIError(f"target group {name} already exists", code="1200101")
        tg = TargetGroup(id=f"tg-{next(self._ids)}", name=name, port=port, protocol="PROXY_TCP",
                         health_check_protocol=health_check_protocol, health_check_port=port)
        self.target_groups[tg.id] = tg
        return tg

    def list_target_groups(self):
        self._record("list_target_groups")
        return list(self.target_groups.values())

    def get_target_group(self, target_group_id):
        self._record("get_target_group", target_group_id=target_group_id)
        return self.target_groups.get(target_group_id)

    def delete_target_group(self, target_group_id):
        self._record("delete_target_group", target_group_id=target_group_id)
        self.target_groups.pop(target_group_id, None)

    def create_load_balancer(self, *, name, description):
        self._record("create_load_balancer", name=name)
        if any(lb.name == name for lb in self.load_balancers.values()):
            raise CloudAPIError("Duplicate load balancer name", code="1200013")
        lb = LoadBalancer(id=f"lb-{next(self._ids)}", name=name, status_code="INIT")
        self.load_balancers[lb.id] = lb
        return lb

    def list_load_balancers(self):
        self._record("list_load_balancers")
        return list(self.load_balancers.values())

    def get_load_balancer(self, load_balancer_id):
        self._record("get_load_balancer", load_balancer_id=load_balancer_id)
        lb = self.load_balancers.get(load_balancer_id)
        if lb is None:
            return None
        code, name = self.lb_status
        return replace(lb, status_code=code, status_name=name, domain=self.lb_domain, ips=tuple(self.lb_ips))

    def delete_load_balancer(self, load_balancer_id):
        self._record("delete_load_balancer", load_balancer_id=load_balancer_id)
        self.load_balancers.pop(load_balancer_id, None)
        self.listeners.pop(load_balancer_id, None)

    def list_listeners(self, load_balancer_id):
        self._record("list_listeners", load_balancer_id=load_balancer_id)
        return list(self.listeners.get(load_balancer_id, []))

    def create_listener(self, *, load_balancer_id, port, protocol, target_group_id):
        self._record("create_listener", load_balancer_id=load_balancer_id, port=port,
                     protocol=protocol, target_group_id=target_group_id)
        listener = Listener(id=f"ls-{next(self._ids)}", port=port, protocol=protocol,
                            target_group_id=target_group_id)
        self.listeners.setdefault(load_balancer_id, []).append(listener)
        return listener

    def add_targets(self, target_group_id, target_ids):
        self._record("add_targets", target_group_id=target_group_id, target_ids=list(target_ids))
        registered = self.targets.setdefault(target_group_id, [])
        for target_id in target_ids:
            if target_id in self.dropped_targets:
                continue
            if all(t.id != target_id for t in registered):
                registered.append(Target(id=target_id, health="HEALTHY"))

    def list_targets(self, target_group_id):
        self._record("list_targets", target_group_id=target_group_id)
        return list(self.targets.get(target_group_id, []))

    def list_server_instances(self):
        self._record("list_server_instances")
        return list(self.servers)

    def list_network_interfaces(self, server_instance_id=None):
        self._record("list_network_interfaces", server_instance_id=server_instance_id)
        if server_instance_id is None:
            return list(self.interfaces)
        return list(self.server_interfaces.get(server_instance_id, []))


class RecordingWaiter(Waiter):
    """Records requested sleeps instead of sleeping."""

    def __init__(self):
        super().__init__()
        self.sleeps = []
        self.cancel_after = None

    def with_deadline(self, timeout):
        return self

    def check(self):
        if self.cancel_after is not None and len(self.sleeps) >= self.cancel_after:
            raise Cancelled("cancelled by test")

    def sleep(self, seconds):
        self.check()
        self.sleeps.append(seconds)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def kube():
    client = FakeKubeClient()
    client.nodes = [
        make_node("master-1", "10.0.0.1", labels={"node-role.kubernetes.io/control-plane": ""},
                  provider_id="ncloud:///KR-1/1001"),
        make_node("worker-1", "10.0.0.11", provider_id="ncloud:///KR-1/2001"),
        make_node("worker-2", "10.0.0.12", provider_id="ncloud:///KR-1/2002"),
    ]
    return client


@pytest.fixture
def store(kube):
    return ServiceStore(kube)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def waiter():
    return RecordingWaiter()
