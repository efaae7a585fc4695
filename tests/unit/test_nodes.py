"""Unit tests for node to server instance resolution."""

from conftest import make_node

from ncloud_lb_controller.cloud import NetworkInterface, ServerInstance
from ncloud_lb_controller.errors import CloudAPIError
from ncloud_lb_controller.nodes import NodeResolver, is_control_plane, known_instance_id


def test_control_plane_detection():
    assert is_control_plane(make_node("m", labels={"node-role.kubernetes.io/master": ""}))
    assert is_control_plane(make_node("m", taints=["node-role.kubernetes.io/control-plane"]))
    assert not is_control_plane(make_node("w", labels={"kubernetes.io/os": "linux"}))


def test_known_instance_id_waterfall():
    assert known_instance_id(make_node("w", provider_id="ncloud:///KR-2/12345")) == "12345"
    assert known_instance_id(make_node("w", annotations={"naver.cloud/instance-id": "777"})) == "777"
    assert known_instance_id(make_node("98765")) == "98765"
    assert known_instance_id(make_node("worker-1")) is None


def test_resolve_skips_control_plane_and_nodes_without_ip(kube, store, gateway, waiter):
    kube.nodes.append(make_node("worker-3"))
    assert NodeResolver(store, gateway, waiter).resolve() == ["2001", "2002"]
    assert gateway.calls == []


def test_resolve_by_ip_uses_one_interface_listing(kube, store, gateway, waiter):
    kube.nodes = [make_node("worker-1", "10.0.0.11"), make_node("worker-2", "10.0.0.12")]
    gateway.interfaces = [
        NetworkInterface(id="n-1", ip="10.0.0.11", instance_id="2001"),
        NetworkInterface(id="n-2", ip="10.0.0.12", instance_id="2002"),
    ]

    assert NodeResolver(store, gateway, waiter).resolve() == ["2001", "2002"]
    assert gateway.methods() == ["list_network_interfaces"]


def test_resolve_falls_back_to_per_server_scan(kube, store, gateway, waiter):
    kube.nodes = [make_node("worker-1", "10.0.0.11"), make_node("worker-9", "10.0.0.99")]
    gateway.failures["list_network_interfaces"] = [CloudAPIError("unsupported")]
    gateway.servers = [ServerInstance(id="2001", name="w1"), ServerInstance(id="2002", name="w2")]
    gateway.server_interfaces = {
        "2001": [NetworkInterface(id="n-1", ip="10.0.0.11")],
        "2002": [NetworkInterface(id="n-2", ip="10.0.0.12")],
    }

    assert NodeResolver(store, gateway, waiter).resolve() == ["2001"]
    # servers and their interfaces are listed once and shared between nodes
    assert gateway.methods().count("list_server_instances") == 1
    assert [c["server_instance_id"] for c in gateway.called("list_network_interfaces")] == [None, "2001", "2002"]


def test_duplicate_instances_are_registered_once(kube, store, gateway, waiter):
    kube.nodes = [
        make_node("a", "10.0.0.11", provider_id="ncloud:///KR-1/2001"),
        make_node("b", "10.0.0.12", provider_id="ncloud:///KR-1/2001"),
    ]
    assert NodeResolver(store, gateway, waiter).resolve() == ["2001"]
