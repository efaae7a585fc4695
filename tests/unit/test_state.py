"""Unit tests for the annotation state codec."""

import pytest
from lightkube.models.core_v1 import ServicePort

from ncloud_lb_controller.errors import StateError
from ncloud_lb_controller.state import (
    ServiceState,
    apply_annotations,
    decode,
    encode,
    port_key,
)

LB = "naver.k-paas.org/lb-id"
TGS = "naver.k-paas.org/target-groups"
MAP = "naver.k-paas.org/target-group-map"

PORTS = [ServicePort(port=80, protocol="TCP"), ServicePort(port=443)]


def test_port_key_defaults_to_tcp():
    assert port_key(ServicePort(port=53, protocol="udp")) == "UDP:53"
    assert port_key(ServicePort(port=443)) == "TCP:443"


def test_decode_empty(settings):
    state = decode(None, PORTS, settings)
    assert state.is_empty
    assert state.target_group_ids == []


def test_decode_positional_list_without_mapping(settings):
    state = decode({LB: "lb-1", TGS: "tg-1, tg-2,tg-3"}, PORTS, settings)
    assert state.lb_id == "lb-1"
    assert state.target_groups == (("TCP:80", "tg-1"), ("TCP:443", "tg-2"), ("#2", "tg-3"))
    assert state.target_group_for("TCP:443") == "tg-2"


def test_decode_mapping_is_authoritative(settings):
    state = decode({LB: "lb-1", TGS: "tg-2,tg-1", MAP: "TCP:443=tg-2,TCP:80=tg-1"}, PORTS, settings)
    assert state.target_group_for("TCP:80") == "tg-1"
    assert state.target_group_for("TCP:443") == "tg-2"


@pytest.mark.parametrize(
    "annotations",
    [
        {LB: "lb 1"},
        {TGS: "tg-1,tg/2"},
        {MAP: "TCP:80=tg-1,TCP:8080=tg-1"},
        {MAP: "TCP:80"},
        {MAP: "TCP:80=tg-1,TCP:80=tg-2"},
        {MAP: "tcp80=tg-1"},
        {TGS: "tg-1,tg-2", MAP: "TCP:80=tg-1"},
    ],
)
def test_decode_rejects_malformed_state(settings, annotations):
    with pytest.raises(StateError):
        decode(annotations, PORTS, settings)


def test_encode_marks_empty_keys_for_removal(settings):
    assert encode(ServiceState(), settings) == {LB: None, TGS: None, MAP: None}


def test_encode_then_decode_keeps_mapping(settings):
    state = ServiceState(lb_id="lb-9", target_groups=(("UDP:53", "tg-7"), ("TCP:80", "tg-8")))
    annotations = {k: v for k, v in encode(state, settings).items() if v is not None}
    assert annotations[TGS] == "tg-7,tg-8"
    assert decode(annotations, [], settings) == state


def test_with_target_group_keeps_known_ids():
    state = ServiceState(target_groups=(("TCP:80", "tg-1"),))
    assert state.with_target_group("TCP:80", "tg-1") is state
    assert state.with_target_group("TCP:80", "tg-2").target_groups == (("TCP:80", "tg-2"),)


def test_with_target_group_refuses_id_of_another_port():
    state = ServiceState(target_groups=(("TCP:80", "tg-1"),))
    with pytest.raises(StateError, match="TCP:80"):
        state.with_target_group("TCP:8080", "tg-1")


def test_without_target_groups():
    state = ServiceState(lb_id="lb-1", target_groups=(("TCP:80", "tg-1"), ("TCP:443", "tg-2")))
    assert state.without_target_groups(["tg-1"]).target_groups == (("TCP:443", "tg-2"),)


def test_apply_annotations_reports_changes():
    result, changed = apply_annotations({"a": "1", "b": "2"}, {"a": "1", "b": None, "c": "3"})
    assert result == {"a": "1", "c": "3"}
    assert changed

    _, changed = apply_annotations({"a": "1"}, {"a": "1", "b": None})
    assert not changed
