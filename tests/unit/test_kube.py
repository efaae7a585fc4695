"""Unit tests for the Kubernetes store."""

import pytest
from conftest import api_error, make_service
from lightkube.core.exceptions import ApiError

from ncloud_lb_controller.kube import FIELD_MANAGER, ServiceStore, ingress_of, new_client


def test_get_missing_service_returns_none(store):
    assert store.get_service("default", "web") is None


def test_update_annotations_only_writes_changes(kube, store):
    kube.add_service(make_service(annotations={"keep": "1", "drop": "2"}))

    store.update_annotations("default", "web", {"drop": None, "new": "3"})
    store.update_annotations("default", "web", {"drop": None, "new": "3"})

    assert kube.service().metadata.annotations == {"keep": "1", "new": "3"}
    assert len(kube.replaced) == 1


def test_finalizer_add_and_remove_are_idempotent(kube, store):
    kube.add_service(make_service(finalizers=["other/finalizer"]))

    store.add_finalizer("default", "web", "x/lb-finalizer")
    store.add_finalizer("default", "web", "x/lb-finalizer")
    assert kube.service().metadata.finalizers == ["other/finalizer", "x/lb-finalizer"]

    store.remove_finalizer("default", "web", "x/lb-finalizer")
    store.remove_finalizer("default", "web", "x/lb-finalizer")
    assert kube.service().metadata.finalizers == ["other/finalizer"]
    assert len(kube.replaced) == 2


def test_conflicts_are_surfaced(kube, store):
    kube.add_service(make_service())
    kube.replace_errors = [api_error(409, "conflict")]
    with pytest.raises(ApiError) as excinfo:
        store.add_finalizer("default", "web", "x/lb-finalizer")
    assert excinfo.value.status.code == 409


def test_mutating_a_deleted_service_is_a_no_op(store):
    assert store.update_annotations("default", "web", {"a": "1"}) is None


def test_set_ingress_skips_identical_status(kube, store):
    kube.add_service(make_service())

    assert store.set_ingress("default", "web", [{"hostname": "web.lb.example"}])
    assert not store.set_ingress("default", "web", [{"hostname": "web.lb.example"}])
    assert ingress_of(kube.service()) == [{"hostname": "web.lb.example"}]
    assert len(kube.patched) == 1


def test_read_config_map_missing(store):
    assert store.read_config_map("k-paas-system", "naver-cloud-config") is None


def test_list_nodes(store):
    assert [n.metadata.name for n in store.list_nodes()] == ["master-1", "worker-1", "worker-2"]



def test_new_client_sets_field_manager(monkeypatch):
    created = []
    monkeypatch.setattr("ncloud_lb_controller.kube.Client", lambda **kwargs: created.append(kwargs) or kwargs)

    new_client()
    new_client("apps")

    assert created == [
        {"field_manager": FIELD_MANAGER},
        {"namespace": "apps", "field_manager": FIELD_MANAGER},
    ]
