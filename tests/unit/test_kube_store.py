import json
from unittest import mock

import pytest
from kubernetes.client.rest import ApiException

from vip_allocator.kube import KubernetesStore
from vip_allocator.model import AddressClaim, ObjectMeta, PoolRef
from vip_allocator.store import (
    AlreadyExistsError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    StoreError,
)


def api_error(status, reason=""):
    exc = ApiException(status=status, reason="Error")
    exc.body = json.dumps({"kind": "Status", "reason": reason})
    return exc


def make_store():
    api = mock.Mock()
    return KubernetesStore(api), api


def test_get_target_reads_namespaced_cluster():
    store, api = make_store()
    api.get_namespaced_custom_object.return_value = {
        "metadata": {"name": "t1", "namespace": "default", "uid": "u1"},
        "spec": {"topology": {"class": "cls-x"}},
    }

    target = store.get_target("default", "t1")

    assert target.class_name == "cls-x"
    api.get_namespaced_custom_object.assert_called_once_with(
        group="cluster.x-k8s.io",
        version="v1beta1",
        namespace="default",
        plural="clusters",
        name="t1",
    )


def test_list_pools_is_cluster_scoped_and_unfiltered():
    store, api = make_store()
    api.list_cluster_custom_object.return_value = {
        "items": [{"metadata": {"name": "p1", "labels": {"a": "b"}}}]
    }

    pools = store.list_pools()

    assert [pool.name for pool in pools] == ["p1"]
    api.list_cluster_custom_object.assert_called_once_with(
        group="ipam.cluster.x-k8s.io", version="v1alpha2", plural="globalinclusterippools"
    )


def test_patch_target_sends_merge_patch():
    store, api = make_store()
    api.patch_namespaced_custom_object.return_value = {"metadata": {"name": "t1"}}
    patch = {"metadata": {"resourceVersion": "7"}, "spec": {"controlPlaneEndpoint": {"host": "h"}}}

    store.patch_target("default", "t1", patch)

    kwargs = api.patch_namespaced_custom_object.call_args.kwargs
    assert kwargs["body"] == patch
    assert kwargs["_content_type"] == "application/merge-patch+json"


def test_class_lookup_scopes():
    store, api = make_store()
    api.get_cluster_custom_object.return_value = {"metadata": {"name": "cls-x"}}
    api.get_namespaced_custom_object.return_value = {
        "metadata": {"name": "cls-x", "namespace": "ns"},
        "spec": {"variables": [{"name": "clusterVip"}]},
    }

    assert store.get_resource_class("cls-x").name == "cls-x"
    assert store.get_resource_class("cls-x", "ns").declares("clusterVip")
    assert api.get_cluster_custom_object.call_args.kwargs["plural"] == "clusterclasses"


def test_create_claim_posts_document():
    store, api = make_store()
    claim = AddressClaim(
        meta=ObjectMeta(name="vip-cp-t1", namespace="default"), pool_ref=PoolRef(name="p1")
    )
    api.create_namespaced_custom_object.side_effect = lambda **kw: kw["body"]

    created = store.create_claim(claim)

    body = api.create_namespaced_custom_object.call_args.kwargs["body"]
    assert body["kind"] == "IPAddressClaim"
    assert body["apiVersion"] == "ipam.cluster.x-k8s.io/v1beta1"
    assert body["spec"]["poolRef"] == {
        "apiGroup": "ipam.cluster.x-k8s.io",
        "kind": "GlobalInClusterIPPool",
        "name": "p1",
    }
    assert created.pool_ref.name == "p1"


@pytest.mark.parametrize(
    "status, reason, expected",
    [
        (404, "NotFound", NotFoundError),
        (409, "AlreadyExists", AlreadyExistsError),
        (409, "Conflict", ConflictError),
        (410, "Expired", ExpiredError),
        (500, "InternalError", StoreError),
    ],
)
def test_api_errors_are_translated(status, reason, expected):
    store, api = make_store()
    api.get_namespaced_custom_object.side_effect = api_error(status, reason)

    with pytest.raises(expected) as excinfo:
        store.get_claim("default", "vip-cp-t1")

    assert "vip-cp-t1" in str(excinfo.value)


def test_from_config_uses_in_cluster_credentials():
    with mock.patch("vip_allocator.kube.config") as kube_config, mock.patch(
        "vip_allocator.kube.client"
    ) as kube_client:
        KubernetesStore.from_config(in_cluster=True)

    kube_config.load_incluster_config.assert_called_once_with()
    kube_config.load_kube_config.assert_not_called()
    kube_client.CustomObjectsApi.assert_called_once_with()


def test_list_targets_returns_list_version():
    store, api = make_store()
    api.list_cluster_custom_object.return_value = {
        "metadata": {"resourceVersion": "4711"},
        "items": [{"metadata": {"name": "t1", "namespace": "default"}}],
    }

    listing = store.list_targets()

    assert [t.meta.name for t in listing.items] == ["t1"]
    assert listing.resource_version == "4711"


def test_watch_targets_streams_cluster_events():
    store, api = make_store()
    with mock.patch("vip_allocator.kube.watch.Watch") as watch_cls:
        stream = watch_cls.return_value
        stream.stream.return_value = iter(
            [
                {"type": "ADDED", "object": {"metadata": {"name": "t1", "namespace": "default"}}},
                {"type": "DELETED", "object": {"metadata": {"name": "t2", "namespace": "ns"}}},
            ]
        )

        events = [(kind, t.meta.key) for kind, t in store.watch_targets("42", 300)]

    assert events == [("ADDED", "default/t1"), ("DELETED", "ns/t2")]
    args, kwargs = stream.stream.call_args
    assert args == (api.list_cluster_custom_object,)
    assert kwargs == {
        "group": "cluster.x-k8s.io",
        "version": "v1beta1",
        "plural": "clusters",
        "resource_version": "42",
        "timeout_seconds": 300,
    }
    stream.stop.assert_called_once_with()


def test_watch_error_event_for_expired_version():
    store, _ = make_store()
    with mock.patch("vip_allocator.kube.watch.Watch") as watch_cls:
        watch_cls.return_value.stream.return_value = iter(
            [{"type": "ERROR", "raw_object": {"kind": "Status", "code": 410, "reason": "Expired"}}]
        )

        with pytest.raises(ExpiredError):
            list(store.watch_targets("1", 300))


def test_watch_api_errors_are_translated():
    store, _ = make_store()
    with mock.patch("vip_allocator.kube.watch.Watch") as watch_cls:
        watch_cls.return_value.stream.side_effect = ApiException(status=410, reason="Gone")

        with pytest.raises(ExpiredError):
            list(store.watch_targets("1", 300))
