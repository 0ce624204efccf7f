"""Unit tests for Ingress ownership, projection and endpoint reconciliation."""

import logging

import pytest

from globaldns_controller.errors import (
    ConflictError,
    ProjectionFailedError,
    StatusUpdateFailedError,
    StoreConflictError,
    StoreError,
)
from globaldns_controller.ingress import (
    build_ingress,
    create_ingress,
    endpoints_differ,
    endpoints_to_status,
    ingress_name_for,
    published_endpoints,
    resolve_ingress,
    update_ingress_endpoints,
)
from globaldns_controller.models import Ingress, LoadBalancerIngress, OwnerReference
from mock_store import MockResourceStore, make_global_dns

# =============================================================================
# Endpoint Comparison
# =============================================================================


class TestEndpointsDiffer:
    def test_same_set_in_different_order_is_equal(self) -> None:
        status = [LoadBalancerIngress(hostname="a.example.com"), LoadBalancerIngress(ip="10.0.0.1")]
        assert endpoints_differ(status, ["10.0.0.1", "a.example.com"]) is False

    def test_changed_entry_differs(self) -> None:
        status = [LoadBalancerIngress(hostname="a.example.com"), LoadBalancerIngress(ip="10.0.0.1")]
        assert endpoints_differ(status, ["10.0.0.2", "a.example.com"]) is True

    def test_cardinality_mismatch_differs(self) -> None:
        status = [LoadBalancerIngress(ip="10.0.0.1")]
        assert endpoints_differ(status, ["10.0.0.1", "10.0.0.1"]) is True
        assert endpoints_differ(status, []) is True

    def test_empty_status_and_endpoints_are_equal(self) -> None:
        assert endpoints_differ([], []) is False

    def test_address_and_hostname_compared_as_one_set(self) -> None:
        # A hostname entry still matches when the declared string is the same text.
        status = [LoadBalancerIngress(hostname="10.0.0.1")]
        assert endpoints_differ(status, ["10.0.0.1"]) is False


def test_published_endpoints_flattens_ip_and_hostname() -> None:
    status = [
        LoadBalancerIngress(ip="10.0.0.1"),
        LoadBalancerIngress(hostname="lb.example.com"),
        LoadBalancerIngress(),
    ]
    assert published_endpoints(status) == {"10.0.0.1", "lb.example.com"}


# =============================================================================
# Classification
# =============================================================================


@pytest.mark.parametrize(
    "endpoint, expected",
    [
        ("10.0.0.1", LoadBalancerIngress(ip="10.0.0.1")),
        ("2001:db8::1", LoadBalancerIngress(ip="2001:db8::1")),
        ("svc.example.com", LoadBalancerIngress(hostname="svc.example.com")),
        ("10.0.0.256", LoadBalancerIngress(hostname="10.0.0.256")),
    ],
)
def test_endpoints_to_status_classifies(endpoint: str, expected: LoadBalancerIngress) -> None:
    assert endpoints_to_status([endpoint]) == [expected]


def test_endpoints_to_status_preserves_declared_order() -> None:
    status = endpoints_to_status(["b.example.com", "1.2.3.4"])
    assert [e.value for e in status] == ["b.example.com", "1.2.3.4"]


# =============================================================================
# Projection
# =============================================================================


def test_ingress_name_is_derived_from_global_dns_name() -> None:
    assert ingress_name_for(make_global_dns(name="shop")) == "globaldns-ingress-shop"


def test_build_ingress_links_owner_and_placeholder_backend() -> None:
    gdns = make_global_dns(name="shop", uid="uid-shop", fqdn="shop.example.com")

    ingress = build_ingress(gdns)

    assert ingress.name == "globaldns-ingress-shop"
    assert ingress.namespace == "cattle-global-data"
    assert ingress.owner_references == [
        OwnerReference(
            uid="uid-shop",
            kind="GlobalDNS",
            name="shop",
            api_version="management.cattle.io/v3",
            controller=True,
        )
    ]
    body = ingress.to_dict()
    assert body["metadata"]["annotations"] == {"kubernetes.io/ingress.class": "rancher-external-dns"}
    rule = body["spec"]["rules"][0]
    assert rule["host"] == "shop.example.com"
    assert rule["http"]["paths"][0]["backend"] == {
        "service": {"name": "http-svc-dummy", "port": {"number": 42}}
    }
    assert body["status"]["loadBalancer"]["ingress"] == []


def test_ingress_round_trips_through_api_shape() -> None:
    ingress = build_ingress(make_global_dns())
    ingress.load_balancer = endpoints_to_status(["1.2.3.4", "lb.example.com"])

    assert Ingress.from_dict(ingress.to_dict()) == ingress


def test_create_ingress_wraps_store_errors() -> None:
    store = MockResourceStore()
    store.fail["create_ingress"] = StoreError("boom")

    with pytest.raises(ProjectionFailedError):
        create_ingress(store, make_global_dns())


def test_create_ingress_conflict_is_store_conflict() -> None:
    store = MockResourceStore()
    store.fail["create_ingress"] = ConflictError("boom")

    with pytest.raises(StoreConflictError):
        create_ingress(store, make_global_dns())


# =============================================================================
# Ownership
# =============================================================================


class TestResolveIngress:
    def test_not_found_returns_none(self) -> None:
        assert resolve_ingress(MockResourceStore(), make_global_dns()) is None

    def test_owned_ingress_is_returned(self) -> None:
        store = MockResourceStore()
        gdns = make_global_dns()
        store.ingresses[ingress_name_for(gdns)] = build_ingress(gdns)

        ingress = resolve_ingress(store, gdns)

        assert ingress is not None
        assert ingress.name == "globaldns-ingress-gdns"

    def test_unowned_ingress_is_ignored_and_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        store = MockResourceStore()
        gdns = make_global_dns()
        store.ingresses[ingress_name_for(gdns)] = build_ingress(make_global_dns(uid="uid-other"))

        with caplog.at_level(logging.WARNING):
            assert resolve_ingress(store, gdns) is None

        assert "not owned by GlobalDNS 'gdns'" in caplog.text
        assert store.writes == []


# =============================================================================
# Status Rewrite
# =============================================================================


def test_update_ingress_endpoints_skips_write_when_equal() -> None:
    store = MockResourceStore()
    ingress = Ingress(name="ing", load_balancer=[LoadBalancerIngress(ip="1.2.3.4")])

    assert update_ingress_endpoints(store, ingress, ["1.2.3.4"]) is False
    assert store.writes == []


def test_update_ingress_endpoints_replaces_whole_list() -> None:
    store = MockResourceStore()
    ingress = Ingress(
        name="ing",
        resource_version="3",
        load_balancer=[LoadBalancerIngress(ip="1.2.3.4"), LoadBalancerIngress(hostname="a.example.com")],
    )
    store.ingresses["ing"] = ingress

    assert update_ingress_endpoints(store, ingress, ["1.2.3.4", "b.example.com"]) is True
    assert store.ingresses["ing"].load_balancer == [
        LoadBalancerIngress(ip="1.2.3.4"),
        LoadBalancerIngress(hostname="b.example.com"),
    ]


def test_update_ingress_endpoints_ignores_empty_declared_endpoints() -> None:
    store = MockResourceStore()
    ingress = Ingress(name="ing", resource_version="3")
    store.ingresses["ing"] = ingress

    assert update_ingress_endpoints(store, ingress, ["1.2.3.4", ""]) is True
    written = store.ingresses["ing"]
    assert written.load_balancer == [LoadBalancerIngress(ip="1.2.3.4")]

    assert update_ingress_endpoints(store, written, ["1.2.3.4", ""]) is False
    assert store.writes_of("update_ingress_status") == ["ing"]


def test_update_ingress_endpoints_wraps_store_errors() -> None:
    store = MockResourceStore()
    store.fail["update_ingress_status"] = StoreError("timeout")
    ingress = Ingress(name="ing")

    with pytest.raises(StatusUpdateFailedError) as exc_info:
        update_ingress_endpoints(store, ingress, ["1.2.3.4"], key="gdns")

    assert exc_info.value.retryable is True
    assert exc_info.value.key == "gdns"
    assert ingress.load_balancer == []
