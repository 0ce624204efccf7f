"""Unit tests for helpers and entry points in globaldns_controller.cli.

Tests cover:
- Store creation (create_store)
- Config file modification times (get_config_file_mtime)
- One-shot reconciliation (sync_all)
- Dispatcher handler (make_handler)
- Resync enqueueing (enqueue_all)
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from globaldns_controller.cli import (
    GLOBAL_NAMESPACE,
    create_store,
    enqueue_all,
    get_config_file_mtime,
    make_handler,
    sync_all,
)
from globaldns_controller.controller import GlobalDNSController, SyncState
from globaldns_controller.errors import MissingMetadataError
from globaldns_controller.workqueue import WorkQueue
from mock_store import MockResourceStore, make_global_dns

# =============================================================================
# Store / Config File Tests
# =============================================================================


def test_create_store_loads_credentials_first() -> None:
    with patch("globaldns_controller.cli.load_kube_config") as mock_load:
        store = create_store()

    mock_load.assert_called_once_with()
    assert store.namespace == GLOBAL_NAMESPACE


def test_get_config_file_mtime_missing_file(tmp_path: Path) -> None:
    assert get_config_file_mtime(str(tmp_path / "missing.yaml")) == 0.0


def test_get_config_file_mtime_existing_file(tmp_path: Path) -> None:
    policy = tmp_path / "access-policy.yaml"
    policy.write_text("required_verbs: [create]\n", encoding="utf-8")

    assert get_config_file_mtime(str(policy)) > 0


# =============================================================================
# Entry Point Tests
# =============================================================================


def test_sync_all_reports_failed_keys_and_continues() -> None:
    store = MockResourceStore()
    store.global_dns["a-broken"] = make_global_dns(name="a-broken", uid="uid-a", creator_id=None)
    store.global_dns["b-ok"] = make_global_dns(name="b-ok", uid="uid-b", endpoints=["1.2.3.4"])
    controller = GlobalDNSController(store)

    failed = sync_all(store, controller)

    assert failed == ["a-broken"]
    assert "globaldns-ingress-b-ok" in store.ingresses


def test_handler_fetches_current_object() -> None:
    store = MockResourceStore()
    store.global_dns["gdns"] = make_global_dns(endpoints=["1.2.3.4"])
    handler = make_handler(store, GlobalDNSController(store))

    result = handler("gdns")

    assert result.state == SyncState.DONE
    assert result.ingress_created is True


def test_handler_treats_missing_object_as_terminal() -> None:
    store = MockResourceStore()
    handler = make_handler(store, GlobalDNSController(store))

    assert handler("deleted").state == SyncState.TERMINAL


def test_handler_propagates_sync_errors() -> None:
    store = MockResourceStore()
    store.global_dns["gdns"] = make_global_dns(creator_id=None)
    handler = make_handler(store, GlobalDNSController(store))

    with pytest.raises(MissingMetadataError):
        handler("gdns")


def test_enqueue_all_adds_every_object() -> None:
    store = MockResourceStore()
    store.global_dns["a"] = make_global_dns(name="a")
    store.global_dns["b"] = make_global_dns(name="b")
    queue = WorkQueue()

    assert enqueue_all(store, queue) == 2
    assert len(queue) == 2
