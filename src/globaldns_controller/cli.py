#!/usr/bin/env python3
"""globaldns-controller - GlobalDNS reconciliation

Projects the endpoints declared on GlobalDNS objects into the load balancer
status of a placeholder Ingress, and keeps each GlobalDNS membership list in
sync with the role bindings of the projects it references.

Environment variables:

    Kubernetes API:
        Credentials come from the in-cluster service account, or from the local
        kubeconfig (KUBECONFIG) when running outside a cluster.
        KUBE_REQUEST_TIMEOUT_SECONDS
                               Timeout for each API request (default: 10)
        GLOBAL_NAMESPACE       Namespace holding GlobalDNS objects
                               (default: cattle-global-data)

    Runtime:
        SYNC_MODE              "watch" (default) or "once"
        RESYNC_INTERVAL_SECONDS
                               Seconds between full re-lists in watch mode (default: 60)
        WORKERS                Concurrent reconcile workers (default: 4)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

    Access policy:
        ACCESS_POLICY_PATH     YAML file tuning authorization checks and implicit
                               member access (default: /config/access-policy.yaml)
                               Example:
                                 required_verbs: [create]
                                 role_access_types:
                                   project-owner: owner
                                   project-member: member
                                 default_access_type: read-only
                               The file is re-read when its modification time changes.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from kubernetes import config

from .access import AccessSynchronizer, load_access_policy
from .controller import CONTROLLER_NAME, GlobalDNSController, SyncResult
from .errors import NotFoundError, StoreError, SyncError
from .models import GlobalDNS
from .store import KubernetesResourceStore, ResourceStore, load_kube_config
from .workqueue import Dispatcher, RateLimiter, WorkQueue

# =============================================================================
# Configuration
# =============================================================================

KUBE_REQUEST_TIMEOUT_SECONDS = float(os.getenv("KUBE_REQUEST_TIMEOUT_SECONDS", "10"))
GLOBAL_NAMESPACE = os.getenv("GLOBAL_NAMESPACE", "cattle-global-data")

SYNC_MODE = os.getenv("SYNC_MODE", "watch")
RESYNC_INTERVAL_SECONDS = int(os.getenv("RESYNC_INTERVAL_SECONDS", "60"))
WORKERS = int(os.getenv("WORKERS", "4"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

ACCESS_POLICY_PATH = os.getenv("ACCESS_POLICY_PATH", "/config/access-policy.yaml")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Utility Functions
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except OSError:
        return 0.0


def create_store() -> KubernetesResourceStore:
    load_kube_config()
    return KubernetesResourceStore(
        namespace=GLOBAL_NAMESPACE, timeout_seconds=KUBE_REQUEST_TIMEOUT_SECONDS
    )


# =============================================================================
# Reconcile Entry Points
# =============================================================================


def make_handler(store: ResourceStore, controller: GlobalDNSController):
    """Build the dispatcher callback: fetch the current object, then sync it."""

    def handle(key: str) -> SyncResult:
        try:
            obj: Optional[GlobalDNS] = store.get_global_dns(key)
        except NotFoundError:
            obj = None
        result = controller.sync(key, obj)
        logger.debug(f"Synced {key}: {result}")
        return result

    return handle


def sync_all(store: ResourceStore, controller: GlobalDNSController) -> List[str]:
    """Reconcile every GlobalDNS once, in order. Returns the keys that failed."""
    failed: List[str] = []
    for obj in store.list_global_dns():
        try:
            controller.sync(obj.name, obj)
        except SyncError as e:
            logger.error(f"Error syncing {obj.name}: {e}")
            failed.append(obj.name)
    return failed


def enqueue_all(store: ResourceStore, queue: WorkQueue) -> int:
    objs = store.list_global_dns()
    for obj in objs:
        queue.add(obj.name)
    return len(objs)


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if not GLOBAL_NAMESPACE:
        errors.append("GLOBAL_NAMESPACE is required")
    if SYNC_MODE not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
    if WORKERS < 1:
        errors.append(f"WORKERS must be at least 1, got {WORKERS}")
    if KUBE_REQUEST_TIMEOUT_SECONDS <= 0:
        errors.append(
            f"KUBE_REQUEST_TIMEOUT_SECONDS must be positive, got {KUBE_REQUEST_TIMEOUT_SECONDS}"
        )

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    logger.info(f"{CONTROLLER_NAME}: GlobalDNS -> Ingress ({GLOBAL_NAMESPACE})")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    try:
        store = create_store()
    except config.ConfigException as e:
        logger.error(f"Cannot load Kubernetes credentials: {e}")
        sys.exit(1)
    if not store.test_connection():
        logger.error(f"Cannot connect to {store.name} API at {store.host}. Exiting.")
        sys.exit(1)

    policy_mtime = get_config_file_mtime(ACCESS_POLICY_PATH)
    access = AccessSynchronizer(store, load_access_policy(ACCESS_POLICY_PATH))
    controller = GlobalDNSController(store, access)

    logger.info(f"Sync mode: {SYNC_MODE}")

    try:
        if SYNC_MODE == "once":
            failed = sync_all(store, controller)
            if failed:
                logger.error(f"{len(failed)} GlobalDNS object(s) failed to sync: {', '.join(failed)}")
                sys.exit(1)
            return

        logger.info(f"Resync interval: {RESYNC_INTERVAL_SECONDS}s, workers: {WORKERS}")
        queue = WorkQueue()
        dispatcher = Dispatcher(
            queue, make_handler(store, controller), workers=WORKERS, rate_limiter=RateLimiter()
        )
        dispatcher.start()

        try:
            while True:
                current_mtime = get_config_file_mtime(ACCESS_POLICY_PATH)
                if current_mtime != policy_mtime:
                    logger.info(f"Access policy change detected in {Path(ACCESS_POLICY_PATH).name}")
                    policy_mtime = current_mtime
                    access.policy = load_access_policy(ACCESS_POLICY_PATH)

                try:
                    count = enqueue_all(store, queue)
                    logger.debug(f"Queued {count} GlobalDNS object(s) for resync")
                except StoreError as e:
                    logger.warning(f"Failed to list GlobalDNS objects: {e}")

                time.sleep(max(5, RESYNC_INTERVAL_SECONDS))
        finally:
            dispatcher.stop()

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
