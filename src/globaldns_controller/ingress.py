"""Ingress projection of a GlobalDNS.

The Ingress never serves traffic. It points at a placeholder backend and only
exists so its load balancer status can carry the GlobalDNS endpoints.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import replace
from typing import Iterable, List, Optional, Set

from .errors import (
    ConflictError,
    LookupFailedError,
    NotFoundError,
    ProjectionFailedError,
    StatusUpdateFailedError,
    StoreConflictError,
    StoreError,
)
from .models import INGRESS_CLASS_ANNOTATION, GlobalDNS, Ingress, IngressRule, LoadBalancerIngress
from .store import ResourceStore

logger = logging.getLogger(__name__)

INGRESS_NAME_PREFIX = "globaldns-ingress"
INGRESS_CLASS = "rancher-external-dns"
PLACEHOLDER_SERVICE_NAME = "http-svc-dummy"
PLACEHOLDER_SERVICE_PORT = 42

# =============================================================================
# Ownership
# =============================================================================


def ingress_name_for(global_dns: GlobalDNS) -> str:
    return f"{INGRESS_NAME_PREFIX}-{global_dns.name}"


def resolve_ingress(store: ResourceStore, global_dns: GlobalDNS) -> Optional[Ingress]:
    """Return the Ingress created for this GlobalDNS, or None.

    An Ingress that merely shares the deterministic name but whose owner
    references point elsewhere is treated as absent and left untouched.
    """
    name = ingress_name_for(global_dns)
    try:
        ingress = store.get_ingress(name)
    except NotFoundError:
        return None
    except StoreError as e:
        raise LookupFailedError(
            f"Error getting ingress {name} for GlobalDNS {global_dns.name}: {e}",
            key=global_dns.key,
        ) from e

    if ingress.is_owned_by(global_dns.uid, global_dns.kind):
        return ingress

    logger.warning(
        f"Ingress '{name}' exists but is not owned by GlobalDNS '{global_dns.name}' "
        f"(uid {global_dns.uid}); ignoring it"
    )
    return None


# =============================================================================
# Projection
# =============================================================================


def build_ingress(global_dns: GlobalDNS) -> Ingress:
    """Desired Ingress for a GlobalDNS that has none yet."""
    return Ingress(
        name=ingress_name_for(global_dns),
        namespace=global_dns.namespace,
        owner_references=[global_dns.owner_reference()],
        annotations={INGRESS_CLASS_ANNOTATION: INGRESS_CLASS},
        rules=[
            IngressRule(
                host=global_dns.fqdn,
                service_name=PLACEHOLDER_SERVICE_NAME,
                service_port=PLACEHOLDER_SERVICE_PORT,
            )
        ],
    )


def create_ingress(store: ResourceStore, global_dns: GlobalDNS) -> Ingress:
    desired = build_ingress(global_dns)
    try:
        created = store.create_ingress(desired)
    except ConflictError as e:
        raise StoreConflictError(
            f"Conflict creating ingress {desired.name}: {e}", key=global_dns.key
        ) from e
    except StoreError as e:
        raise ProjectionFailedError(
            f"Error creating an ingress for the GlobalDNS {global_dns.name}: {e}",
            key=global_dns.key,
        ) from e

    logger.info(f"Created ingress {created.name} for GlobalDNS {global_dns.name}")
    return created


# =============================================================================
# Endpoints
# =============================================================================


def published_endpoints(status: Iterable[LoadBalancerIngress]) -> Set[str]:
    """Flatten published addresses and hostnames into one set of strings."""
    return {entry.value for entry in status if entry.value}


def endpoints_differ(status: List[LoadBalancerIngress], endpoints: List[str]) -> bool:
    endpoints = [ep for ep in endpoints if ep]
    if len(status) != len(endpoints):
        return True
    current = published_endpoints(status)
    return any(ep not in current for ep in endpoints)


def _is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def endpoints_to_status(endpoints: List[str]) -> List[LoadBalancerIngress]:
    """Convert endpoint strings into address or hostname status entries."""
    status: List[LoadBalancerIngress] = []
    for ep in endpoints:
        if not ep:
            continue
        if _is_ip_address(ep):
            status.append(LoadBalancerIngress(ip=ep))
        else:
            status.append(LoadBalancerIngress(hostname=ep))
    return status


def update_ingress_endpoints(
    store: ResourceStore, ingress: Ingress, endpoints: List[str], *, key: str = ""
) -> bool:
    """Rewrite the Ingress status when it differs from ``endpoints``.

    Returns True when a status write happened.
    """
    if not endpoints_differ(ingress.load_balancer, endpoints):
        logger.debug(f"Ingress {ingress.name} endpoints already up to date")
        return False

    updated = replace(ingress, load_balancer=endpoints_to_status(endpoints))
    try:
        store.update_ingress_status(updated)
    except ConflictError as e:
        raise StoreConflictError(
            f"Conflict updating ingress {ingress.name} status: {e}", key=key
        ) from e
    except StoreError as e:
        raise StatusUpdateFailedError(f"Error updating ingress {ingress.name}: {e}", key=key) from e

    logger.info(f"Updated ingress {ingress.name} endpoints: {', '.join(endpoints) or '(none)'}")
    return True
