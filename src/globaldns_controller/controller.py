"""GlobalDNS reconcile pass."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .access import AccessSynchronizer
from .errors import MissingMetadataError
from .ingress import create_ingress, resolve_ingress, update_ingress_endpoints
from .models import CREATOR_ID_ANNOTATION, GlobalDNS
from .store import ResourceStore

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "mgmt-global-dns-controller"


class SyncState(Enum):
    """Where a reconcile pass ended."""

    TERMINAL = "terminal"
    NOOP = "no-op"
    DONE = "done"


@dataclass(frozen=True)
class SyncResult:
    state: SyncState
    ingress_created: bool = False
    status_updated: bool = False
    members_updated: bool = False

    @property
    def wrote(self) -> bool:
        return self.ingress_created or self.status_updated or self.members_updated


class GlobalDNSController:
    """Dependencies of the reconcile pass, built once per process.

    ``sync`` keeps no state between calls; everything it needs is re-read from
    the store, so repeated or redundant triggers converge to the same result.
    """

    def __init__(self, store: ResourceStore, access: Optional[AccessSynchronizer] = None):
        self.store = store
        self.access = access or AccessSynchronizer(store)

    def sync(self, key: str, obj: Optional[GlobalDNS]) -> SyncResult:
        if obj is None or obj.deletion_timestamp is not None:
            return SyncResult(SyncState.TERMINAL)

        creator_id = obj.creator_id
        if creator_id is None:
            raise MissingMetadataError(
                f"GlobalDNS {obj.name} has no {CREATOR_ID_ANNOTATION} annotation", key=key
            )

        ingress = resolve_ingress(self.store, obj)
        if ingress is None and not obj.endpoints:
            logger.debug(f"GlobalDNS {obj.name} has no endpoints and no ingress, nothing to do")
            return SyncResult(SyncState.NOOP)

        created = False
        if ingress is None:
            ingress = create_ingress(self.store, obj)
            created = True

        status_updated = update_ingress_endpoints(self.store, ingress, obj.endpoints, key=key)
        members_updated = self.access.synchronize(obj, creator_id)

        return SyncResult(
            SyncState.DONE,
            ingress_created=created,
            status_updated=status_updated,
            members_updated=members_updated,
        )
