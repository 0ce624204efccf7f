"""Resource store interface and its Kubernetes API implementation."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .errors import (
    AlreadyExistsError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StoreError,
)
from .models import (
    GLOBAL_DNS_API_VERSION,
    GLOBAL_DNS_RESOURCE,
    GlobalDNS,
    Ingress,
    ProjectRoleTemplateBinding,
    Role,
    RoleBinding,
    RoleTemplate,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Store Interface
# =============================================================================


class ResourceStore(ABC):
    """Primitives the reconcile pass consumes.

    Every method may raise ``NotFoundError``, ``ConflictError``,
    ``AlreadyExistsError``, ``ForbiddenError`` or a plain ``StoreError``.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the store name for logging."""
        pass

    @abstractmethod
    def get_global_dns(self, name: str) -> GlobalDNS:
        pass

    @abstractmethod
    def list_global_dns(self) -> List[GlobalDNS]:
        pass

    @abstractmethod
    def update_global_dns(self, obj: GlobalDNS) -> GlobalDNS:
        pass

    @abstractmethod
    def get_ingress(self, name: str) -> Ingress:
        pass

    @abstractmethod
    def create_ingress(self, ingress: Ingress) -> Ingress:
        pass

    @abstractmethod
    def update_ingress_status(self, ingress: Ingress) -> Ingress:
        pass

    @abstractmethod
    def list_project_role_bindings(self, project_name: str) -> List[ProjectRoleTemplateBinding]:
        pass

    @abstractmethod
    def get_role_template(self, name: str) -> RoleTemplate:
        pass

    @abstractmethod
    def get_role(self, name: str) -> Role:
        pass

    @abstractmethod
    def create_role(self, role: Role) -> Role:
        pass

    @abstractmethod
    def update_role(self, role: Role) -> Role:
        pass

    @abstractmethod
    def get_role_binding(self, name: str) -> RoleBinding:
        pass

    @abstractmethod
    def create_role_binding(self, binding: RoleBinding) -> RoleBinding:
        pass

    @abstractmethod
    def update_role_binding(self, binding: RoleBinding) -> RoleBinding:
        pass


# =============================================================================
# Kubernetes Store
# =============================================================================

MANAGEMENT_GROUP, MANAGEMENT_VERSION = GLOBAL_DNS_API_VERSION.split("/", 1)


def load_kube_config() -> None:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        logger.warning("Failed to load in-cluster config, trying local kubeconfig")
        config.load_kube_config()


class KubernetesResourceStore(ResourceStore):
    """Talks to the Kubernetes API server through the official client.

    Namespaced objects (GlobalDNS, Ingress, Role, RoleBinding) live in one
    global namespace. Writes send the resource version that was read, so the
    API server rejects stale updates with 409.
    """

    def __init__(
        self,
        namespace: str,
        api_client: Optional[client.ApiClient] = None,
        timeout_seconds: float = 10.0,
    ):
        self._namespace = namespace
        self._timeout = timeout_seconds
        self._api_client = api_client or client.ApiClient()
        self._custom = client.CustomObjectsApi(self._api_client)
        self._networking = client.NetworkingV1Api(self._api_client)
        self._rbac = client.RbacAuthorizationV1Api(self._api_client)
        self._version = client.VersionApi(self._api_client)

    @property
    def name(self) -> str:
        return "Kubernetes"

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def host(self) -> str:
        return self._api_client.configuration.host

    def test_connection(self) -> bool:
        try:
            self._version.get_code(_request_timeout=5)
            logger.info(f"{self.name} API connection successful")
            return True
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            logger.error(f"Failed to connect to {self.name} API: {e}")
            return False

    # -- transport ------------------------------------------------------------

    def _call(
        self, action: str, method: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Dict[str, Any]:
        try:
            result = method(*args, _request_timeout=self._timeout, **kwargs)
        except ApiException as e:
            raise self._error_for(e, action) from e
        except urllib3.exceptions.HTTPError as e:
            raise StoreError(f"{action} failed: {e}") from e
        # Typed models become plain API dicts; custom objects already are.
        data = self._api_client.sanitize_for_serialization(result)
        if not isinstance(data, dict):
            raise StoreError(f"{action} returned an unexpected response: {data!r}")
        return data

    @staticmethod
    def _error_for(e: ApiException, action: str) -> StoreError:
        reason = ""
        message = e.body or e.reason or ""
        try:
            payload = json.loads(e.body) if e.body else None
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            reason = str(payload.get("reason") or "")
            message = str(payload.get("message") or message)

        text = f"{action}: {e.status} {message}"
        if e.status == 404:
            return NotFoundError(text)
        if e.status == 403:
            return ForbiddenError(text)
        if e.status == 409:
            if reason == "AlreadyExists":
                return AlreadyExistsError(text)
            return ConflictError(text)
        return StoreError(text)

    @staticmethod
    def _items(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [item for item in data.get("items") or [] if isinstance(item, dict)]

    # -- GlobalDNS ------------------------------------------------------------

    def get_global_dns(self, name: str) -> GlobalDNS:
        data = self._call(
            f"get GlobalDNS {name}",
            self._custom.get_namespaced_custom_object,
            MANAGEMENT_GROUP,
            MANAGEMENT_VERSION,
            self._namespace,
            GLOBAL_DNS_RESOURCE,
            name,
        )
        return GlobalDNS.from_dict(data)

    def list_global_dns(self) -> List[GlobalDNS]:
        data = self._call(
            "list GlobalDNS",
            self._custom.list_namespaced_custom_object,
            MANAGEMENT_GROUP,
            MANAGEMENT_VERSION,
            self._namespace,
            GLOBAL_DNS_RESOURCE,
        )
        return [GlobalDNS.from_dict(item) for item in self._items(data)]

    def update_global_dns(self, obj: GlobalDNS) -> GlobalDNS:
        data = self._call(
            f"update GlobalDNS {obj.name}",
            self._custom.replace_namespaced_custom_object,
            MANAGEMENT_GROUP,
            MANAGEMENT_VERSION,
            self._namespace,
            GLOBAL_DNS_RESOURCE,
            obj.name,
            obj.to_dict(),
        )
        return GlobalDNS.from_dict(data)

    # -- Ingress --------------------------------------------------------------

    def get_ingress(self, name: str) -> Ingress:
        data = self._call(
            f"get ingress {name}", self._networking.read_namespaced_ingress, name, self._namespace
        )
        return Ingress.from_dict(data)

    def create_ingress(self, ingress: Ingress) -> Ingress:
        body = ingress.to_dict()
        body.pop("status", None)
        data = self._call(
            f"create ingress {ingress.name}",
            self._networking.create_namespaced_ingress,
            self._namespace,
            body,
        )
        return Ingress.from_dict(data)

    def update_ingress_status(self, ingress: Ingress) -> Ingress:
        data = self._call(
            f"update ingress status {ingress.name}",
            self._networking.replace_namespaced_ingress_status,
            ingress.name,
            self._namespace,
            ingress.to_dict(),
        )
        return Ingress.from_dict(data)

    # -- Project access -------------------------------------------------------

    def list_project_role_bindings(self, project_name: str) -> List[ProjectRoleTemplateBinding]:
        # Project IDs are "<cluster>:<project>"; bindings live in the project namespace.
        project_namespace = project_name.split(":", 1)[-1]
        data = self._call(
            f"list role bindings of project {project_name}",
            self._custom.list_namespaced_custom_object,
            MANAGEMENT_GROUP,
            MANAGEMENT_VERSION,
            project_namespace,
            "projectroletemplatebindings",
        )
        bindings = [ProjectRoleTemplateBinding.from_dict(item) for item in self._items(data)]
        return [b for b in bindings if b.project_name == project_name]

    def get_role_template(self, name: str) -> RoleTemplate:
        data = self._call(
            f"get role template {name}",
            self._custom.get_cluster_custom_object,
            MANAGEMENT_GROUP,
            MANAGEMENT_VERSION,
            "roletemplates",
            name,
        )
        return RoleTemplate.from_dict(data)

    # -- RBAC -----------------------------------------------------------------

    def get_role(self, name: str) -> Role:
        data = self._call(
            f"get role {name}", self._rbac.read_namespaced_role, name, self._namespace
        )
        return Role.from_dict(data)

    def create_role(self, role: Role) -> Role:
        data = self._call(
            f"create role {role.name}",
            self._rbac.create_namespaced_role,
            self._namespace,
            role.to_dict(),
        )
        return Role.from_dict(data)

    def update_role(self, role: Role) -> Role:
        data = self._call(
            f"update role {role.name}",
            self._rbac.replace_namespaced_role,
            role.name,
            self._namespace,
            role.to_dict(),
        )
        return Role.from_dict(data)

    def get_role_binding(self, name: str) -> RoleBinding:
        data = self._call(
            f"get role binding {name}",
            self._rbac.read_namespaced_role_binding,
            name,
            self._namespace,
        )
        return RoleBinding.from_dict(data)

    def create_role_binding(self, binding: RoleBinding) -> RoleBinding:
        data = self._call(
            f"create role binding {binding.name}",
            self._rbac.create_namespaced_role_binding,
            self._namespace,
            binding.to_dict(),
        )
        return RoleBinding.from_dict(data)

    def update_role_binding(self, binding: RoleBinding) -> RoleBinding:
        data = self._call(
            f"update role binding {binding.name}",
            self._rbac.replace_namespaced_role_binding,
            binding.name,
            self._namespace,
            binding.to_dict(),
        )
        return RoleBinding.from_dict(data)
