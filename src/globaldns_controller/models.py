"""Resource shapes handled by the GlobalDNS controller.

Each dataclass mirrors the subset of a Kubernetes object the controller reads
or writes. ``from_dict``/``to_dict`` convert to and from the API's JSON shape.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

CREATOR_ID_ANNOTATION = "field.cattle.io/creatorId"
INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"

GLOBAL_DNS_API_VERSION = "management.cattle.io/v3"
GLOBAL_DNS_KIND = "GlobalDNS"
GLOBAL_DNS_RESOURCE = "globaldnses"


class AccessType:
    OWNER = "owner"
    MEMBER = "member"
    READ_ONLY = "read-only"

    # Strongest first.
    ORDER = (OWNER, MEMBER, READ_ONLY)

    @classmethod
    def rank(cls, access_type: str) -> int:
        try:
            return cls.ORDER.index(access_type)
        except ValueError:
            return len(cls.ORDER)


# =============================================================================
# Shared Metadata
# =============================================================================


@dataclass(frozen=True)
class OwnerReference:
    """Link from a derived object back to the object it was created for."""

    uid: str
    kind: str
    name: str = ""
    api_version: str = ""
    controller: bool = False

    def matches(self, uid: str, kind: str) -> bool:
        return self.uid == uid and self.kind == kind

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            uid=str(data.get("uid") or ""),
            kind=str(data.get("kind") or ""),
            name=str(data.get("name") or ""),
            api_version=str(data.get("apiVersion") or ""),
            controller=bool(data.get("controller", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
        }


def _owner_references(metadata: Dict[str, Any]) -> List[OwnerReference]:
    refs = metadata.get("ownerReferences") or []
    return [OwnerReference.from_dict(r) for r in refs if isinstance(r, dict)]


# =============================================================================
# GlobalDNS (source)
# =============================================================================


@dataclass(frozen=True)
class Member:
    """One membership grant on a GlobalDNS.

    Members derived from project role bindings carry ``implicit=True`` so a
    later pass can tell them apart from what the user declared.
    """

    user_name: str = ""
    user_principal_name: str = ""
    group_principal_name: str = ""
    access_type: str = AccessType.READ_ONLY
    implicit: bool = False

    @property
    def subject(self) -> str:
        return self.group_principal_name or self.user_principal_name or self.user_name

    @property
    def is_group(self) -> bool:
        return bool(self.group_principal_name)

    def sort_key(self) -> Tuple[str, str]:
        return (self.subject, self.access_type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Member":
        return cls(
            user_name=str(data.get("userName") or ""),
            user_principal_name=str(data.get("userPrincipalName") or ""),
            group_principal_name=str(data.get("groupPrincipalName") or ""),
            access_type=str(data.get("accessType") or AccessType.READ_ONLY),
            implicit=data.get("implicit") is True,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"accessType": self.access_type}
        if self.user_name:
            data["userName"] = self.user_name
        if self.user_principal_name:
            data["userPrincipalName"] = self.user_principal_name
        if self.group_principal_name:
            data["groupPrincipalName"] = self.group_principal_name
        if self.implicit:
            data["implicit"] = True
        return data


@dataclass
class GlobalDNS:
    name: str
    uid: str
    namespace: str = ""
    kind: str = GLOBAL_DNS_KIND
    api_version: str = GLOBAL_DNS_API_VERSION
    resource_version: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)
    fqdn: str = ""
    members: List[Member] = field(default_factory=list)
    project_names: List[str] = field(default_factory=list)
    endpoints: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def creator_id(self) -> Optional[str]:
        return self.annotations.get(CREATOR_ID_ANNOTATION)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(
            uid=self.uid,
            kind=self.kind,
            name=self.name,
            api_version=self.api_version,
            controller=True,
        )

    def with_members(self, members: List[Member]) -> "GlobalDNS":
        """Copy of this object with only ``spec.members`` replaced."""
        raw = copy.deepcopy(self.raw)
        raw.setdefault("spec", {})["members"] = [m.to_dict() for m in members]
        updated = copy.deepcopy(self)
        updated.members = list(members)
        updated.raw = raw
        return updated

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlobalDNS":
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            name=str(metadata.get("name") or ""),
            uid=str(metadata.get("uid") or ""),
            namespace=str(metadata.get("namespace") or ""),
            kind=str(data.get("kind") or GLOBAL_DNS_KIND),
            api_version=str(data.get("apiVersion") or GLOBAL_DNS_API_VERSION),
            resource_version=str(metadata.get("resourceVersion") or ""),
            annotations=dict(metadata.get("annotations") or {}),
            fqdn=str(spec.get("fqdn") or ""),
            members=[Member.from_dict(m) for m in spec.get("members") or [] if isinstance(m, dict)],
            project_names=[str(p) for p in spec.get("projectNames") or []],
            endpoints=[str(e) for e in status.get("endpoints") or []],
            deletion_timestamp=metadata.get("deletionTimestamp"),
            raw=copy.deepcopy(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = copy.deepcopy(self.raw)
        data["apiVersion"] = self.api_version
        data["kind"] = self.kind
        metadata = data.setdefault("metadata", {})
        metadata["name"] = self.name
        metadata["uid"] = self.uid
        if self.namespace:
            metadata["namespace"] = self.namespace
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        spec = data.setdefault("spec", {})
        spec["fqdn"] = self.fqdn
        spec["members"] = [m.to_dict() for m in self.members]
        spec["projectNames"] = list(self.project_names)
        return data


# =============================================================================
# Ingress (derived)
# =============================================================================


@dataclass(frozen=True)
class LoadBalancerIngress:
    """A published endpoint: exactly one of ``ip`` or ``hostname`` is set."""

    ip: str = ""
    hostname: str = ""

    @property
    def value(self) -> str:
        return self.ip or self.hostname

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoadBalancerIngress":
        return cls(ip=str(data.get("ip") or ""), hostname=str(data.get("hostname") or ""))

    def to_dict(self) -> Dict[str, str]:
        if self.ip:
            return {"ip": self.ip}
        return {"hostname": self.hostname}


@dataclass(frozen=True)
class IngressRule:
    host: str
    service_name: str
    service_port: int
    path: str = "/"
    path_type: str = "ImplementationSpecific"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngressRule":
        paths = ((data.get("http") or {}).get("paths")) or [{}]
        first = paths[0] if isinstance(paths[0], dict) else {}
        service = (first.get("backend") or {}).get("service") or {}
        port = (service.get("port") or {}).get("number") or 0
        return cls(
            host=str(data.get("host") or ""),
            service_name=str(service.get("name") or ""),
            service_port=int(port),
            path=str(first.get("path") or "/"),
            path_type=str(first.get("pathType") or "ImplementationSpecific"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "http": {
                "paths": [
                    {
                        "path": self.path,
                        "pathType": self.path_type,
                        "backend": {
                            "service": {
                                "name": self.service_name,
                                "port": {"number": self.service_port},
                            }
                        },
                    }
                ]
            },
        }


@dataclass
class Ingress:
    name: str
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    owner_references: List[OwnerReference] = field(default_factory=list)
    annotations: Dict[str, str] = field(default_factory=dict)
    rules: List[IngressRule] = field(default_factory=list)
    load_balancer: List[LoadBalancerIngress] = field(default_factory=list)

    def is_owned_by(self, uid: str, kind: str) -> bool:
        return any(ref.matches(uid, kind) for ref in self.owner_references)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ingress":
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        lb = ((data.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            uid=str(metadata.get("uid") or ""),
            resource_version=str(metadata.get("resourceVersion") or ""),
            owner_references=_owner_references(metadata),
            annotations=dict(metadata.get("annotations") or {}),
            rules=[IngressRule.from_dict(r) for r in spec.get("rules") or [] if isinstance(r, dict)],
            load_balancer=[LoadBalancerIngress.from_dict(e) for e in lb if isinstance(e, dict)],
        )

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "name": self.name,
            "ownerReferences": [r.to_dict() for r in self.owner_references],
            "annotations": dict(self.annotations),
        }
        if self.namespace:
            metadata["namespace"] = self.namespace
        if self.uid:
            metadata["uid"] = self.uid
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": metadata,
            "spec": {"rules": [r.to_dict() for r in self.rules]},
            "status": {"loadBalancer": {"ingress": [e.to_dict() for e in self.load_balancer]}},
        }


# =============================================================================
# Project Access
# =============================================================================


@dataclass(frozen=True)
class ProjectRoleTemplateBinding:
    name: str
    project_name: str
    role_template_name: str
    user_name: str = ""
    user_principal_name: str = ""
    group_principal_name: str = ""
    deletion_timestamp: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.deletion_timestamp is None

    @property
    def subject(self) -> str:
        return self.group_principal_name or self.user_principal_name or self.user_name

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectRoleTemplateBinding":
        metadata = data.get("metadata") or {}
        return cls(
            name=str(metadata.get("name") or ""),
            project_name=str(data.get("projectName") or ""),
            role_template_name=str(data.get("roleTemplateName") or ""),
            user_name=str(data.get("userName") or ""),
            user_principal_name=str(data.get("userPrincipalName") or ""),
            group_principal_name=str(data.get("groupPrincipalName") or ""),
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )


@dataclass(frozen=True)
class PolicyRule:
    verbs: Tuple[str, ...]
    resources: Tuple[str, ...] = ()
    api_groups: Tuple[str, ...] = ()
    resource_names: Tuple[str, ...] = ()

    def allows(self, verb: str, resource: str, api_group: str) -> bool:
        return (
            _matches(self.verbs, verb)
            and _matches(self.resources, resource)
            and _matches(self.api_groups, api_group)
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyRule":
        return cls(
            verbs=tuple(data.get("verbs") or ()),
            resources=tuple(data.get("resources") or ()),
            api_groups=tuple(data.get("apiGroups") or ()),
            resource_names=tuple(data.get("resourceNames") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "apiGroups": list(self.api_groups),
            "resources": list(self.resources),
            "verbs": list(self.verbs),
        }
        if self.resource_names:
            data["resourceNames"] = list(self.resource_names)
        return data


def _matches(values: Tuple[str, ...], wanted: str) -> bool:
    return "*" in values or wanted in values


@dataclass(frozen=True)
class RoleTemplate:
    name: str
    rules: Tuple[PolicyRule, ...] = ()
    role_template_names: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoleTemplate":
        metadata = data.get("metadata") or {}
        return cls(
            name=str(metadata.get("name") or ""),
            rules=tuple(PolicyRule.from_dict(r) for r in data.get("rules") or []),
            role_template_names=tuple(data.get("roleTemplateNames") or ()),
        )


# =============================================================================
# RBAC
# =============================================================================


@dataclass(frozen=True)
class Subject:
    kind: str
    name: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "name": self.name, "apiGroup": "rbac.authorization.k8s.io"}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subject":
        return cls(kind=str(data.get("kind") or ""), name=str(data.get("name") or ""))


@dataclass
class Role:
    name: str
    namespace: str
    rules: List[PolicyRule] = field(default_factory=list)
    owner_references: List[OwnerReference] = field(default_factory=list)
    resource_version: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Role":
        metadata = data.get("metadata") or {}
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            rules=[PolicyRule.from_dict(r) for r in data.get("rules") or []],
            owner_references=_owner_references(metadata),
            resource_version=str(metadata.get("resourceVersion") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "ownerReferences": [r.to_dict() for r in self.owner_references],
        }
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "Role",
            "metadata": metadata,
            "rules": [r.to_dict() for r in self.rules],
        }


@dataclass
class RoleBinding:
    name: str
    namespace: str
    role_name: str
    subjects: List[Subject] = field(default_factory=list)
    owner_references: List[OwnerReference] = field(default_factory=list)
    resource_version: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoleBinding":
        metadata = data.get("metadata") or {}
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            role_name=str((data.get("roleRef") or {}).get("name") or ""),
            subjects=[Subject.from_dict(s) for s in data.get("subjects") or []],
            owner_references=_owner_references(metadata),
            resource_version=str(metadata.get("resourceVersion") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "ownerReferences": [r.to_dict() for r in self.owner_references],
        }
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "RoleBinding",
            "metadata": metadata,
            "roleRef": {
                "apiGroup": "rbac.authorization.k8s.io",
                "kind": "Role",
                "name": self.role_name,
            },
            "subjects": [s.to_dict() for s in self.subjects],
        }
