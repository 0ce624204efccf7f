"""Membership and RBAC synchronization for GlobalDNS objects."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import yaml

from .errors import (
    AccessProvisioningError,
    AlreadyExistsError,
    AuthorizationDeniedError,
    ConflictError,
    LookupFailedError,
    MembershipUpdateFailedError,
    NotFoundError,
    StoreConflictError,
    StoreError,
)
from .models import (
    GLOBAL_DNS_RESOURCE,
    AccessType,
    GlobalDNS,
    Member,
    PolicyRule,
    ProjectRoleTemplateBinding,
    Role,
    RoleBinding,
    RoleTemplate,
    Subject,
)
from .store import ResourceStore

logger = logging.getLogger(__name__)

MANAGEMENT_API_GROUP = "management.cattle.io"

# =============================================================================
# Access Policy
# =============================================================================


@dataclass(frozen=True)
class AccessPolicy:
    """Tunable rules for authorization checks and membership derivation."""

    required_verbs: Tuple[str, ...] = ("create",)
    required_resource: str = GLOBAL_DNS_RESOURCE
    required_api_group: str = MANAGEMENT_API_GROUP
    role_access_types: Dict[str, str] = field(
        default_factory=lambda: {
            "project-owner": AccessType.OWNER,
            "project-member": AccessType.MEMBER,
        }
    )
    default_access_type: str = AccessType.READ_ONLY
    access_verbs: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: {
            AccessType.OWNER: ("*",),
            AccessType.MEMBER: ("get", "list", "watch", "update", "patch"),
            AccessType.READ_ONLY: ("get", "list", "watch"),
        }
    )

    def access_type_for(self, role_template_name: str) -> str:
        return self.role_access_types.get(role_template_name, self.default_access_type)

    def verbs_for(self, access_type: str) -> Tuple[str, ...]:
        return self.access_verbs.get(access_type, ("get", "list", "watch"))


def _access_policy_from_dict(data: Dict[str, Any]) -> AccessPolicy:
    defaults = AccessPolicy()
    required_verbs = data.get("required_verbs")
    role_access_types = data.get("role_access_types")
    access_verbs = data.get("access_verbs")

    merged_verbs = dict(defaults.access_verbs)
    if isinstance(access_verbs, dict):
        for access_type, verbs in access_verbs.items():
            if isinstance(verbs, list):
                merged_verbs[str(access_type)] = tuple(str(v) for v in verbs)

    return AccessPolicy(
        required_verbs=(
            tuple(str(v) for v in required_verbs)
            if isinstance(required_verbs, list) and required_verbs
            else defaults.required_verbs
        ),
        required_resource=str(data.get("required_resource") or defaults.required_resource),
        required_api_group=str(data.get("required_api_group") or defaults.required_api_group),
        role_access_types=(
            {str(k): str(v) for k, v in role_access_types.items()}
            if isinstance(role_access_types, dict)
            else defaults.role_access_types
        ),
        default_access_type=str(data.get("default_access_type") or defaults.default_access_type),
        access_verbs=merged_verbs,
    )


def load_access_policy(path: str) -> AccessPolicy:
    """Load the access policy YAML, falling back to defaults.

    Example file:
        required_verbs: [create]
        role_access_types:
          project-owner: owner
          project-member: member
        default_access_type: read-only
    """
    policy_path = Path(path) if path else None
    if policy_path is None or not policy_path.is_file():
        return AccessPolicy()

    try:
        with open(policy_path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load access policy from {policy_path}: {e}")
        return AccessPolicy()

    if not data:
        return AccessPolicy()
    if not isinstance(data, dict):
        logger.error(f"Access policy {policy_path} must be a mapping, using defaults")
        return AccessPolicy()

    policy = _access_policy_from_dict(data)
    logger.info(f"Loaded access policy from {policy_path}")
    return policy


# =============================================================================
# Membership Computation
# =============================================================================


def explicit_members(members: Iterable[Member]) -> List[Member]:
    return [m for m in members if not m.implicit]


def member_groups(members: Iterable[Member]) -> List[str]:
    """Group principals named by explicitly declared members."""
    groups: Set[str] = set()
    for m in explicit_members(members):
        if m.group_principal_name:
            groups.add(m.group_principal_name)
    return sorted(groups)


def compute_members(
    members: Iterable[Member],
    bindings: Iterable[ProjectRoleTemplateBinding],
    policy: AccessPolicy,
) -> List[Member]:
    """Explicit members plus one implicit member per active binding subject.

    Subjects already declared explicitly keep their declared access. When a
    subject is bound several times the strongest access type wins.
    """
    explicit = explicit_members(members)
    explicit_subjects = {m.subject for m in explicit}

    implicit: Dict[str, Member] = {}
    for binding in bindings:
        if not binding.active or not binding.subject:
            continue
        if binding.subject in explicit_subjects:
            continue
        access_type = policy.access_type_for(binding.role_template_name)
        existing = implicit.get(binding.subject)
        if existing and AccessType.rank(existing.access_type) <= AccessType.rank(access_type):
            continue
        implicit[binding.subject] = Member(
            user_name=binding.user_name,
            user_principal_name=binding.user_principal_name,
            group_principal_name=binding.group_principal_name,
            access_type=access_type,
            implicit=True,
        )

    return sorted(set(explicit) | set(implicit.values()), key=Member.sort_key)


def members_differ(current: Iterable[Member], updated: Iterable[Member]) -> bool:
    return set(current) != set(updated)


def subjects_by_access_type(members: Iterable[Member], creator_id: str) -> Dict[str, List[Subject]]:
    """Group RBAC subjects by access type. The creator is always an owner."""
    grouped: Dict[str, Set[Subject]] = {access_type: set() for access_type in AccessType.ORDER}
    grouped.setdefault(AccessType.OWNER, set()).add(Subject(kind="User", name=creator_id))
    for m in members:
        if m.group_principal_name:
            subject = Subject(kind="Group", name=m.group_principal_name)
        elif m.user_name or m.user_principal_name:
            subject = Subject(kind="User", name=m.user_name or m.user_principal_name)
        else:
            continue
        grouped.setdefault(m.access_type, set()).add(subject)
    return {
        access_type: sorted(subjects, key=lambda s: (s.kind, s.name))
        for access_type, subjects in grouped.items()
    }


# =============================================================================
# Access Synchronizer
# =============================================================================


class AccessSynchronizer:
    def __init__(self, store: ResourceStore, policy: Optional[AccessPolicy] = None):
        self.store = store
        self.policy = policy or AccessPolicy()

    def synchronize(self, global_dns: GlobalDNS, creator_id: str) -> bool:
        """Check access, provision RBAC and converge ``spec.members``.

        Returns True when the GlobalDNS membership was written.
        """
        policy = self.policy
        bindings = self._bindings_for_projects(global_dns)

        groups = member_groups(global_dns.members)
        self.check_group_access(global_dns, groups, bindings, policy)

        all_bindings = [b for project in global_dns.project_names for b in bindings[project]]
        updated = compute_members(global_dns.members, all_bindings, policy)

        self.ensure_role_and_binding(global_dns, updated, creator_id, policy)

        if not members_differ(global_dns.members, updated):
            return False
        self._update_members(global_dns, updated)
        return True

    # -- authorization --------------------------------------------------------

    def _bindings_for_projects(
        self, global_dns: GlobalDNS
    ) -> Dict[str, List[ProjectRoleTemplateBinding]]:
        bindings: Dict[str, List[ProjectRoleTemplateBinding]] = {}
        for project in global_dns.project_names:
            if project in bindings:
                continue
            try:
                bindings[project] = self.store.list_project_role_bindings(project)
            except StoreError as e:
                raise AccessProvisioningError(
                    f"Error listing role bindings for project {project}: {e}", key=global_dns.key
                ) from e
        return bindings

    def check_group_access(
        self,
        global_dns: GlobalDNS,
        groups: List[str],
        bindings: Dict[str, List[ProjectRoleTemplateBinding]],
        policy: Optional[AccessPolicy] = None,
    ) -> None:
        """Every member group must hold the required access on every project."""
        policy = policy or self.policy
        templates: Dict[str, Optional[RoleTemplate]] = {}
        for project in global_dns.project_names:
            for group in groups:
                candidates = [
                    b
                    for b in bindings.get(project, [])
                    if b.active and b.group_principal_name == group
                ]
                if any(
                    self._grants_required_access(
                        b.role_template_name, templates, policy, global_dns.key
                    )
                    for b in candidates
                ):
                    continue
                raise AuthorizationDeniedError(
                    f"Group {group} lacks {'/'.join(policy.required_verbs)} access to "
                    f"{policy.required_resource} in project {project}",
                    key=global_dns.key,
                    group=group,
                    project=project,
                )

    def _grants_required_access(
        self,
        role_template_name: str,
        cache: Dict[str, Optional[RoleTemplate]],
        policy: AccessPolicy,
        key: str,
    ) -> bool:
        rules = self._resolve_rules(role_template_name, cache, set(), key)
        return all(
            any(
                rule.allows(verb, policy.required_resource, policy.required_api_group)
                for rule in rules
            )
            for verb in policy.required_verbs
        )

    def _resolve_rules(
        self,
        role_template_name: str,
        cache: Dict[str, Optional[RoleTemplate]],
        visiting: Set[str],
        key: str = "",
    ) -> List[PolicyRule]:
        """Rules of a role template including everything it inherits."""
        if role_template_name in visiting:
            return []
        visiting.add(role_template_name)

        if role_template_name not in cache:
            try:
                cache[role_template_name] = self.store.get_role_template(role_template_name)
            except NotFoundError:
                logger.warning(f"Role template '{role_template_name}' not found")
                cache[role_template_name] = None
            except StoreError as e:
                raise LookupFailedError(
                    f"Error getting role template {role_template_name}: {e}", key=key
                ) from e

        template = cache[role_template_name]
        if template is None:
            return []

        rules = list(template.rules)
        for inherited in template.role_template_names:
            rules.extend(self._resolve_rules(inherited, cache, visiting, key))
        return rules

    # -- RBAC provisioning ----------------------------------------------------

    def role_name_for(self, global_dns: GlobalDNS, access_type: str) -> str:
        return f"{GLOBAL_DNS_RESOURCE}-{global_dns.name}-{access_type}"

    def ensure_role_and_binding(
        self,
        global_dns: GlobalDNS,
        members: List[Member],
        creator_id: str,
        policy: Optional[AccessPolicy] = None,
    ) -> None:
        """Ensure a Role and RoleBinding per access type for this GlobalDNS.

        Access types that lost all subjects keep their objects but with an
        empty subject list.
        """
        policy = policy or self.policy
        owner_refs = [global_dns.owner_reference()]
        for access_type, subjects in subjects_by_access_type(members, creator_id).items():
            name = self.role_name_for(global_dns, access_type)
            if not subjects:
                self._clear_role_binding(global_dns, name)
                continue

            role = Role(
                name=name,
                namespace=global_dns.namespace,
                rules=[
                    PolicyRule(
                        verbs=policy.verbs_for(access_type),
                        resources=(GLOBAL_DNS_RESOURCE,),
                        api_groups=(MANAGEMENT_API_GROUP,),
                        resource_names=(global_dns.name,),
                    )
                ],
                owner_references=owner_refs,
            )
            binding = RoleBinding(
                name=name,
                namespace=global_dns.namespace,
                role_name=name,
                subjects=subjects,
                owner_references=owner_refs,
            )
            self._ensure_role(global_dns, role)
            self._ensure_role_binding(global_dns, binding)

    def _ensure_role(self, global_dns: GlobalDNS, desired: Role) -> None:
        try:
            try:
                existing = self.store.get_role(desired.name)
            except NotFoundError:
                try:
                    self.store.create_role(desired)
                    logger.info(f"Created role {desired.name}")
                except AlreadyExistsError:
                    logger.debug(f"Role {desired.name} already exists")
                return

            if existing.rules == desired.rules:
                return
            desired.resource_version = existing.resource_version
            self.store.update_role(desired)
            logger.info(f"Updated role {desired.name}")
        except ConflictError as e:
            raise StoreConflictError(
                f"Conflict writing role {desired.name}: {e}", key=global_dns.key
            ) from e
        except StoreError as e:
            raise AccessProvisioningError(
                f"Error ensuring role {desired.name}: {e}", key=global_dns.key
            ) from e

    def _ensure_role_binding(self, global_dns: GlobalDNS, desired: RoleBinding) -> None:
        try:
            try:
                existing = self.store.get_role_binding(desired.name)
            except NotFoundError:
                try:
                    self.store.create_role_binding(desired)
                    logger.info(f"Created role binding {desired.name}")
                except AlreadyExistsError:
                    logger.debug(f"Role binding {desired.name} already exists")
                return

            if set(existing.subjects) == set(desired.subjects):
                return
            desired.resource_version = existing.resource_version
            self.store.update_role_binding(desired)
            logger.info(f"Updated role binding {desired.name}")
        except ConflictError as e:
            raise StoreConflictError(
                f"Conflict writing role binding {desired.name}: {e}", key=global_dns.key
            ) from e
        except StoreError as e:
            raise AccessProvisioningError(
                f"Error ensuring role binding {desired.name}: {e}", key=global_dns.key
            ) from e

    def _clear_role_binding(self, global_dns: GlobalDNS, name: str) -> None:
        try:
            try:
                existing = self.store.get_role_binding(name)
            except NotFoundError:
                return
            if not existing.subjects:
                return
            existing.subjects = []
            self.store.update_role_binding(existing)
            logger.info(f"Removed all subjects from role binding {name}")
        except ConflictError as e:
            raise StoreConflictError(
                f"Conflict writing role binding {name}: {e}", key=global_dns.key
            ) from e
        except StoreError as e:
            raise AccessProvisioningError(
                f"Error clearing role binding {name}: {e}", key=global_dns.key
            ) from e

    # -- membership -----------------------------------------------------------

    def _update_members(self, global_dns: GlobalDNS, members: List[Member]) -> None:
        try:
            self.store.update_global_dns(global_dns.with_members(members))
        except ConflictError as e:
            raise StoreConflictError(
                f"Conflict updating members of GlobalDNS {global_dns.name}: {e}", key=global_dns.key
            ) from e
        except StoreError as e:
            raise MembershipUpdateFailedError(
                f"Error updating members of GlobalDNS {global_dns.name}: {e}", key=global_dns.key
            ) from e
        logger.info(f"Updated members of GlobalDNS {global_dns.name} ({len(members)} total)")
