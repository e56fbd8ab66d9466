"""
Pure planners.

``plan_convergence`` and ``plan_teardown`` map a (TargetState, ObservedState)
pair to an ordered ActionPlan without touching the machine. Every action is
idempotent: re-applying it to a machine where it already holds is a no-op.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from relay_reconcile.credentials import digest
from relay_reconcile.errors import OrderingError
from relay_reconcile.state import ObservedState
from relay_reconcile.target import TargetState

TRACKED = "tracked"
COMPREHENSIVE = "comprehensive"
SCOPES = (TRACKED, COMPREHENSIVE)


class ActionKind(Enum):
    # convergence
    INSTALL_PACKAGES = "install-packages"
    DISABLE_DEFAULT_SITE = "disable-default-site"
    INSTALL_BINARY = "install-binary"
    LINK_BINARY = "link-binary"
    CREATE_GROUP = "create-group"
    CREATE_USER = "create-user"
    CREATE_DIR = "create-directory"
    SET_OWNER = "set-owner"
    SET_MODE = "set-permissions"
    INIT_REPO = "init-repository"
    INSTALL_SWARM_KEY = "install-swarm-key"
    SET_REPO_CONFIG = "set-repo-config"
    CLEAR_BOOTSTRAP = "clear-bootstrap"
    WRITE_UNIT = "install-service-unit"
    GENERATE_CERT = "generate-certificate"
    WRITE_CREDENTIAL = "write-credential"
    WRITE_SITE = "write-virtual-host"
    LINK_SITE = "enable-virtual-host"
    OPEN_PORT = "open-firewall-port"

    # always run after a convergence diff
    DAEMON_RELOAD = "daemon-reload"
    ENABLE_SERVICE = "enable-service"
    RESTART_SERVICE = "restart-service"
    CONFIRM_ACTIVE = "confirm-active"
    VALIDATE_PROXY = "validate-proxy"
    RELOAD_PROXY = "reload-proxy"

    # teardown
    STOP_SERVICE = "stop-service"
    DISABLE_SERVICE = "disable-service"
    KILL_PROCESSES = "kill-processes"
    CONFIRM_STOPPED = "confirm-stopped"
    REMOVE_PATH = "remove-path"
    DELETE_USER = "delete-user"
    DELETE_GROUP = "delete-group"
    PURGE_PACKAGES = "purge-packages"
    REVALIDATE_PROXY = "revalidate-proxy"
    CLOSE_PORT = "close-firewall-port"
    DELETE_IPTABLES_RULE = "delete-iptables-rule"
    SCRUB_LINES = "scrub-lines"


# Teardown actions that must not run until the service is confirmed stopped.
AFTER_STOP = {
    ActionKind.REMOVE_PATH,
    ActionKind.DELETE_USER,
    ActionKind.DELETE_GROUP,
    ActionKind.CLOSE_PORT,
    ActionKind.DELETE_IPTABLES_RULE,
}


@dataclass
class Action:
    kind: ActionKind
    subject: str
    params: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.kind.value} {self.subject}"


@dataclass
class ActionPlan:
    mode: str
    actions: List[Action] = field(default_factory=list)
    epilogue: List[Action] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when the machine already matches the target (the epilogue does not count)."""
        return not self.actions

    def add(self, kind: ActionKind, subject: Any, **params: Any) -> None:
        self.actions.append(Action(kind, str(subject), params))

    def kinds(self) -> List[ActionKind]:
        return [a.kind for a in self.actions + self.epilogue]

    def subjects(self, kind: ActionKind) -> List[str]:
        return [a.subject for a in self.actions if a.kind == kind]


def plan_convergence(target: TargetState, observed: ObservedState) -> ActionPlan:
    """
    Diff the observed state against the target.

    Secret material already on disk is never replaced: a differing swarm key
    or a credential that fails verification produces a note, not an action.
    """
    plan = ActionPlan(mode="install")

    if observed.packages_missing:
        plan.add(ActionKind.INSTALL_PACKAGES, ", ".join(observed.packages_missing),
                 packages=list(observed.packages_missing))
    # a fresh nginx package ships the default listener
    if observed.default_site_enabled or target.proxy_service in observed.packages_missing:
        plan.add(ActionKind.DISABLE_DEFAULT_SITE, target.default_site_link)

    if observed.binary_version != target.kubo_version:
        plan.add(ActionKind.INSTALL_BINARY, target.binary_path,
                 version=target.kubo_version, installed=observed.binary_version)
    if observed.binary_link_target != str(target.binary_path):
        plan.add(ActionKind.LINK_BINARY, target.binary_link, target=str(target.binary_path))

    if not observed.group_exists:
        plan.add(ActionKind.CREATE_GROUP, target.group)
    if not observed.user_exists:
        plan.add(ActionKind.CREATE_USER, target.user, group=target.group, home=str(target.repo_dir))

    if not observed.repo_exists:
        plan.add(ActionKind.CREATE_DIR, target.repo_dir, mode=target.repo_mode,
                 owner=target.user, group=target.group)
    else:
        if observed.repo_owner != (target.user, target.group):
            plan.add(ActionKind.SET_OWNER, target.repo_dir, owner=target.user, group=target.group, recursive=True)
        if observed.repo_mode != target.repo_mode:
            plan.add(ActionKind.SET_MODE, target.repo_dir, mode=target.repo_mode)

    if not observed.repo_initialized:
        plan.add(ActionKind.INIT_REPO, target.repo_dir, profile="server")

    _plan_swarm_key(plan, target, observed)

    for key, value in target.repo_settings:
        if not observed.repo_initialized or observed.repo_settings.get(key) != value:
            plan.add(ActionKind.SET_REPO_CONFIG, key, value=value)
    if target.private_network and (not observed.repo_initialized or observed.bootstrap_peers):
        plan.add(ActionKind.CLEAR_BOOTSTRAP, target.repo_dir)

    if observed.unit_content != target.unit_content:
        plan.add(ActionKind.WRITE_UNIT, target.unit_path)

    if not (observed.cert_present and observed.key_present):
        plan.add(ActionKind.GENERATE_CERT, target.cert_path, key=str(target.key_path))
    else:
        if observed.cert_mode != target.cert_mode:
            plan.add(ActionKind.SET_MODE, target.cert_path, mode=target.cert_mode)
        if observed.key_mode != target.key_mode:
            plan.add(ActionKind.SET_MODE, target.key_path, mode=target.key_mode)

    _plan_credential(plan, target, observed)

    if observed.site_content != target.site_content:
        plan.add(ActionKind.WRITE_SITE, target.site_path)
    if observed.site_link_target != str(target.site_path):
        plan.add(ActionKind.LINK_SITE, target.site_link, target=str(target.site_path))

    if observed.firewall_available:
        for rule in target.firewall_rules:
            if rule not in observed.firewall_rules:
                plan.add(ActionKind.OPEN_PORT, rule)
    else:
        plan.notes.append("ufw not found; firewall rules left unchanged")

    plan.epilogue = [
        Action(ActionKind.DAEMON_RELOAD, "systemd"),
        Action(ActionKind.ENABLE_SERVICE, target.service_name),
        Action(ActionKind.RESTART_SERVICE, target.service_name),
        Action(ActionKind.CONFIRM_ACTIVE, target.service_name),
        Action(ActionKind.VALIDATE_PROXY, target.proxy_service),
        Action(ActionKind.RELOAD_PROXY, target.proxy_service),
    ]
    return plan


def _plan_swarm_key(plan: ActionPlan, target: TargetState, observed: ObservedState) -> None:
    if observed.swarm_key_present:
        if target.swarm_key_material is not None and digest(target.swarm_key_material) != observed.swarm_key_digest:
            plan.notes.append(
                f"Swarm key at {target.swarm_key_path} differs from {target.swarm_key_source}; "
                "keeping the installed key (remove the node first to rotate it)"
            )
        if observed.swarm_key_mode != target.swarm_key_mode:
            plan.add(ActionKind.SET_MODE, target.swarm_key_path, mode=target.swarm_key_mode)
    elif target.swarm_key_material is not None:
        plan.add(ActionKind.INSTALL_SWARM_KEY, target.swarm_key_path, source=str(target.swarm_key_source))
    elif target.generate_swarm_key:
        plan.add(ActionKind.INSTALL_SWARM_KEY, target.swarm_key_path, source="generated")


def _plan_credential(plan: ActionPlan, target: TargetState, observed: ObservedState) -> None:
    users = observed.credential_users
    if not users:
        plan.add(ActionKind.WRITE_CREDENTIAL, target.htpasswd_path, user=target.basic_user,
                 generated=target.password is None)
        return
    if target.basic_user not in users:
        plan.notes.append(
            f"Credential store {target.htpasswd_path} holds '{', '.join(users)}', not '{target.basic_user}'; "
            "keeping it (remove the node first to rotate it)"
        )
    elif observed.credential_verified is False:
        plan.notes.append(
            f"Existing credential for '{target.basic_user}' does not match --password; "
            "keeping it (remove the node first to rotate it)"
        )
    if observed.credential_mode != target.htpasswd_mode:
        plan.add(ActionKind.SET_MODE, target.htpasswd_path, mode=target.htpasswd_mode)
    if observed.proxy_group_exists and observed.credential_owner != ("root", target.htpasswd_group):
        plan.add(ActionKind.SET_OWNER, target.htpasswd_path, owner="root", group=target.htpasswd_group)


def plan_teardown(target: TargetState, observed: ObservedState, scope: str = TRACKED, purge: bool = False) -> ActionPlan:
    """
    Build the inverse plan.

    The service is stopped and confirmed stopped before anything it holds is
    deleted; firewall rules close only after that. The comprehensive scope
    appends the sweep matches gathered in ``observed``.
    """
    plan = ActionPlan(mode="remove")

    if observed.service_active:
        plan.add(ActionKind.STOP_SERVICE, target.service_name)
    if observed.service_enabled:
        plan.add(ActionKind.DISABLE_SERVICE, target.service_name)
    if observed.stray_processes or observed.service_active:
        plan.add(ActionKind.KILL_PROCESSES, "ipfs")
    plan.add(ActionKind.CONFIRM_STOPPED, target.service_name)

    present = set(observed.present_paths)
    planned = set()

    def remove(path: Any, category: str) -> None:
        key = str(path)
        if key in present and key not in planned:
            planned.add(key)
            plan.add(ActionKind.REMOVE_PATH, key, category=category)

    remove(target.unit_path, "unit")
    if str(target.unit_path) in planned:
        plan.add(ActionKind.DAEMON_RELOAD, "systemd")
    remove(target.repo_dir, "repository")

    if observed.user_exists:
        plan.add(ActionKind.DELETE_USER, target.user)
    if observed.group_exists:
        plan.add(ActionKind.DELETE_GROUP, target.group)

    remove(target.binary_path, "binary")
    remove(target.binary_link, "binary")
    remove(target.site_link, "proxy")
    remove(target.site_path, "proxy")
    remove(target.cert_path, "tls")
    remove(target.key_path, "tls")
    remove(target.htpasswd_path, "credential")
    for path in observed.ledger.paths:
        remove(path, "ledger")

    if purge:
        installed = [p for p in target.purge_packages if p in observed.packages_installed]
        if installed:
            plan.add(ActionKind.PURGE_PACKAGES, ", ".join(installed), packages=installed)
    elif observed.proxy_installed:
        plan.add(ActionKind.REVALIDATE_PROXY, target.proxy_service)

    rules = list(dict.fromkeys(list(target.firewall_rules) + observed.ledger.firewall_rules))
    if observed.firewall_available:
        for rule in rules:
            if rule in observed.firewall_rules or rule in observed.ledger.firewall_rules:
                plan.add(ActionKind.CLOSE_PORT, rule)
    for rule in observed.iptables_rules:
        plan.add(ActionKind.DELETE_IPTABLES_RULE, rule)

    if scope == COMPREHENSIVE:
        swept_units = False
        for path in observed.sweep_paths:
            if path not in planned:
                planned.add(path)
                plan.add(ActionKind.REMOVE_PATH, path, category="sweep")
                swept_units = swept_units or path.endswith(".service")
        if swept_units:
            plan.add(ActionKind.DAEMON_RELOAD, "systemd")
        for path, matcher in observed.sweep_scrubs:
            plan.add(ActionKind.SCRUB_LINES, path, matcher=matcher)
    return plan


def check_teardown_order(plan: ActionPlan) -> None:
    """
    Reject a teardown plan that would delete live artifacts first.

    Raises:
        OrderingError: A removal precedes the stop confirmation, or a stop
            follows it.
    """
    kinds = plan.kinds()
    if ActionKind.CONFIRM_STOPPED not in kinds:
        if any(k in AFTER_STOP for k in kinds):
            raise OrderingError("Teardown plan removes artifacts without confirming the service stopped")
        return
    confirm = kinds.index(ActionKind.CONFIRM_STOPPED)
    for index, kind in enumerate(kinds):
        if kind in AFTER_STOP and index < confirm:
            raise OrderingError(f"Teardown step '{kind.value}' is ordered before the service is stopped")
        if kind in (ActionKind.STOP_SERVICE, ActionKind.KILL_PROCESSES) and index > confirm:
            raise OrderingError(f"Teardown step '{kind.value}' is ordered after the stop confirmation")
