"""
Plan execution.

``Reconciler.converge()`` applies a convergence plan and stops at the first
failure; a corrected re-run picks up where it left off. ``Reconciler.diverge()``
applies a teardown plan step by step, collecting failures instead of
stopping, and reports whatever it could not remove.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from relay_reconcile import kubo, sweep
from relay_reconcile.config import AppConfig
from relay_reconcile.credentials import generate_password, generate_swarm_key
from relay_reconcile.errors import (
    BestEffortError,
    OrderingError,
    ReconcileError,
    ServiceStartError,
    ValidationError,
)
from relay_reconcile.ledger import Ledger
from relay_reconcile.lock import RunLock
from relay_reconcile.plan import (
    AFTER_STOP,
    TRACKED,
    Action,
    ActionKind,
    ActionPlan,
    check_teardown_order,
    plan_convergence,
    plan_teardown,
)
from relay_reconcile.state import ObservedState, observe, read_repo_config
from relay_reconcile.target import TargetState

logger = logging.getLogger("relay_reconcile")


@dataclass
class ConvergenceResult:
    plan: ActionPlan
    applied: List[Action] = field(default_factory=list)
    generated_credential: Optional[str] = field(default=None, repr=False)
    credential_user: Optional[str] = None
    generated_swarm_key: bool = False
    checksum_verified: Optional[bool] = None
    peer_id: Optional[str] = None
    bootstrap_address: Optional[str] = None
    dry_run: bool = False


@dataclass
class TeardownResult:
    plan: ActionPlan
    removed: List[str] = field(default_factory=list)
    failures: List[BestEffortError] = field(default_factory=list)
    dry_run: bool = False

    @property
    def clean(self) -> bool:
        return not self.failures


class Reconciler:
    """Apply convergence and teardown plans against a host."""

    def __init__(self, config: AppConfig, host):
        self.config = config
        self.host = host
        self._handlers: Dict[ActionKind, Callable] = {
            ActionKind.INSTALL_PACKAGES: self._install_packages,
            ActionKind.DISABLE_DEFAULT_SITE: self._disable_default_site,
            ActionKind.INSTALL_BINARY: self._install_binary,
            ActionKind.LINK_BINARY: self._link_binary,
            ActionKind.CREATE_GROUP: self._create_group,
            ActionKind.CREATE_USER: self._create_user,
            ActionKind.CREATE_DIR: self._create_dir,
            ActionKind.SET_OWNER: self._set_owner,
            ActionKind.SET_MODE: self._set_mode,
            ActionKind.INIT_REPO: self._init_repo,
            ActionKind.INSTALL_SWARM_KEY: self._install_swarm_key,
            ActionKind.SET_REPO_CONFIG: self._set_repo_config,
            ActionKind.CLEAR_BOOTSTRAP: self._clear_bootstrap,
            ActionKind.WRITE_UNIT: self._write_unit,
            ActionKind.GENERATE_CERT: self._generate_cert,
            ActionKind.WRITE_CREDENTIAL: self._write_credential,
            ActionKind.WRITE_SITE: self._write_site,
            ActionKind.LINK_SITE: self._link_site,
            ActionKind.OPEN_PORT: self._open_port,
            ActionKind.DAEMON_RELOAD: self._daemon_reload,
            ActionKind.ENABLE_SERVICE: self._enable_service,
            ActionKind.RESTART_SERVICE: self._restart_service,
            ActionKind.CONFIRM_ACTIVE: self._confirm_active,
            ActionKind.VALIDATE_PROXY: self._validate_proxy,
            ActionKind.RELOAD_PROXY: self._reload_proxy,
            ActionKind.STOP_SERVICE: self._stop_service,
            ActionKind.DISABLE_SERVICE: self._disable_service,
            ActionKind.KILL_PROCESSES: self._kill_processes,
            ActionKind.CONFIRM_STOPPED: self._confirm_stopped,
            ActionKind.REMOVE_PATH: self._remove_path,
            ActionKind.DELETE_USER: self._delete_user,
            ActionKind.DELETE_GROUP: self._delete_group,
            ActionKind.PURGE_PACKAGES: self._purge_packages,
            ActionKind.REVALIDATE_PROXY: self._revalidate_proxy,
            ActionKind.CLOSE_PORT: self._close_port,
            ActionKind.DELETE_IPTABLES_RULE: self._delete_iptables_rule,
            ActionKind.SCRUB_LINES: self._scrub_lines,
        }
        self._target: Optional[TargetState] = None
        self._ledger = Ledger()
        self._convergence: Optional[ConvergenceResult] = None
        self._teardown: Optional[TeardownResult] = None

    @property
    def ledger_path(self) -> Path:
        return self.config.path(self.config.LEDGER_FILE)

    def lock(self) -> RunLock:
        return RunLock(self.config.path(self.config.LOCK_FILE))

    # ------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------
    def observe(self, target: TargetState, include_sweep: bool = False) -> ObservedState:
        return observe(target, self.host, self.config, include_sweep=include_sweep)

    def converge(self, target: TargetState, dry_run: bool = False) -> ConvergenceResult:
        """
        Bring the host to the target state.

        Raises:
            ReconcileError: The first failing step; later steps are skipped.
        """
        with self.lock():
            observed = self.observe(target)
            plan = plan_convergence(target, observed)
            for note in plan.notes:
                logger.warning(note)
            result = ConvergenceResult(plan=plan, dry_run=dry_run)
            if dry_run:
                return result

            self._target = target
            self._convergence = result
            self._ledger = observed.ledger
            try:
                for action in plan.actions + plan.epilogue:
                    logger.info(f"Applying {action}")
                    self._handlers[action.kind](action)
                    result.applied.append(action)
            finally:
                if result.applied:
                    self._ledger.save(self.ledger_path)
                self._convergence = None

            self._report_identity(target, result)
            logger.info(f"Convergence complete ({len(plan.actions)} change(s))")
            return result

    def diverge(
        self, target: TargetState, scope: str = TRACKED, purge: bool = False, dry_run: bool = False
    ) -> TeardownResult:
        """
        Remove the relay from the host, continuing past individual failures.

        Raises:
            OrderingError: The plan would delete live artifacts before the
                service is stopped.
        """
        with self.lock():
            observed = self.observe(target, include_sweep=scope != TRACKED)
            plan = plan_teardown(target, observed, scope=scope, purge=purge)
            check_teardown_order(plan)
            result = TeardownResult(plan=plan, dry_run=dry_run)
            if dry_run:
                return result

            self._target = target
            self._teardown = result
            try:
                for action in plan.actions:
                    logger.info(f"Applying {action}")
                    try:
                        self._handlers[action.kind](action)
                    except (ReconcileError, OSError) as e:
                        failure = BestEffortError(action.subject, str(e))
                        logger.warning(f"Could not {action.kind.value} {action.subject}: {e}")
                        result.failures.append(failure)
            finally:
                self._teardown = None

            if result.clean:
                if self.host.remove(self.ledger_path):
                    result.removed.append(str(self.ledger_path))
            else:
                logger.warning(f"Teardown finished with {len(result.failures)} failure(s); ledger kept")
            return result

    def _report_identity(self, target: TargetState, result: ConvergenceResult) -> None:
        repo_config = read_repo_config(self.host, target.repo_dir) or {}
        peer_id = (repo_config.get("Identity") or {}).get("PeerID")
        if peer_id:
            result.peer_id = peer_id
            result.bootstrap_address = f"/ip4/{target.listen_ip}/tcp/{self.config.SWARM_PORT}/p2p/{peer_id}"

    # ------------------------------------------------------------
    # Convergence handlers
    # ------------------------------------------------------------
    def _install_packages(self, action: Action) -> None:
        packages = action.params["packages"]
        self.host.install_packages(packages)
        for package in packages:
            self._ledger.record("packages", package)

    def _disable_default_site(self, action: Action) -> None:
        self.host.remove(self._target.default_site_link)

    def _install_binary(self, action: Action) -> None:
        t = self._target
        verified = kubo.install_release(
            self.host, t.download_url, t.checksum_url, t.binary_path, self.config.DOWNLOAD_TIMEOUT
        )
        self._convergence.checksum_verified = verified
        installed = self.host.ipfs_version(t.binary_path)
        if installed != t.kubo_version:
            raise ReconcileError(f"Installed binary reports version {installed}, expected {t.kubo_version}")
        self._ledger.record("paths", str(t.binary_path))

    def _link_binary(self, action: Action) -> None:
        self.host.symlink(self._target.binary_path, self._target.binary_link)
        self._ledger.record("paths", str(self._target.binary_link))

    def _create_group(self, action: Action) -> None:
        self.host.create_group(action.subject)
        self._ledger.record("groups", action.subject)

    def _create_user(self, action: Action) -> None:
        self.host.create_user(action.subject, action.params["group"], Path(action.params["home"]))
        self._ledger.record("users", action.subject)

    def _create_dir(self, action: Action) -> None:
        path = Path(action.subject)
        self.host.mkdir(path, action.params["mode"])
        self.host.chown(path, action.params["owner"], action.params["group"])
        self._ledger.record("paths", action.subject)

    def _set_owner(self, action: Action) -> None:
        p = action.params
        self.host.chown(Path(action.subject), p["owner"], p["group"], recursive=p.get("recursive", False))

    def _set_mode(self, action: Action) -> None:
        self.host.chmod(Path(action.subject), action.params["mode"])

    def _ipfs(self, args: List[str]) -> None:
        t = self._target
        self.host.ipfs(args, t.user, t.repo_dir, t.binary_path)

    def _init_repo(self, action: Action) -> None:
        self._ipfs(["init", "--profile", action.params["profile"]])

    def _install_swarm_key(self, action: Action) -> None:
        t = self._target
        material = t.swarm_key_material
        if material is None:
            material = generate_swarm_key()
            self._convergence.generated_swarm_key = True
            logger.info(f"Generated a new swarm key at {t.swarm_key_path}")
        self.host.write_file(t.swarm_key_path, material, t.swarm_key_mode)
        self.host.chown(t.swarm_key_path, t.user, t.group)

    def _set_repo_config(self, action: Action) -> None:
        self._ipfs(["config", "--json", action.subject, json.dumps(action.params["value"])])

    def _clear_bootstrap(self, action: Action) -> None:
        self._ipfs(["bootstrap", "rm", "--all"])

    def _write_unit(self, action: Action) -> None:
        self.host.write_file(self._target.unit_path, self._target.unit_content, 0o644)
        self._ledger.record("paths", str(self._target.unit_path))

    def _generate_cert(self, action: Action) -> None:
        t = self._target
        self.host.generate_certificate(
            t.cert_path, t.key_path, self.config.CERT_CN, self.config.CERT_DAYS, self.config.CERT_BITS
        )
        self.host.chmod(t.cert_path, t.cert_mode)
        self.host.chmod(t.key_path, t.key_mode)
        self._ledger.record("paths", str(t.cert_path))
        self._ledger.record("paths", str(t.key_path))

    def _write_credential(self, action: Action) -> None:
        t = self._target
        password = t.password
        if password is None:
            password = generate_password(self.config.PASSWORD_BYTES)
            self._convergence.generated_credential = password
            self._convergence.credential_user = t.basic_user
        self.host.htpasswd_write(t.htpasswd_path, t.basic_user, password, self.config.BCRYPT_COST)
        self.host.chmod(t.htpasswd_path, t.htpasswd_mode)
        if self.host.group_exists(t.htpasswd_group):
            self.host.chown(t.htpasswd_path, "root", t.htpasswd_group)
        self._ledger.record("paths", str(t.htpasswd_path))
        logger.info(f"Wrote credential store {t.htpasswd_path} for user '{t.basic_user}'")

    def _write_site(self, action: Action) -> None:
        self.host.write_file(self._target.site_path, self._target.site_content, 0o644)
        self._ledger.record("paths", str(self._target.site_path))

    def _link_site(self, action: Action) -> None:
        self.host.symlink(self._target.site_path, self._target.site_link)
        self._ledger.record("paths", str(self._target.site_link))

    def _open_port(self, action: Action) -> None:
        self.host.firewall_allow(action.subject)
        self._ledger.record("firewall_rules", action.subject)

    def _daemon_reload(self, action: Action) -> None:
        self.host.daemon_reload()

    def _enable_service(self, action: Action) -> None:
        self.host.systemctl("enable", action.subject)

    def _restart_service(self, action: Action) -> None:
        self.host.systemctl("restart", action.subject)

    def _confirm_active(self, action: Action) -> None:
        name = action.subject
        timeout = self.config.SERVICE_START_TIMEOUT
        if not self.host.wait_for(lambda: self.host.service_active(name), timeout, self.config.SERVICE_POLL_INTERVAL):
            raise ServiceStartError(f"Service {name} did not become active within {timeout} seconds")
        logger.info(f"Service {name} is active")

    def _validate_proxy(self, action: Action) -> None:
        ok, output = self.host.nginx_test()
        if ok:
            return
        logger.error(f"nginx configuration test failed: {output}")
        self._stop_proxy(action.subject)
        raise ValidationError(f"nginx rejected the generated configuration; {action.subject} stopped: {output}")

    def _stop_proxy(self, name: str) -> None:
        for verb in ("stop", "disable"):
            try:
                self.host.systemctl(verb, name)
            except ReconcileError as e:
                logger.warning(f"Could not {verb} {name}: {e}")

    def _reload_proxy(self, action: Action) -> None:
        name = action.subject
        if self.host.service_active(name):
            self.host.systemctl("reload", name)
        else:
            self.host.systemctl("enable", name)
            self.host.systemctl("start", name)

    # ------------------------------------------------------------
    # Teardown handlers
    # ------------------------------------------------------------
    def _ensure_stopped(self, action: Action) -> None:
        if action.kind in AFTER_STOP and self.host.service_active(self._target.service_name):
            raise OrderingError(f"Refusing to {action.kind.value} while {self._target.service_name} is active")

    def _stop_service(self, action: Action) -> None:
        self.host.systemctl("stop", action.subject)

    def _disable_service(self, action: Action) -> None:
        self.host.systemctl("disable", action.subject)

    def _kill_processes(self, action: Action) -> None:
        self.host.kill_processes(action.subject)

    def _confirm_stopped(self, action: Action) -> None:
        name = action.subject

        def stopped() -> bool:
            return not self.host.service_active(name) and not self.host.processes_running("ipfs")

        if not self.host.wait_for(stopped, self.config.SERVICE_START_TIMEOUT, self.config.SERVICE_POLL_INTERVAL):
            raise ServiceStartError(f"Service {name} is still running")

    def _remove_path(self, action: Action) -> None:
        self._ensure_stopped(action)
        if self.host.remove(Path(action.subject)):
            self._teardown.removed.append(action.subject)

    def _delete_user(self, action: Action) -> None:
        self._ensure_stopped(action)
        if self.host.user_exists(action.subject):
            self.host.delete_user(action.subject)
            self._teardown.removed.append(f"user {action.subject}")

    def _delete_group(self, action: Action) -> None:
        self._ensure_stopped(action)
        if self.host.group_exists(action.subject):
            self.host.delete_group(action.subject)
            self._teardown.removed.append(f"group {action.subject}")

    def _purge_packages(self, action: Action) -> None:
        self.host.purge_packages(action.params["packages"])
        self._teardown.removed.extend(f"package {p}" for p in action.params["packages"])

    def _revalidate_proxy(self, action: Action) -> None:
        name = action.subject
        ok, output = self.host.nginx_test()
        if not ok:
            self._stop_proxy(name)
            raise ValidationError(f"nginx configuration invalid after removal; {name} stopped: {output}")
        if self.host.service_active(name):
            self.host.systemctl("reload", name)

    def _close_port(self, action: Action) -> None:
        self._ensure_stopped(action)
        self.host.firewall_delete(action.subject)
        self._teardown.removed.append(f"ufw rule {action.subject}")

    def _delete_iptables_rule(self, action: Action) -> None:
        self._ensure_stopped(action)
        self.host.iptables_delete(action.subject)
        self._teardown.removed.append(f"iptables rule {action.subject}")

    def _scrub_lines(self, action: Action) -> None:
        if sweep.scrub_file(self.host, Path(action.subject), action.params["matcher"]):
            self._teardown.removed.append(f"lines in {action.subject}")
