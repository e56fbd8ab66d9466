"""
Observed machine state.

``observe()`` takes a fresh snapshot of every artifact named by a
TargetState. It only reads; the snapshot is never cached between passes.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from relay_reconcile import sweep
from relay_reconcile.config import AppConfig
from relay_reconcile.credentials import digest, parse_htpasswd_users
from relay_reconcile.ledger import Ledger
from relay_reconcile.target import TargetState

logger = logging.getLogger("relay_reconcile")

_MISSING = object()


@dataclass
class ObservedState:
    # Release and packages
    binary_version: Optional[str] = None
    binary_link_target: Optional[str] = None
    packages_missing: List[str] = field(default_factory=list)
    packages_installed: List[str] = field(default_factory=list)
    proxy_installed: bool = False

    # Identities
    user_exists: bool = False
    group_exists: bool = False
    proxy_group_exists: bool = False

    # Repository
    repo_exists: bool = False
    repo_mode: Optional[int] = None
    repo_owner: Optional[Tuple[str, str]] = None
    repo_initialized: bool = False
    repo_settings: Dict[str, Any] = field(default_factory=dict)
    bootstrap_peers: List[str] = field(default_factory=list)
    peer_id: Optional[str] = None

    # Private network
    swarm_key_present: bool = False
    swarm_key_digest: Optional[str] = None
    swarm_key_mode: Optional[int] = None

    # Service
    unit_content: Optional[str] = None
    service_active: bool = False
    service_enabled: bool = False
    stray_processes: bool = False

    # Reverse proxy
    default_site_enabled: bool = False
    site_content: Optional[str] = None
    site_link_target: Optional[str] = None
    cert_present: bool = False
    key_present: bool = False
    cert_mode: Optional[int] = None
    key_mode: Optional[int] = None
    credential_users: List[str] = field(default_factory=list)
    credential_verified: Optional[bool] = None
    credential_mode: Optional[int] = None
    credential_owner: Optional[Tuple[str, str]] = None

    # Firewall
    firewall_available: bool = False
    firewall_rules: List[str] = field(default_factory=list)
    iptables_rules: List[str] = field(default_factory=list)

    # Bookkeeping and sweep
    present_paths: List[str] = field(default_factory=list)
    ledger: Ledger = field(default_factory=Ledger)
    sweep_paths: List[str] = field(default_factory=list)
    sweep_scrubs: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def binary_present(self) -> bool:
        return self.binary_version is not None

    @property
    def credential_present(self) -> bool:
        return bool(self.credential_users)


def read_repo_config(host, repo_dir: Path) -> Optional[Dict[str, Any]]:
    """Parse the Kubo repository config file without going through the daemon."""
    text = host.read_text(Path(repo_dir) / "config")
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError as e:
        logger.warning(f"Repository config is not valid JSON: {e}")
        return {}


def get_setting(data: Dict[str, Any], dotted: str, default: Any = None) -> Any:
    node: Any = data
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def observe(target: TargetState, host, config: AppConfig, include_sweep: bool = False) -> ObservedState:
    """Read the current state of every artifact the target declares."""
    obs = ObservedState()

    obs.binary_version = host.ipfs_version(target.binary_path)
    obs.binary_link_target = host.link_target(target.binary_link)
    for package in sorted(set(target.packages) | set(target.purge_packages)):
        if host.package_installed(package):
            obs.packages_installed.append(package)
        elif package in target.packages:
            obs.packages_missing.append(package)
    obs.proxy_installed = host.which("nginx") is not None

    obs.user_exists = host.user_exists(target.user)
    obs.group_exists = host.group_exists(target.group)
    obs.proxy_group_exists = host.group_exists(target.htpasswd_group)

    obs.repo_exists = host.is_dir(target.repo_dir)
    if obs.repo_exists:
        obs.repo_mode = host.mode(target.repo_dir)
        obs.repo_owner = host.owner(target.repo_dir)
        repo_config = read_repo_config(host, target.repo_dir)
        if repo_config is not None:
            obs.repo_initialized = True
            for key, _ in target.repo_settings:
                value = get_setting(repo_config, key, _MISSING)
                if value is not _MISSING:
                    obs.repo_settings[key] = value
            obs.bootstrap_peers = list(repo_config.get("Bootstrap") or [])
            obs.peer_id = get_setting(repo_config, "Identity.PeerID")

    key_bytes = host.read_bytes(target.swarm_key_path)
    if key_bytes is not None:
        obs.swarm_key_present = True
        obs.swarm_key_digest = digest(key_bytes)
        obs.swarm_key_mode = host.mode(target.swarm_key_path)

    obs.unit_content = host.read_text(target.unit_path)
    obs.service_active = host.service_active(target.service_name)
    obs.service_enabled = host.service_enabled(target.service_name)
    obs.stray_processes = host.processes_running("ipfs")

    obs.default_site_enabled = host.exists(target.default_site_link)
    obs.site_content = host.read_text(target.site_path)
    obs.site_link_target = host.link_target(target.site_link)
    obs.cert_present = host.exists(target.cert_path)
    obs.key_present = host.exists(target.key_path)
    obs.cert_mode = host.mode(target.cert_path)
    obs.key_mode = host.mode(target.key_path)

    store = host.read_text(target.htpasswd_path)
    if store is not None:
        obs.credential_users = parse_htpasswd_users(store)
        obs.credential_mode = host.mode(target.htpasswd_path)
        obs.credential_owner = host.owner(target.htpasswd_path)
        if target.password and target.basic_user in obs.credential_users:
            obs.credential_verified = host.htpasswd_verify(target.htpasswd_path, target.basic_user, target.password)

    obs.firewall_available = host.firewall_available()
    if obs.firewall_available:
        obs.firewall_rules = sorted(host.firewall_rules())
    if host.iptables_available():
        obs.iptables_rules = [rule for rule in target.firewall_rules if host.iptables_rule_present(rule)]

    obs.ledger = Ledger.load(config.path(config.LEDGER_FILE))
    candidates = [str(p) for p in target.tracked_paths()] + obs.ledger.paths
    obs.present_paths = [p for p in dict.fromkeys(candidates) if host.exists(Path(p))]

    if include_sweep:
        obs.sweep_paths = [str(p) for p in sweep.find_removals(config)]
        obs.sweep_scrubs = [(str(p), matcher) for p, matcher in sweep.find_scrubs(config)]
    return obs
