"""
Declared end state of a relay node.

``resolve_target()`` runs once at the start of a pass. It probes the host for
the values the operator did not supply (listen address, architecture,
swarm-key source) and freezes the result so nothing is re-derived mid-plan.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from relay_reconcile import kubo
from relay_reconcile.config import AppConfig
from relay_reconcile.credentials import load_swarm_key
from relay_reconcile.errors import ConfigurationError
from relay_reconcile.templates import render_site, render_unit

logger = logging.getLogger("relay_reconcile")


@dataclass(frozen=True)
class TargetState:
    # Release
    kubo_version: str
    arch: str
    download_url: str
    checksum_url: str
    binary_path: Path
    binary_link: Path

    # Identity and repository
    service_name: str
    user: str
    group: str
    repo_dir: Path
    repo_mode: int
    repo_settings: Tuple[Tuple[str, object], ...]

    # Private network
    swarm_key_path: Path
    swarm_key_mode: int
    swarm_key_source: Optional[Path]
    swarm_key_material: Optional[bytes] = field(repr=False)
    generate_swarm_key: bool
    private_network: bool

    # Service unit
    unit_path: Path
    unit_content: str

    # Reverse proxy
    listen_ip: str
    proxy_port: int
    proxy_service: str
    site_path: Path
    site_link: Path
    default_site_link: Path
    site_content: str
    routes: Tuple[str, ...]
    cert_path: Path
    key_path: Path
    cert_mode: int
    key_mode: int
    htpasswd_path: Path
    htpasswd_mode: int
    htpasswd_group: str
    basic_user: str
    password: Optional[str] = field(repr=False)

    firewall_rules: Tuple[str, ...]
    packages: Tuple[str, ...]
    purge_packages: Tuple[str, ...]

    def tracked_paths(self) -> Tuple[Path, ...]:
        """Every path the convergence pass creates, in teardown order."""
        return (
            self.unit_path,
            self.repo_dir,
            self.binary_path,
            self.binary_link,
            self.site_link,
            self.site_path,
            self.cert_path,
            self.key_path,
            self.htpasswd_path,
        )


def resolve_listen_ip(host, target_ip: Optional[str]) -> str:
    if target_ip:
        try:
            return str(ipaddress.IPv4Address(target_ip))
        except ValueError:
            raise ConfigurationError(f"Invalid IPv4 listen address: {target_ip}")
    detected = host.primary_ipv4()
    if not detected:
        raise ConfigurationError("Could not detect the primary IPv4 address; pass --target-ip")
    logger.info(f"Detected listen address {detected}")
    return detected


def find_swarm_key_source(
    config: AppConfig, swarm_key: Optional[Path], invocation_dir: Optional[Path]
) -> Optional[Path]:
    """Explicit path first, then the invocation directory, then the system-wide key."""
    if swarm_key is not None:
        swarm_key = Path(swarm_key)
        if not swarm_key.is_file():
            raise ConfigurationError(f"Swarm key file not found: {swarm_key}")
        return swarm_key
    candidates = []
    if invocation_dir is not None:
        candidates.extend(Path(invocation_dir) / name for name in config.SWARM_KEY_CANDIDATES)
    candidates.append(config.path(config.SYSTEM_SWARM_KEY))
    for candidate in candidates:
        if candidate.is_file():
            logger.info(f"Using swarm key from {candidate}")
            return candidate
    return None


def resolve_target(
    config: AppConfig,
    host,
    target_ip: Optional[str] = None,
    basic_user: Optional[str] = None,
    password: Optional[str] = None,
    swarm_key: Optional[Path] = None,
    generate_swarm_key: bool = False,
    kubo_version: Optional[str] = None,
    invocation_dir: Optional[Path] = None,
    strict: bool = True,
) -> TargetState:
    """
    Build the TargetState for this run.

    With ``strict`` unset (teardown), an unknown architecture or undetectable
    address is tolerated and no swarm-key source is read; only the artifact
    locations matter there.

    Raises:
        UnsupportedPlatformError: The CPU architecture has no Kubo build.
        ConfigurationError: The listen address or swarm key cannot be resolved.
    """
    version = kubo_version or config.KUBO_VERSION
    if strict:
        arch = kubo.normalize_arch(host.machine(), config.SUPPORTED_ARCHES)
        listen_ip = resolve_listen_ip(host, target_ip)
        source = find_swarm_key_source(config, swarm_key, invocation_dir)
    else:
        machine = host.machine()
        arch = config.SUPPORTED_ARCHES.get(machine.lower(), machine)
        listen_ip = target_ip or host.primary_ipv4() or "0.0.0.0"
        source = None

    material = load_swarm_key(source, source.read_bytes()) if source is not None else None
    swarm_key_path = config.path(config.REPO_DIR) / config.SWARM_KEY_NAME
    private_network = material is not None or generate_swarm_key or host.exists(swarm_key_path)

    routes = tuple(config.ALLOWED_ROUTES)
    return TargetState(
        kubo_version=version,
        arch=arch,
        download_url=kubo.release_url(config.DIST_BASE_URL, version, arch),
        checksum_url=kubo.checksum_url(config.DIST_BASE_URL, version, arch),
        binary_path=config.path(config.BINARY_PATH),
        binary_link=config.path(config.BINARY_LINK),
        service_name=config.SERVICE_NAME,
        user=config.SERVICE_USER,
        group=config.SERVICE_GROUP,
        repo_dir=config.path(config.REPO_DIR),
        repo_mode=config.REPO_MODE,
        repo_settings=tuple(config.repo_settings().items()),
        swarm_key_path=swarm_key_path,
        swarm_key_mode=config.SWARM_KEY_MODE,
        swarm_key_source=source,
        swarm_key_material=material,
        generate_swarm_key=generate_swarm_key,
        private_network=private_network,
        unit_path=config.path(config.UNIT_PATH),
        unit_content=render_unit(config, private_network),
        listen_ip=listen_ip,
        proxy_port=config.PROXY_PORT,
        proxy_service=config.PROXY_SERVICE,
        site_path=config.path(config.SITE_PATH),
        site_link=config.path(config.SITE_LINK),
        default_site_link=config.path(config.DEFAULT_SITE_LINK),
        site_content=render_site(config, listen_ip, list(routes)),
        routes=routes,
        cert_path=config.path(config.CERT_PATH),
        key_path=config.path(config.KEY_PATH),
        cert_mode=config.CERT_MODE,
        key_mode=config.KEY_MODE,
        htpasswd_path=config.path(config.HTPASSWD_PATH),
        htpasswd_mode=config.HTPASSWD_MODE,
        htpasswd_group=config.HTPASSWD_GROUP,
        basic_user=basic_user or config.BASIC_AUTH_USER,
        password=password,
        firewall_rules=tuple(config.firewall_rules()),
        packages=tuple(config.PROXY_PACKAGES),
        purge_packages=tuple(config.PURGE_PACKAGES),
    )
