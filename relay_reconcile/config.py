"""
Configuration defaults for the relay reconciler.

Every well-known location is stored as an absolute path and mapped through
``AppConfig.path()`` so the whole layout can be re-rooted (for example into a
scratch directory).
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List


@dataclass
class AppConfig:
    ROOT: Path = field(default_factory=lambda: Path("/"))

    # Run bookkeeping
    LOG_FILE: str = "/var/log/relay_reconcile.log"
    LOCK_FILE: str = "/run/relay-reconcile.lock"
    LEDGER_FILE: str = "/var/lib/relay-reconcile/ledger.json"

    # Kubo release
    KUBO_VERSION: str = "0.35.0"
    DIST_BASE_URL: str = "https://dist.ipfs.tech/kubo"
    SUPPORTED_ARCHES: Dict[str, str] = field(default_factory=lambda: {
        "x86_64": "amd64",
        "amd64": "amd64",
        "aarch64": "arm64",
        "arm64": "arm64",
    })
    BINARY_PATH: str = "/usr/local/bin/ipfs"
    BINARY_LINK: str = "/usr/bin/ipfs"

    # Service identity and repository
    SERVICE_NAME: str = "ipfs"
    UNIT_PATH: str = "/etc/systemd/system/ipfs.service"
    SERVICE_USER: str = "ipfs"
    SERVICE_GROUP: str = "ipfs"
    REPO_DIR: str = "/var/lib/ipfs"
    REPO_MODE: int = 0o750
    FD_MAX: int = 8192
    RESTART_SEC: int = 5

    # Private network
    SWARM_KEY_NAME: str = "swarm.key"
    SWARM_KEY_MODE: int = 0o600
    SWARM_KEY_CANDIDATES: List[str] = field(default_factory=lambda: ["swarm.key", "swarm_key_base64.txt"])
    SYSTEM_SWARM_KEY: str = "/etc/ipfs/swarm.key"

    # Ports
    SWARM_PORT: int = 4001
    API_PORT: int = 5001
    PROXY_PORT: int = 5443

    # Reverse proxy
    PROXY_SERVICE: str = "nginx"
    PROXY_PACKAGES: List[str] = field(default_factory=lambda: ["nginx", "openssl", "apache2-utils"])
    PURGE_PACKAGES: List[str] = field(default_factory=lambda: ["nginx", "nginx-common"])
    NGINX_CONF: str = "/etc/nginx/nginx.conf"
    SITE_PATH: str = "/etc/nginx/sites-available/ipfs-api.conf"
    SITE_LINK: str = "/etc/nginx/sites-enabled/ipfs-api.conf"
    DEFAULT_SITE_LINK: str = "/etc/nginx/sites-enabled/default"
    ALLOWED_ROUTES: List[str] = field(default_factory=lambda: [
        "/api/v0/pin/add",
        "/api/v0/pin/rm",
        "/api/v0/version",
    ])
    AUTH_REALM: str = "IPFS Private Relay API"
    TLS_PROTOCOLS: str = "TLSv1.3"
    TLS_CIPHERSUITES: str = "TLS_AES_256_GCM_SHA384:TLS_AES_128_GCM_SHA256"

    # TLS identity
    CERT_PATH: str = "/etc/ssl/certs/r1fs_cert.crt"
    KEY_PATH: str = "/etc/ssl/private/r1fs_cert.key"
    CERT_MODE: int = 0o644
    KEY_MODE: int = 0o400
    CERT_CN: str = "r1fs"
    CERT_DAYS: int = 365
    CERT_BITS: int = 4096

    # Basic auth
    HTPASSWD_PATH: str = "/etc/nginx/.htpasswd"
    HTPASSWD_MODE: int = 0o640
    HTPASSWD_GROUP: str = "www-data"
    BASIC_AUTH_USER: str = "r1fs"
    BCRYPT_COST: int = 12
    PASSWORD_BYTES: int = 18

    # Timeouts (seconds)
    COMMAND_TIMEOUT: int = 300
    DOWNLOAD_TIMEOUT: int = 300
    SERVICE_START_TIMEOUT: int = 30
    SERVICE_POLL_INTERVAL: float = 1.0

    # Comprehensive sweep
    SWEEP_UNIT_DIR: str = "/etc/systemd/system"
    SWEEP_UNIT_GLOBS: List[str] = field(default_factory=lambda: ["ipfs*.service", "kubo*.service"])
    SWEEP_DIRS: List[str] = field(default_factory=lambda: [
        "/opt/ipfs", "/usr/share/ipfs", "/etc/ipfs", "/var/log/ipfs",
    ])
    SWEEP_BIN_DIRS: List[str] = field(default_factory=lambda: ["/usr/local/bin", "/usr/bin", "/bin", "/opt/bin"])
    SWEEP_BIN_NAMES: List[str] = field(default_factory=lambda: ["ipfs", "kubo", "ipfs-update"])
    SWEEP_DOWNLOAD_DIRS: List[str] = field(default_factory=lambda: ["/tmp", "/var/tmp", "/root"])
    SWEEP_ARCHIVE_GLOBS: List[str] = field(default_factory=lambda: [
        "kubo_v*_linux-*.tar.gz", "go-ipfs_v*_linux-*.tar.gz",
    ])
    SWEEP_EXTRACT_NAMES: List[str] = field(default_factory=lambda: ["kubo", "go-ipfs"])
    SWEEP_LOG_DIR: str = "/var/log"
    SWEEP_LOG_GLOBS: List[str] = field(default_factory=lambda: ["ipfs*.log", "kubo*.log"])
    SWEEP_CRON_FILES: List[str] = field(default_factory=lambda: ["/etc/crontab"])
    SWEEP_CRON_DIRS: List[str] = field(default_factory=lambda: ["/etc/cron.d", "/var/spool/cron/crontabs"])
    SWEEP_PROFILE_FILES: List[str] = field(default_factory=lambda: [
        "/etc/profile", "/etc/bash.bashrc", "/etc/environment",
    ])
    SWEEP_USER_PROFILES: List[str] = field(default_factory=lambda: [".bashrc", ".profile", ".bash_profile"])
    HOSTS_FILE: str = "/etc/hosts"

    def path(self, location: str) -> Path:
        """Map an absolute well-known location onto the configured root."""
        return Path(self.ROOT) / location.lstrip("/")

    def home_dirs(self) -> List[Path]:
        """Return /root plus every directory directly under /home."""
        homes = [self.path("/root")]
        home_root = self.path("/home")
        if home_root.is_dir():
            homes.extend(sorted(p for p in home_root.iterdir() if p.is_dir()))
        return homes

    def repo_settings(self) -> Dict[str, Any]:
        return {
            "Swarm.RelayService.Enabled": True,
            "Swarm.RelayClient.Enabled": False,
            "Addresses.API": f"/ip4/127.0.0.1/tcp/{self.API_PORT}",
        }

    def firewall_rules(self) -> List[str]:
        return [
            f"{self.PROXY_PORT}/tcp",
            f"{self.SWARM_PORT}/tcp",
            f"{self.SWARM_PORT}/udp",
        ]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ROOT"] = str(self.ROOT)
        return data
