"""
Read-only diagnostics for a relay node.

The probe gathers service, repository, network and proxy signals into a
DiagnosticReport. It never changes the machine: no service control, no
``swarm connect``, no file writes. A missing tool yields an "unavailable"
finding rather than an error.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from rich.table import Table

from relay_reconcile import VERSION
from relay_reconcile.config import AppConfig
from relay_reconcile.credentials import is_valid_swarm_key, parse_htpasswd_users
from relay_reconcile.errors import ReconcileError
from relay_reconcile.state import get_setting
from relay_reconcile.ui import NordColors, SEVERITY_STYLES, console, print_section

logger = logging.getLogger("relay_reconcile")

SEVERITY_ORDER = ["ok", "info", "unavailable", "warn", "error"]

LOG_EXCERPTS = {
    "errors": re.compile(r"\b(error|fatal|panic|failed)\b", re.IGNORECASE),
    "relay": re.compile(r"\brelay\b", re.IGNORECASE),
    "circuit": re.compile(r"\bcircuit\b", re.IGNORECASE),
    "connections": re.compile(r"\b(connect(ed|ion)?|dial(ing)?|peer)\b", re.IGNORECASE),
}


@dataclass
class Finding:
    label: str
    value: str
    severity: str = "info"
    hint: Optional[str] = None
    raw: Optional[str] = None


@dataclass
class DiagnosticReport:
    sections: Dict[str, List[Finding]] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)
    generated_at: str = field(default_factory=lambda: datetime.now().isoformat(timespec="seconds"))

    def findings(self) -> List[Finding]:
        return [f for section in self.sections.values() for f in section]

    @property
    def status(self) -> str:
        worst = "ok"
        for finding in self.findings():
            if SEVERITY_ORDER.index(finding.severity) > SEVERITY_ORDER.index(worst):
                worst = finding.severity
        return worst

    def summary(self) -> Dict[str, int]:
        counts = {severity: 0 for severity in SEVERITY_ORDER}
        for finding in self.findings():
            counts[finding.severity] += 1
        return counts

    def to_dict(self, verbose: bool = False) -> Dict[str, Any]:
        sections = {}
        for name, findings in self.sections.items():
            entries = []
            for finding in findings:
                entry = asdict(finding)
                if not verbose:
                    entry.pop("raw")
                entries.append(entry)
            sections[name] = entries
        return {
            "version": VERSION,
            "generated_at": self.generated_at,
            "status": self.status,
            "summary": self.summary(),
            "sections": sections,
            "recommendations": self.recommendations,
        }

    def to_json(self, verbose: bool = False) -> str:
        return json.dumps(self.to_dict(verbose), indent=2)


class DiagnosticProbe:
    """Collect a DiagnosticReport from a host without mutating it."""

    def __init__(self, config: AppConfig, host):
        self.config = config
        self.host = host
        self.repo_dir = config.path(config.REPO_DIR)
        self.binary = config.path(config.BINARY_PATH)
        self._repo_config: Optional[Dict[str, Any]] = None
        self._service_active = False

    def run(self) -> DiagnosticReport:
        logger.debug("Collecting diagnostics")
        report = DiagnosticReport()
        report.sections["system"] = self.check_system()
        report.sections["binary"] = self.check_binary()
        report.sections["service"] = self.check_service()
        report.sections["repository"] = self.check_repository()
        report.sections["swarm_key"] = self.check_swarm_key()
        report.sections["relay_config"] = self.check_relay_config()
        report.sections["peers"] = self.check_peers()
        report.sections["bootstrap"] = self.check_bootstrap()
        report.sections["ports"] = self.check_ports()
        report.sections["logs"] = self.check_logs()
        report.sections["firewall"] = self.check_firewall()
        report.sections["proxy"] = self.check_proxy()
        report.sections["credentials"] = self.check_credentials()
        report.recommendations = [f.hint for f in report.findings() if f.hint and f.severity in ("warn", "error")]
        return report

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------
    def _unavailable(self, label: str, tool: str) -> Finding:
        return Finding(label, f"{tool} unavailable", "unavailable")

    # ------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------
    def check_system(self) -> List[Finding]:
        address = self.host.primary_ipv4()
        return [
            Finding("Hostname", self.host.hostname()),
            Finding("Primary IPv4", address or "not detected", "info" if address else "warn",
                    None if address else "Configure a routable IPv4 address for the relay"),
            Finding("Kernel", self.host.kernel()),
            Finding("Architecture", self.host.machine(),
                    "ok" if self.host.machine().lower() in self.config.SUPPORTED_ARCHES else "error"),
        ]

    def check_binary(self) -> List[Finding]:
        version = self.host.ipfs_version(self.binary)
        if version is None:
            return [Finding("ipfs binary", f"missing at {self.config.BINARY_PATH}", "error",
                            "Run 'reconcile install' to install Kubo")]
        severity = "ok" if version == self.config.KUBO_VERSION else "warn"
        hint = None if severity == "ok" else f"Upgrade Kubo to {self.config.KUBO_VERSION} with 'reconcile install'"
        return [Finding("ipfs binary", f"{self.config.BINARY_PATH} (version {version})", severity, hint)]

    def check_service(self) -> List[Finding]:
        if not self.host.which("systemctl"):
            return [self._unavailable("Service", "systemctl")]
        name = self.config.SERVICE_NAME
        self._service_active = self.host.service_active(name)
        enabled = self.host.service_enabled(name)
        return [
            Finding("Active", "yes" if self._service_active else "no", "ok" if self._service_active else "error",
                    None if self._service_active else f"Start the daemon: systemctl start {name}"),
            Finding("Enabled at boot", "yes" if enabled else "no", "ok" if enabled else "warn",
                    None if enabled else f"Enable the daemon: systemctl enable {name}"),
        ]

    def check_repository(self) -> List[Finding]:
        if not self.host.is_dir(self.repo_dir):
            return [Finding("Repository", f"missing at {self.config.REPO_DIR}", "error",
                            "Run 'reconcile install' to initialise the repository")]
        findings = []
        mode = self.host.mode(self.repo_dir)
        findings.append(Finding("Repository mode", oct(mode) if mode is not None else "unknown",
                                "ok" if mode == self.config.REPO_MODE else "warn",
                                None if mode == self.config.REPO_MODE
                                else f"chmod {self.config.REPO_MODE:o} {self.config.REPO_DIR}"))
        owner = self.host.owner(self.repo_dir)
        expected = (self.config.SERVICE_USER, self.config.SERVICE_GROUP)
        findings.append(Finding("Repository owner", ":".join(owner) if owner else "unknown",
                                "ok" if owner == expected else "warn",
                                None if owner == expected
                                else f"chown -R {expected[0]}:{expected[1]} {self.config.REPO_DIR}"))
        try:
            text = self.host.read_text(self.repo_dir / "config")
        except OSError as e:
            findings.append(Finding("Repository config", f"unreadable: {e}", "unavailable"))
            return findings
        if text is None:
            findings.append(Finding("Repository config", "missing", "error", "Run 'ipfs init --profile server'"))
            return findings
        try:
            self._repo_config = json.loads(text)
        except ValueError as e:
            findings.append(Finding("Repository config", f"invalid JSON: {e}", "error"))
            return findings
        findings.append(Finding("Repository config", "present", "ok"))
        return findings

    def check_swarm_key(self) -> List[Finding]:
        path = self.repo_dir / self.config.SWARM_KEY_NAME
        try:
            data = self.host.read_bytes(path)
        except OSError as e:
            return [Finding("Swarm key", f"unreadable: {e}", "unavailable")]
        if data is None:
            return [Finding("Swarm key", "absent (public network)", "info")]
        findings = [Finding("Swarm key", "present", "ok")]
        mode = self.host.mode(path)
        findings.append(Finding("Swarm key mode", oct(mode) if mode is not None else "unknown",
                                "ok" if mode == self.config.SWARM_KEY_MODE else "error",
                                None if mode == self.config.SWARM_KEY_MODE
                                else f"chmod 600 {self.config.REPO_DIR}/{self.config.SWARM_KEY_NAME}"))
        owner = self.host.owner(path)
        findings.append(Finding("Swarm key owner", ":".join(owner) if owner else "unknown",
                                "ok" if owner and owner[0] == self.config.SERVICE_USER else "warn"))
        valid = is_valid_swarm_key(data)
        findings.append(Finding("Swarm key format", "valid" if valid else "invalid header or key",
                                "ok" if valid else "error",
                                None if valid else "Replace the swarm key with a /key/swarm/psk/1.0.0/ key"))
        return findings

    def check_relay_config(self) -> List[Finding]:
        if self._repo_config is None:
            return [Finding("Relay settings", "repository config not available", "unavailable")]
        findings = []
        for key, expected in self.config.repo_settings().items():
            actual = get_setting(self._repo_config, key)
            ok = actual == expected
            findings.append(Finding(key, json.dumps(actual), "ok" if ok else "warn",
                                    None if ok else f"ipfs config --json {key} {json.dumps(expected)}"))
        return findings

    def check_peers(self) -> List[Finding]:
        if not self._service_active:
            return [Finding("Peers", "daemon not running", "unavailable")]
        try:
            result = self.host.ipfs(["swarm", "peers"], self.config.SERVICE_USER, self.repo_dir, self.binary, check=False)
        except ReconcileError as e:
            return [Finding("Peers", f"could not query: {e}", "unavailable")]
        if result.returncode != 0 and (result.stderr or "").startswith("sudo:"):
            return [Finding("Peers", "requires root to query as the service user", "unavailable", None, result.stderr)]
        if result.returncode != 0:
            return [Finding("Peers", "daemon API not responding", "warn", None, result.stderr)]
        peers = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        severity = "ok" if peers else "warn"
        hint = None if peers else "No connected peers; check the swarm key and firewall on port 4001"
        return [Finding("Connected peers", str(len(peers)), severity, hint, "\n".join(peers))]

    def check_bootstrap(self) -> List[Finding]:
        if self._repo_config is None:
            return [Finding("Bootstrap", "repository config not available", "unavailable")]
        peers = list(self._repo_config.get("Bootstrap") or [])
        private = self.host.exists(self.repo_dir / self.config.SWARM_KEY_NAME)
        if private and peers:
            return [Finding("Bootstrap peers", str(len(peers)), "warn",
                            "Private network with public bootstrap peers; run 'ipfs bootstrap rm --all'",
                            "\n".join(peers))]
        return [Finding("Bootstrap peers", str(len(peers)), "ok" if private or peers else "info", None, "\n".join(peers))]

    def check_ports(self) -> List[Finding]:
        output = self.host.capture(["ss", "-tlnp"])
        if output is None:
            return [self._unavailable("Listening ports", "ss")]
        findings = []
        ports = [
            ("Swarm", self.config.SWARM_PORT),
            ("API", self.config.API_PORT),
            ("Proxy", self.config.PROXY_PORT),
        ]
        for label, port in ports:
            listeners = [line for line in output.splitlines() if re.search(rf":{port}\s", line)]
            if not listeners:
                findings.append(Finding(f"{label} port {port}", "not listening", "error" if label != "Swarm" else "warn"))
                continue
            exposed = label == "API" and any(not re.search(rf"127\.0\.0\.1:{port}\s", line) for line in listeners)
            if exposed:
                findings.append(Finding(f"{label} port {port}", "listening beyond loopback", "error",
                                        f"Bind Addresses.API to /ip4/127.0.0.1/tcp/{port}", "\n".join(listeners)))
            else:
                findings.append(Finding(f"{label} port {port}", "listening", "ok", None, "\n".join(listeners)))
        return findings

    def check_logs(self) -> List[Finding]:
        output = self.host.capture(
            ["journalctl", "-u", self.config.SERVICE_NAME, "--no-pager", "-n", "500", "-o", "short-iso"]
        )
        if output is None:
            return [self._unavailable("Journal", "journalctl")]
        lines = output.splitlines()
        findings = [Finding("Recent lines", str(len(lines)), "info", None, "\n".join(lines[-20:]))]
        for name, pattern in LOG_EXCERPTS.items():
            matched = [line for line in lines if pattern.search(line)]
            severity = "warn" if name == "errors" and matched else "info"
            hint = "Inspect 'journalctl -u ipfs' for daemon errors" if severity == "warn" else None
            findings.append(Finding(f"{name.capitalize()} lines", str(len(matched)), severity, hint,
                                    "\n".join(matched[-10:])))
        return findings

    def check_firewall(self) -> List[Finding]:
        findings = []
        output = self.host.capture(["ufw", "status"])
        if output is None:
            findings.append(self._unavailable("ufw", "ufw"))
        elif "Status: active" not in output:
            findings.append(Finding("ufw", "inactive", "info", None, output))
        else:
            rules = self.host.firewall_rules()
            for rule in self.config.firewall_rules():
                present = rule in rules
                findings.append(Finding(f"ufw {rule}", "allowed" if present else "missing",
                                        "ok" if present else "warn",
                                        None if present else f"ufw allow {rule}"))
        output = self.host.capture(["iptables", "-S", "INPUT"])
        if output is None:
            findings.append(self._unavailable("iptables", "iptables"))
        else:
            ports = (str(self.config.SWARM_PORT), str(self.config.PROXY_PORT))
            relevant = [line for line in output.splitlines() if any(f"--dport {p}" in line for p in ports)]
            findings.append(Finding("iptables relay rules", str(len(relevant)), "info", None, "\n".join(relevant)))
        return findings

    def check_proxy(self) -> List[Finding]:
        site = self.config.path(self.config.SITE_PATH)
        link = self.config.path(self.config.SITE_LINK)
        findings = [
            Finding("Virtual host", "present" if self.host.exists(site) else "missing",
                    "ok" if self.host.exists(site) else "error",
                    None if self.host.exists(site) else "Run 'reconcile install' to write the virtual host"),
            Finding("Virtual host enabled", "yes" if self.host.exists(link) else "no",
                    "ok" if self.host.exists(link) else "warn"),
        ]
        if not self.host.which("nginx"):
            findings.append(self._unavailable("nginx -t", "nginx"))
            return findings
        ok, output = self.host.nginx_test()
        findings.append(Finding("nginx -t", "passed" if ok else "failed", "ok" if ok else "error",
                                None if ok else "Fix the nginx configuration reported by 'nginx -t'", output))
        active = self.host.service_active(self.config.PROXY_SERVICE)
        findings.append(Finding("nginx active", "yes" if active else "no", "ok" if active else "error",
                                None if active else "systemctl start nginx"))
        return findings

    def check_credentials(self) -> List[Finding]:
        path = self.config.path(self.config.HTPASSWD_PATH)
        try:
            text = self.host.read_text(path)
        except OSError as e:
            return [Finding("Credential store", f"unreadable: {e}", "unavailable")]
        if text is None:
            return [Finding("Credential store", "missing", "error", "Run 'reconcile install' to create credentials")]
        users = parse_htpasswd_users(text)
        findings = [Finding("Credential entries", str(len(users)), "ok" if len(users) == 1 else "warn",
                            None if len(users) == 1 else f"Expected one entry in {self.config.HTPASSWD_PATH}")]
        mode = self.host.mode(path)
        world_readable = mode is not None and mode & 0o004
        findings.append(Finding("Credential store mode", oct(mode) if mode is not None else "unknown",
                                "warn" if world_readable else "ok",
                                f"chmod {self.config.HTPASSWD_MODE:o} {self.config.HTPASSWD_PATH}" if world_readable else None))
        return findings


def render_text(report: DiagnosticReport, verbose: bool = False) -> None:
    """Print the report as severity-coloured tables."""
    for name, findings in report.sections.items():
        print_section(name.replace("_", " ").title())
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Check", style=f"bold {NordColors.FROST_2}")
        table.add_column("Value")
        table.add_column("Status")
        for finding in findings:
            style = SEVERITY_STYLES[finding.severity]
            table.add_row(finding.label, f"[{style}]{finding.value}[/]", f"[{style}]{finding.severity.upper()}[/]")
        console.print(table)
        if verbose:
            for finding in findings:
                if finding.raw:
                    console.print(f"[dim]{finding.raw}[/dim]")

    print_section("Recommendations")
    if not report.recommendations:
        console.print(f"[{NordColors.GREEN}]No issues detected[/]")
    for recommendation in report.recommendations:
        console.print(f"[{NordColors.YELLOW}]• {recommendation}[/]")
    style = SEVERITY_STYLES[report.status]
    console.print(f"\nOverall status: [bold {style}]{report.status.upper()}[/]")
