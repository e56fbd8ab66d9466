"""
Host access layer.

``SystemHost`` is the only place that touches the machine: it runs external
tools and reads/writes files. The planners never call it directly; the
reconciler and probes receive an instance, which lets tests substitute an
in-memory host.
"""

import grp
import logging
import os
import platform
import pwd
import re
import shutil
import socket
import subprocess
import tempfile
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

from rich.progress import BarColumn, DownloadColumn, Progress, SpinnerColumn, TextColumn, TimeRemainingColumn

from relay_reconcile.errors import CommandError, DependencyMissingError, DownloadError
from relay_reconcile.ui import NordColors, console

logger = logging.getLogger("relay_reconcile")

OPERATION_TIMEOUT = 300
CHUNK_SIZE = 64 * 1024
UFW_PORT_RULE = re.compile(r"\d+/(tcp|udp)")
UFW_ADDED_RULE = re.compile(r"^ufw allow (\d+/(?:tcp|udp))(\s|$)")


class SystemHost:
    """Run commands and manipulate files on the local machine."""

    def __init__(self, timeout: int = OPERATION_TIMEOUT):
        self.timeout = timeout

    # ------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------
    def run(
        self,
        cmd: Sequence[str],
        check: bool = True,
        input_text: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        """
        Execute a command and capture its output.

        Raises:
            DependencyMissingError: The executable does not exist.
            CommandError: Non-zero exit (when check is set) or timeout.
        """
        cmd = [str(part) for part in cmd]
        logger.debug(f"Running command: {' '.join(cmd)}")
        run_env = os.environ.copy()
        if env:
            run_env.update(env)
        try:
            result = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                env=run_env,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError:
            raise DependencyMissingError(cmd[0])
        except subprocess.TimeoutExpired:
            raise CommandError(cmd, None, f"timed out after {timeout or self.timeout} seconds")
        if check and result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr or "")
        return result

    def capture(self, cmd: Sequence[str], timeout: int = 30) -> Optional[str]:
        """Return stdout of a read-only command, or None when the tool is missing or fails."""
        if not self.which(cmd[0]):
            return None
        try:
            result = self.run(cmd, check=False, timeout=timeout)
        except CommandError as e:
            logger.debug(f"Probe command failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def require(self, tool: str, purpose: str = "") -> None:
        if not self.which(tool):
            raise DependencyMissingError(tool, purpose)

    # ------------------------------------------------------------
    # Platform probes
    # ------------------------------------------------------------
    def is_root(self) -> bool:
        return os.geteuid() == 0

    def machine(self) -> str:
        return platform.machine()

    def system(self) -> str:
        return platform.system()

    def hostname(self) -> str:
        return socket.gethostname()

    def kernel(self) -> str:
        return platform.release()

    def primary_ipv4(self) -> Optional[str]:
        """Return the source address of the default route, falling back to hostname -I."""
        output = self.capture(["ip", "-4", "route", "get", "1.1.1.1"])
        if output:
            match = re.search(r"\bsrc\s+(\d{1,3}(?:\.\d{1,3}){3})", output)
            if match:
                return match.group(1)
        output = self.capture(["hostname", "-I"])
        if output:
            for token in output.split():
                if re.fullmatch(r"\d{1,3}(?:\.\d{1,3}){3}", token):
                    return token
        return None

    # ------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------
    def exists(self, path: Path) -> bool:
        return os.path.lexists(str(path))

    def is_dir(self, path: Path) -> bool:
        return Path(path).is_dir() and not Path(path).is_symlink()

    def read_text(self, path: Path) -> Optional[str]:
        try:
            return Path(path).read_text()
        except (FileNotFoundError, NotADirectoryError):
            return None

    def read_bytes(self, path: Path) -> Optional[bytes]:
        try:
            return Path(path).read_bytes()
        except (FileNotFoundError, NotADirectoryError):
            return None

    def write_file(self, path: Path, content: Union[str, bytes], mode: int = 0o644) -> None:
        """Atomically replace a file with the given content and mode."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode() if isinstance(content, str) else content
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, str(path))
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def install_file(self, source: Path, dest: Path, mode: int = 0o755) -> None:
        """Copy a file into place atomically so a running executable can be replaced."""
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(dest.parent), prefix=f".{dest.name}.")
        os.close(fd)
        try:
            shutil.copyfile(str(source), tmp_name)
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, str(dest))
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def mkdir(self, path: Path, mode: int = 0o755) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)
        os.chmod(str(path), mode)

    def mode(self, path: Path) -> Optional[int]:
        try:
            return os.stat(str(path)).st_mode & 0o7777
        except FileNotFoundError:
            return None

    def chmod(self, path: Path, mode: int) -> None:
        os.chmod(str(path), mode)

    def owner(self, path: Path) -> Optional[Tuple[str, str]]:
        try:
            st = os.stat(str(path))
        except FileNotFoundError:
            return None
        try:
            user = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            user = str(st.st_uid)
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        return user, group

    def chown(self, path: Path, user: str, group: str, recursive: bool = False) -> None:
        # owner() reports unnamed ids as digit strings
        user = int(user) if user.isdigit() else user
        group = int(group) if group.isdigit() else group
        shutil.chown(str(path), user, group)
        if recursive and Path(path).is_dir():
            for base, dirs, files in os.walk(str(path)):
                for name in dirs + files:
                    full = os.path.join(base, name)
                    if not os.path.islink(full):
                        shutil.chown(full, user, group)

    def symlink(self, target: Path, link: Path) -> None:
        link = Path(link)
        link.parent.mkdir(parents=True, exist_ok=True)
        if os.path.lexists(str(link)):
            if link.is_symlink() and os.readlink(str(link)) == str(target):
                return
            link.unlink()
        os.symlink(str(target), str(link))

    def link_target(self, link: Path) -> Optional[str]:
        try:
            return os.readlink(str(link))
        except (FileNotFoundError, OSError):
            return None

    def remove(self, path: Path) -> bool:
        """Remove a file, symlink or directory tree. Returns False if it was already absent."""
        path = Path(path)
        if not os.path.lexists(str(path)):
            return False
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(str(path))
        else:
            path.unlink()
        return True

    # ------------------------------------------------------------
    # Packages
    # ------------------------------------------------------------
    def package_installed(self, package: str) -> bool:
        output = self.capture(["dpkg-query", "-W", "-f=${Status}", package])
        return bool(output) and "install ok installed" in output

    def install_packages(self, packages: List[str]) -> None:
        self.require("apt-get", "package installation")
        env = {"DEBIAN_FRONTEND": "noninteractive"}
        self.run(["apt-get", "update", "-qq"], env=env)
        self.run(["apt-get", "install", "-y"] + list(packages), env=env)

    def purge_packages(self, packages: List[str]) -> None:
        self.require("apt-get", "package removal")
        env = {"DEBIAN_FRONTEND": "noninteractive"}
        self.run(["apt-get", "-y", "purge"] + list(packages), env=env)
        self.run(["apt-get", "-y", "autoremove", "--purge"], env=env)

    # ------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------
    def user_exists(self, name: str) -> bool:
        try:
            pwd.getpwnam(name)
            return True
        except KeyError:
            return False

    def group_exists(self, name: str) -> bool:
        try:
            grp.getgrnam(name)
            return True
        except KeyError:
            return False

    def create_group(self, name: str) -> None:
        self.run(["groupadd", "-r", name])

    def create_user(self, name: str, group: str, home: Path) -> None:
        self.run(["useradd", "-r", "-d", str(home), "-g", group, "-s", "/usr/sbin/nologin", name])

    def delete_user(self, name: str) -> None:
        self.run(["userdel", name])

    def delete_group(self, name: str) -> None:
        self.run(["groupdel", name])

    # ------------------------------------------------------------
    # Services and processes
    # ------------------------------------------------------------
    def service_active(self, name: str) -> bool:
        if not self.which("systemctl"):
            return False
        return self.run(["systemctl", "is-active", "--quiet", name], check=False).returncode == 0

    def service_enabled(self, name: str) -> bool:
        if not self.which("systemctl"):
            return False
        return self.run(["systemctl", "is-enabled", "--quiet", name], check=False).returncode == 0

    def systemctl(self, action: str, name: str) -> None:
        self.run(["systemctl", action, name])

    def daemon_reload(self) -> None:
        self.run(["systemctl", "daemon-reload"])

    def processes_running(self, name: str) -> bool:
        if not self.which("pgrep"):
            return False
        return self.run(["pgrep", "-x", name], check=False).returncode == 0

    def kill_processes(self, name: str) -> None:
        result = self.run(["pkill", "-9", "-x", name], check=False)
        # pkill exits 1 when nothing matched
        if result.returncode not in (0, 1):
            raise CommandError(["pkill", "-9", "-x", name], result.returncode, result.stderr)

    def wait_for(self, predicate, timeout: float, interval: float = 1.0) -> bool:
        """Poll predicate until it returns True or the timeout expires."""
        deadline = time.monotonic() + timeout
        while True:
            if predicate():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(interval)

    # ------------------------------------------------------------
    # Kubo
    # ------------------------------------------------------------
    def ipfs_version(self, binary: Path) -> Optional[str]:
        if not os.path.exists(str(binary)):
            return None
        try:
            result = self.run([str(binary), "--version"], check=False, timeout=30)
        except (CommandError, DependencyMissingError, PermissionError):
            return None
        match = re.search(r"version\s+v?(\d+\.\d+\.\d+\S*)", result.stdout or "")
        return match.group(1) if match else None

    def ipfs(self, args: List[str], user: str, repo: Path, binary: Path, check: bool = True) -> subprocess.CompletedProcess:
        """Run an ipfs subcommand as the service user against the repository."""
        # -n: fail instead of prompting for a password when not root
        cmd = ["sudo", "-n", "-u", user, "-H", "env", f"IPFS_PATH={repo}", str(binary)] + list(args)
        return self.run(cmd, check=check)

    # ------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------
    def download(self, url: str, dest: Path, timeout: int) -> None:
        """Stream a URL to dest with a progress bar. Raises DownloadError on any failure."""
        logger.info(f"Downloading {url}")
        try:
            with urllib.request.urlopen(url, timeout=timeout) as response:
                total = int(response.headers.get("Content-Length", 0) or 0)
                with Progress(
                    SpinnerColumn(style=f"bold {NordColors.FROST_1}"),
                    TextColumn(f"[bold {NordColors.FROST_2}]Downloading"),
                    BarColumn(bar_width=40, style=NordColors.FROST_4, complete_style=NordColors.FROST_2),
                    DownloadColumn(),
                    TimeRemainingColumn(),
                    console=console,
                    transient=True,
                ) as progress:
                    task = progress.add_task("download", total=total or None)
                    with open(str(dest), "wb") as handle:
                        while True:
                            chunk = response.read(CHUNK_SIZE)
                            if not chunk:
                                break
                            handle.write(chunk)
                            progress.advance(task, len(chunk))
        except (urllib.error.URLError, OSError, ValueError) as e:
            if os.path.exists(str(dest)):
                os.unlink(str(dest))
            raise DownloadError(f"Download of {url} failed: {e}")

    def fetch_text(self, url: str, timeout: int) -> Optional[str]:
        """Fetch a small text document; None when it is not available."""
        try:
            with urllib.request.urlopen(url, timeout=timeout) as response:
                return response.read().decode("utf-8", errors="replace")
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.debug(f"Could not fetch {url}: {e}")
            return None

    # ------------------------------------------------------------
    # TLS and credentials
    # ------------------------------------------------------------
    def generate_certificate(self, cert: Path, key: Path, common_name: str, days: int, bits: int) -> None:
        self.require("openssl", "certificate generation")
        Path(cert).parent.mkdir(parents=True, exist_ok=True)
        Path(key).parent.mkdir(parents=True, exist_ok=True)
        self.run([
            "openssl", "req", "-x509", "-nodes",
            "-newkey", f"rsa:{bits}",
            "-days", str(days),
            "-subj", f"/CN={common_name}",
            "-addext", f"subjectAltName = DNS:{common_name}",
            "-keyout", str(key),
            "-out", str(cert),
        ])

    def htpasswd_write(self, path: Path, user: str, password: str, cost: int) -> None:
        """Create the credential store holding a single bcrypt entry."""
        self.require("htpasswd", "credential hashing")
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.run(["htpasswd", "-c", "-i", "-B", "-C", str(cost), str(path), user], input_text=password)

    def htpasswd_verify(self, path: Path, user: str, password: str) -> Optional[bool]:
        if not self.which("htpasswd"):
            return None
        result = self.run(["htpasswd", "-v", "-i", str(path), user], check=False, input_text=password)
        return result.returncode == 0

    def nginx_test(self) -> Tuple[bool, str]:
        self.require("nginx", "configuration validation")
        result = self.run(["nginx", "-t"], check=False)
        return result.returncode == 0, (result.stderr or result.stdout or "").strip()

    # ------------------------------------------------------------
    # Firewall
    # ------------------------------------------------------------
    def firewall_available(self) -> bool:
        return self.which("ufw") is not None

    def firewall_rules(self) -> Set[str]:
        """
        Allowed port rules known to ufw.

        ``ufw status`` lists nothing while the firewall is inactive, so the
        added user rules are read as well.
        """
        rules = set()
        for line in (self.capture(["ufw", "show", "added"]) or "").splitlines():
            match = UFW_ADDED_RULE.match(line.strip())
            if match:
                rules.add(match.group(1))
        for line in (self.capture(["ufw", "status"]) or "").splitlines():
            if "ALLOW" not in line or "(v6)" in line:
                continue
            token = line.split()[0]
            if UFW_PORT_RULE.fullmatch(token):
                rules.add(token)
        return rules

    def firewall_allow(self, rule: str) -> None:
        self.run(["ufw", "allow", rule])

    def firewall_delete(self, rule: str) -> None:
        self.run(["ufw", "--force", "delete", "allow", rule])

    def iptables_available(self) -> bool:
        return self.which("iptables") is not None

    def iptables_rule_present(self, rule: str) -> bool:
        port, proto = rule.split("/")
        result = self.run(
            ["iptables", "-C", "INPUT", "-p", proto, "--dport", port, "-j", "ACCEPT"], check=False
        )
        return result.returncode == 0

    def iptables_delete(self, rule: str) -> None:
        port, proto = rule.split("/")
        self.run(["iptables", "-D", "INPUT", "-p", proto, "--dport", port, "-j", "ACCEPT"])
