"""Tests for SystemHost output parsing, fed with captured command output."""

import subprocess
from pathlib import Path

from relay_reconcile.host import SystemHost

UFW_INACTIVE = "Status: inactive\n"

UFW_ACTIVE = """Status: active

To                         Action      From
--                         ------      ----
22/tcp                     ALLOW       Anywhere
5443/tcp                   ALLOW       Anywhere
4001/udp                   ALLOW       Anywhere
8080/tcp                   DENY        Anywhere
5443/tcp (v6)              ALLOW       Anywhere (v6)
"""

UFW_ADDED = """Added user rules (see 'ufw status' for running firewall):
ufw allow 22/tcp
ufw allow 5443/tcp
ufw allow 4001/tcp
ufw allow 4001/udp
ufw deny 8080/tcp
"""

UFW_ADDED_NONE = "Added user rules (see 'ufw status' for running firewall):\n(None)\n"


class ScriptedHost(SystemHost):
    """SystemHost whose commands answer from a table of canned outputs."""

    def __init__(self, outputs):
        super().__init__(timeout=5)
        self.outputs = outputs
        self.commands = []

    def which(self, tool):
        return f"/usr/bin/{tool}"

    def run(self, cmd, check=True, input_text=None, env=None, timeout=None):
        cmd = [str(part) for part in cmd]
        self.commands.append(cmd)
        stdout = self.outputs.get(" ".join(cmd), "")
        return subprocess.CompletedProcess(cmd, 0, stdout, "")


def test_firewall_rules_read_while_ufw_inactive():
    host = ScriptedHost({"ufw status": UFW_INACTIVE, "ufw show added": UFW_ADDED})
    assert host.firewall_rules() == {"22/tcp", "5443/tcp", "4001/tcp", "4001/udp"}


def test_firewall_rules_read_from_active_status():
    host = ScriptedHost({"ufw status": UFW_ACTIVE, "ufw show added": UFW_ADDED_NONE})
    assert host.firewall_rules() == {"22/tcp", "5443/tcp", "4001/udp"}


def test_firewall_rules_empty_when_nothing_added():
    host = ScriptedHost({"ufw status": UFW_INACTIVE, "ufw show added": UFW_ADDED_NONE})
    assert host.firewall_rules() == set()


def test_ipfs_runs_non_interactively_as_service_user():
    host = ScriptedHost({})
    host.ipfs(["swarm", "peers"], "ipfs", Path("/var/lib/ipfs"), Path("/usr/local/bin/ipfs"))

    assert host.commands == [[
        "sudo", "-n", "-u", "ipfs", "-H", "env", "IPFS_PATH=/var/lib/ipfs",
        "/usr/local/bin/ipfs", "swarm", "peers",
    ]]
