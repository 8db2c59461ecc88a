"""
Verification checks run against recovered VMs.
"""
import logging
import os
import re
import socket
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit, urlunsplit

import requests
import urllib3

from surebackup.services.api.entities import PowerState
from surebackup.services.hypervisor.vms import VmResolver
from surebackup.services.verification.base import VerificationCheck, VerificationTarget

logger = logging.getLogger(__name__)

_LATENCY_RE = re.compile(r"time[=<]\s*([\d.]+)\s*ms")
LOOPBACK_HOSTS = ("localhost", "127.0.0.1")

# Returns round-trip latency in ms, or None when no reply came back
Pinger = Callable[[str, float], Optional[float]]


def icmp_ping(address: str, timeout: float) -> Optional[float]:
    """
    Send one ICMP echo request with the system ``ping`` binary.

    Args:
        address: Host to ping
        timeout: Seconds to wait for the reply

    Returns:
        Latency in milliseconds, or None if the host did not answer
    """
    cmd = ["ping", "-c", "1", "-W", str(max(1, int(round(timeout)))), address]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout + 5
        )
    except subprocess.TimeoutExpired:
        return None

    if result.returncode != 0:
        return None
    match = _LATENCY_RE.search(result.stdout)
    return float(match.group(1)) if match else 0.0


def rewrite_url(url: str, address: str) -> str:
    """
    Point a URL authored from the VM's own perspective at the recovered VM.

    ``localhost`` and ``127.0.0.1`` are replaced by the VM address; scheme,
    port, path and query are kept. IPv6 addresses are bracketed. Any other
    host is left unchanged.
    """
    parts = urlsplit(url)
    if (parts.hostname or "").lower() not in LOOPBACK_HOSTS:
        return url

    netloc = f"[{address}]" if ":" in address else address
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class HeartbeatCheck(VerificationCheck):
    """Pass iff the VM is powered on and its guest agent is enabled."""

    name = "Heartbeat"
    requires_address = False

    def __init__(self, vm_resolver: VmResolver):
        self.vm_resolver = vm_resolver

    def execute(self, target: VerificationTarget) -> Tuple[bool, str]:
        if not target.vm_id:
            return False, "Recovered VM id is unknown"

        vm = self.vm_resolver.get_vm(target.vm_id)
        powered_on = vm.power_state == PowerState.ON
        agent = "guest tools enabled" if vm.guest_tools_enabled else "guest tools not enabled"
        detail = f"Power state {vm.power_state.value}, {agent}"
        return powered_on and vm.guest_tools_enabled, detail


class PingCheck(VerificationCheck):
    """Pass iff at least one of N echo requests is answered."""

    name = "Ping"

    def __init__(self, attempts: int = 4, timeout: float = 2, pinger: Optional[Pinger] = None):
        self.attempts = attempts
        self.timeout = timeout
        self.pinger = pinger or icmp_ping

    def execute(self, target: VerificationTarget) -> Tuple[bool, str]:
        latencies = []
        for _ in range(self.attempts):
            latency = self.pinger(target.address, self.timeout)
            if latency is not None:
                latencies.append(latency)

        if not latencies:
            return False, f"No reply from {target.address} after {self.attempts} attempt(s)"

        average = sum(latencies) / len(latencies)
        return True, (
            f"{len(latencies)}/{self.attempts} replies from {target.address}, "
            f"avg latency {average:.1f} ms"
        )


class PortCheck(VerificationCheck):
    """Pass iff a TCP connection to the port is accepted within the timeout."""

    def __init__(self, port: int, timeout: float = 5):
        self.port = port
        self.timeout = timeout
        self.name = f"Port {port}"

    def execute(self, target: VerificationTarget) -> Tuple[bool, str]:
        try:
            with socket.create_connection((target.address, self.port), timeout=self.timeout):
                pass
        except OSError as e:
            return False, f"Connection to {target.address}:{self.port} failed: {e}"
        return True, f"{target.address}:{self.port} accepted the connection"


class DnsCheck(VerificationCheck):
    """Reverse lookup of the VM address. Lookup errors are failures, never raised."""

    name = "DNS"

    def execute(self, target: VerificationTarget) -> Tuple[bool, str]:
        try:
            hostname, _, _ = socket.gethostbyaddr(target.address)
        except (socket.herror, socket.gaierror, OSError) as e:
            return False, f"Reverse lookup of {target.address} failed: {e}"
        return True, f"{target.address} resolves to {hostname}"


class HttpCheck(VerificationCheck):
    """Pass iff the endpoint answers with a 2xx status."""

    def __init__(
        self,
        url: str,
        timeout: float = 10,
        verify_tls: bool = False,
        session: Optional[requests.Session] = None
    ):
        self.url = url
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.session = session or requests.Session()
        self.name = f"HTTP {url}"

        if not verify_tls:
            # Recovered VMs present certificates for their production names
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def execute(self, target: VerificationTarget) -> Tuple[bool, str]:
        url = rewrite_url(self.url, target.address)

        try:
            response = self.session.get(
                url, timeout=self.timeout, verify=self.verify_tls, allow_redirects=False
            )
        except requests.exceptions.RequestException as e:
            return False, f"GET {url} failed: {e}"

        detail = f"GET {url} returned HTTP {response.status_code}"
        return 200 <= response.status_code < 300, detail


class ScriptCheck(VerificationCheck):
    """
    Run an external script; exit code 0 passes.

    The script receives the VM under test in ``SUREBACKUP_VM_NAME``,
    ``SUREBACKUP_VM_ID`` and ``SUREBACKUP_VM_IP``.
    """

    name = "Script"
    requires_address = False

    def __init__(self, script_path: str, args: Sequence[str] = (), timeout: float = 300):
        self.script_path = Path(script_path)
        self.args = list(args)
        self.timeout = timeout
        self.name = f"Script {self.script_path.name}"

    def _command(self) -> List[str]:
        path = str(self.script_path)
        if os.access(path, os.X_OK):
            return [path, *self.args]
        if self.script_path.suffix == ".py":
            return [sys.executable, path, *self.args]
        return ["/bin/sh", path, *self.args]

    def execute(self, target: VerificationTarget) -> Tuple[bool, str]:
        if not self.script_path.is_file():
            return False, f"Script not found: {self.script_path}"

        env = dict(os.environ)
        env.update({
            "SUREBACKUP_VM_NAME": target.vm_name,
            "SUREBACKUP_VM_ID": target.vm_id or "",
            "SUREBACKUP_VM_IP": target.address or "",
        })

        try:
            result = subprocess.run(
                self._command(),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env
            )
        except subprocess.TimeoutExpired:
            return False, f"Script timed out after {self.timeout}s"

        output = (result.stdout or result.stderr or "").strip().splitlines()
        last_line = output[-1] if output else ""
        detail = f"Exit code {result.returncode}"
        if last_line:
            detail = f"{detail}: {last_line}"
        return result.returncode == 0, detail
