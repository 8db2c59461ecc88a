"""
Verification test runner.
"""
import logging
from typing import List, Optional

import requests

from surebackup.models.plan import VerificationOptions
from surebackup.models.session import TestResult
from surebackup.services.hypervisor.vms import VmResolver
from surebackup.services.verification.base import VerificationCheck, VerificationTarget
from surebackup.services.verification.checks import (
    DnsCheck,
    HeartbeatCheck,
    HttpCheck,
    Pinger,
    PingCheck,
    PortCheck,
    ScriptCheck,
)

logger = logging.getLogger(__name__)


class VerificationRunner:
    """Builds the configured checks for a VM and runs all of them."""

    def __init__(
        self,
        vm_resolver: VmResolver,
        ping_timeout: float = 2,
        port_timeout: float = 5,
        http_timeout: float = 10,
        script_timeout: float = 300,
        http_verify_tls: bool = False,
        pinger: Optional[Pinger] = None,
        http_session: Optional[requests.Session] = None
    ):
        self.vm_resolver = vm_resolver
        self.ping_timeout = ping_timeout
        self.port_timeout = port_timeout
        self.http_timeout = http_timeout
        self.script_timeout = script_timeout
        self.http_verify_tls = http_verify_tls
        self.pinger = pinger
        self.http_session = http_session

    def build_checks(self, options: VerificationOptions) -> List[VerificationCheck]:
        """Checks enabled by the options, in a stable order."""
        checks: List[VerificationCheck] = []

        if options.heartbeat:
            checks.append(HeartbeatCheck(self.vm_resolver))
        if options.ping:
            checks.append(PingCheck(options.ping_attempts, self.ping_timeout, self.pinger))
        for port in options.ports:
            checks.append(PortCheck(port, self.port_timeout))
        if options.dns:
            checks.append(DnsCheck())
        for url in options.http_endpoints:
            checks.append(HttpCheck(url, self.http_timeout, self.http_verify_tls, self.http_session))
        if options.script_path:
            checks.append(ScriptCheck(options.script_path, options.script_args, self.script_timeout))

        return checks

    def run(self, target: VerificationTarget, options: VerificationOptions) -> List[TestResult]:
        """
        Run every configured check against one VM.

        A failing check never stops its siblings. The VM passes only when
        every returned result passed.

        Args:
            target: Recovered VM to test
            options: Checks to run

        Returns:
            One TestResult per check
        """
        checks = self.build_checks(options)
        if not checks:
            logger.warning(f"No verification checks are enabled for {target.vm_name}")
            return []

        logger.info(f"Running {len(checks)} check(s) against {target.vm_name} ({target.address or 'no address'})")
        results = [check.run(target) for check in checks]

        passed = sum(1 for r in results if r.passed)
        logger.info(f"{target.vm_name}: {passed}/{len(results)} check(s) passed")
        return results

    @staticmethod
    def verdict(results: List[TestResult]) -> bool:
        """A VM passes iff it ran at least one check and all of them passed."""
        return bool(results) and all(r.passed for r in results)
