"""
Tests for verification checks and the runner.
"""

import socket
import subprocess
from unittest.mock import MagicMock, patch

import pytest
import requests

from surebackup.models.plan import VerificationOptions
from surebackup.services.api.entities import PowerState
from surebackup.services.verification import (
    DnsCheck,
    HeartbeatCheck,
    HttpCheck,
    PingCheck,
    PortCheck,
    ScriptCheck,
    VerificationRunner,
    VerificationTarget,
    rewrite_url,
)
from surebackup.services.verification.checks import icmp_ping

TARGET = VerificationTarget(vm_name="web01", vm_id="vm-1", address="10.0.1.50")


class TestUrlRewrite:

    def test_localhost_is_replaced_by_vm_address(self):
        assert rewrite_url("http://localhost/health", "10.0.1.50") == "http://10.0.1.50/health"

    def test_loopback_ip_keeps_port_and_query(self):
        assert rewrite_url("https://127.0.0.1:8443/api?x=1", "10.0.1.50") == "https://10.0.1.50:8443/api?x=1"

    def test_other_hosts_are_untouched(self):
        assert rewrite_url("http://intranet.example/health", "10.0.1.50") == "http://intranet.example/health"

    def test_ipv6_address_is_bracketed(self):
        assert rewrite_url("http://localhost:8080/x", "fd00::5") == "http://[fd00::5]:8080/x"
        assert rewrite_url("http://127.0.0.1/health", "fd00::5") == "http://[fd00::5]/health"


class TestHeartbeat:

    def test_passes_when_on_with_guest_tools(self, fake_adapter, vm_resolver):
        fake_adapter.add_vm("vm-1", "web01", power_state=PowerState.ON, guest_tools=True)

        result = HeartbeatCheck(vm_resolver).run(TARGET)

        assert result.passed
        assert result.test_name == "Heartbeat"

    def test_fails_without_guest_tools(self, fake_adapter, vm_resolver):
        fake_adapter.add_vm("vm-1", "web01", power_state=PowerState.ON, guest_tools=False)

        assert not HeartbeatCheck(vm_resolver).run(TARGET).passed

    def test_api_errors_become_failures(self, vm_resolver):
        result = HeartbeatCheck(vm_resolver).run(TARGET)

        assert not result.passed
        assert "does not exist" in result.detail


class TestPing:

    def test_one_reply_is_enough(self):
        replies = iter([None, None, 0.8, None])

        result = PingCheck(attempts=4, pinger=lambda address, timeout: next(replies)).run(TARGET)

        assert result.passed
        assert "1/4 replies" in result.detail
        assert "0.8 ms" in result.detail

    def test_no_reply_fails(self):
        result = PingCheck(attempts=2, pinger=lambda address, timeout: None).run(TARGET)

        assert not result.passed

    def test_missing_address_fails_clearly(self):
        result = PingCheck(pinger=lambda address, timeout: 1.0).run(VerificationTarget("web01", "vm-1"))

        assert not result.passed
        assert result.detail == "VM did not report an IP address"

    def test_icmp_ping_parses_latency(self):
        completed = subprocess.CompletedProcess(
            args=[], returncode=0, stdout="64 bytes from 10.0.1.50: icmp_seq=1 ttl=64 time=0.512 ms\n"
        )
        with patch("surebackup.services.verification.checks.subprocess.run", return_value=completed):
            assert icmp_ping("10.0.1.50", 2) == pytest.approx(0.512)

    def test_icmp_ping_no_reply(self):
        completed = subprocess.CompletedProcess(args=[], returncode=1, stdout="")
        with patch("surebackup.services.verification.checks.subprocess.run", return_value=completed):
            assert icmp_ping("10.0.1.50", 2) is None


class TestPort:

    def test_refused_connection_fails(self):
        with patch("surebackup.services.verification.checks.socket.create_connection",
                   side_effect=ConnectionRefusedError("refused")):
            result = PortCheck(443, timeout=1).run(TARGET)

        assert not result.passed
        assert "10.0.1.50:443" in result.detail

    def test_accepted_connection_passes(self):
        with patch("surebackup.services.verification.checks.socket.create_connection") as connect:
            result = PortCheck(443, timeout=1).run(TARGET)

        connect.assert_called_once_with(("10.0.1.50", 443), timeout=1)
        assert result.passed
        assert result.test_name == "Port 443"


class TestDns:

    def test_lookup_failure_never_raises(self):
        with patch("surebackup.services.verification.checks.socket.gethostbyaddr",
                   side_effect=socket.herror(1, "Unknown host")):
            result = DnsCheck().run(TARGET)

        assert not result.passed

    def test_lookup_success(self):
        with patch("surebackup.services.verification.checks.socket.gethostbyaddr",
                   return_value=("web01.lab.local", [], ["10.0.1.50"])):
            result = DnsCheck().run(TARGET)

        assert result.passed
        assert "web01.lab.local" in result.detail


class TestHttp:

    def test_probe_uses_rewritten_url(self):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=200)

        result = HttpCheck("http://localhost/health", session=session).run(TARGET)

        assert session.get.call_args.args[0] == "http://10.0.1.50/health"
        assert result.passed

    @pytest.mark.parametrize("status", [301, 404, 500])
    def test_non_2xx_fails(self, status):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=status)

        assert not HttpCheck("http://localhost/", session=session).run(TARGET).passed

    def test_connection_error_fails(self):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.ConnectionError("refused")

        result = HttpCheck("http://localhost/", session=session).run(TARGET)

        assert not result.passed
        assert "refused" in result.detail


class TestScript:

    def test_missing_script_fails(self, tmp_path):
        result = ScriptCheck(str(tmp_path / "nope.sh")).run(TARGET)

        assert not result.passed
        assert "Script not found" in result.detail

    def test_exit_code_decides(self, tmp_path):
        script = tmp_path / "check.sh"
        script.write_text("#!/bin/sh\necho checked\n")
        completed = subprocess.CompletedProcess(args=[], returncode=3, stdout="db offline\n", stderr="")

        with patch("surebackup.services.verification.checks.subprocess.run", return_value=completed) as run:
            result = ScriptCheck(str(script), ["--fast"]).run(TARGET)

        assert not result.passed
        assert result.detail == "Exit code 3: db offline"
        env = run.call_args.kwargs["env"]
        assert env["SUREBACKUP_VM_IP"] == "10.0.1.50"
        assert run.call_args.args[0][-1] == "--fast"


class TestRunner:

    def test_all_checks_run_even_after_failures(self, fake_adapter, vm_resolver):
        fake_adapter.add_vm("vm-1", "web01", power_state=PowerState.OFF)
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=200)
        runner = VerificationRunner(vm_resolver, pinger=lambda address, timeout: None, http_session=session)
        options = VerificationOptions(dns=False, http_endpoints=["http://localhost/health"])

        results = runner.run(TARGET, options)

        assert [r.test_name for r in results] == ["Heartbeat", "Ping", "HTTP http://localhost/health"]
        assert [r.passed for r in results] == [False, False, True]
        assert VerificationRunner.verdict(results) is False

    def test_verdict_requires_results(self):
        assert VerificationRunner.verdict([]) is False

    def test_build_checks_follows_options(self, vm_resolver):
        runner = VerificationRunner(vm_resolver)
        options = VerificationOptions(heartbeat=False, ping=False, dns=False, ports=[22, 443],
                                      script_path="/opt/check.sh")

        names = [check.name for check in runner.build_checks(options)]

        assert names == ["Port 22", "Port 443", "Script check.sh"]
