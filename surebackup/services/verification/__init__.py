"""
Verification checks run against recovered VMs.
"""
from surebackup.services.verification.base import VerificationCheck, VerificationTarget
from surebackup.services.verification.checks import (
    DnsCheck,
    HeartbeatCheck,
    HttpCheck,
    PingCheck,
    PortCheck,
    ScriptCheck,
    icmp_ping,
    rewrite_url,
)
from surebackup.services.verification.runner import VerificationRunner

__all__ = [
    "DnsCheck",
    "HeartbeatCheck",
    "HttpCheck",
    "PingCheck",
    "PortCheck",
    "ScriptCheck",
    "VerificationCheck",
    "VerificationRunner",
    "VerificationTarget",
    "icmp_ping",
    "rewrite_url",
]
