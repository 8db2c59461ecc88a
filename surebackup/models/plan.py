"""
Recovery plan: boot tiers and per-VM verification options.
"""
from pathlib import Path
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


class VerificationOptions(BaseModel):
    """Which checks to run against a recovered VM."""
    heartbeat: bool = Field(default=True, description="Power state + guest agent check")
    ping: bool = Field(default=True, description="ICMP reachability check")
    ping_attempts: int = Field(default=4, ge=1, le=50)
    ports: List[int] = Field(default_factory=list, description="TCP ports that must accept connections")
    dns: bool = Field(default=True, description="Reverse DNS lookup of the VM address")
    http_endpoints: List[str] = Field(default_factory=list, description="URLs authored from the VM's perspective")
    script_path: Optional[str] = Field(default=None, description="External script; exit code 0 passes")
    script_args: List[str] = Field(default_factory=list)

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: List[int]) -> List[int]:
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"Invalid TCP port: {port}")
        return v


class TargetOptions(BaseModel):
    """Per-VM plan entry."""
    name: str = Field(min_length=1)
    tier: Optional[int] = Field(default=None, ge=0, description="Boot tier; None runs in the last tier")
    verification: Optional[VerificationOptions] = None


class RecoveryPlan(BaseModel):
    """Boot order and verification settings for a run."""
    defaults: VerificationOptions = Field(default_factory=VerificationOptions)
    targets: List[TargetOptions] = Field(default_factory=list)

    @field_validator("targets")
    @classmethod
    def unique_names(cls, v: List[TargetOptions]) -> List[TargetOptions]:
        seen = set()
        for target in v:
            key = target.name.lower()
            if key in seen:
                raise ValueError(f"VM '{target.name}' appears more than once in the plan")
            seen.add(key)
        return v

    @classmethod
    def load(cls, path: Path) -> "RecoveryPlan":
        """Load a plan from a JSON file."""
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))

    def _entry(self, vm_name: str) -> Optional[TargetOptions]:
        for target in self.targets:
            if target.name.lower() == vm_name.lower():
                return target
        return None

    def tier_for(self, vm_name: str) -> Optional[int]:
        entry = self._entry(vm_name)
        return entry.tier if entry else None

    def verification_for(self, vm_name: str) -> VerificationOptions:
        entry = self._entry(vm_name)
        if entry and entry.verification is not None:
            return entry.verification
        return self.defaults

    def tier_map(self) -> Dict[str, int]:
        return {t.name: t.tier for t in self.targets if t.tier is not None}
