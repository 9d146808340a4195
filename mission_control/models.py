# mission_control/models.py
"""
Pydantic models for the records exchanged between the systems and the
configuration each system is constructed with.
"""
import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing_extensions import Literal


# ==============================================================================
# Configuration
# ==============================================================================

class RateLimitConfig(BaseModel):
    """Sliding-window quota plus a one-second burst cap."""
    model_config = ConfigDict(frozen=True)

    window_ms: int = Field(60000, gt=0)
    max_requests: int = Field(100, gt=0)
    max_burst: int = Field(10, gt=0)
    key_prefix: str = "rl"
    fail_open: bool = True


class DeploymentContext(BaseModel):
    """Process-wide deployment identity and signing material. Immutable."""
    model_config = ConfigDict(frozen=True)

    service: str = "mission-control-hq"
    region_id: str = "us-east-1"
    deployment_id: Optional[str] = None
    signing_key: Optional[str] = Field(None, repr=False)
    key_id: str = "default"
    canary_percent: int = Field(0, ge=0, le=100)

    def snapshot(self) -> Dict[str, Any]:
        """Configuration safe to persist; the signing key is never included."""
        return self.model_dump(exclude={"signing_key"})


class MonitorConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    targets: List[str] = Field(default_factory=list)
    check_interval: float = Field(30.0, gt=0)
    alert_threshold: int = Field(4, ge=1)
    history_size: int = Field(10, ge=1)
    request_timeout: float = Field(10.0, gt=0)
    history_ttl: int = 3600
    source: str = "mission-control-ghost-recon"

    @model_validator(mode="after")
    def history_holds_streak(self) -> "MonitorConfig":
        if self.history_size < self.alert_threshold + 1:
            raise ValueError("history_size must exceed alert_threshold by at least one")
        return self


# ==============================================================================
# Records
# ==============================================================================

class RateLimitResult(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: Optional[int] = None


class HeartbeatMetrics(BaseModel):
    requests: int = 0
    errors: int = 0
    latency_p50: float = 0.0
    latency_p99: float = 0.0


class HeartbeatRecord(BaseModel):
    timestamp: int
    service: str
    region: str
    deployment: str
    status: Literal["healthy", "degraded", "critical"] = "healthy"
    metrics: Optional[HeartbeatMetrics] = None

    def canonical(self) -> str:
        """Stable serialization: sorted keys, compact separators, no null fields."""
        return json.dumps(self.model_dump(exclude_none=True), sort_keys=True, separators=(",", ":"))


class FuseLease(BaseModel):
    status: Literal["active", "inactive"]
    timestamp: int
    region: str
    ttl: int


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: int
    action: str
    actor: str
    resource: str
    result: Literal["success", "failure"]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RollbackCheckpoint(BaseModel):
    id: str
    timestamp: int
    deployment: str
    region: str
    config: Dict[str, Any]


class HealthCheckResult(BaseModel):
    success: bool
    status: Optional[int] = None
    signature: Optional[str] = None
    verified: Optional[bool] = None
    error: Optional[str] = None
    error_kind: Optional[Literal["http", "network", "timeout", "signature", "payload", "internal"]] = None
    timestamp: int
