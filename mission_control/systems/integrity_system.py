# mission_control/systems/integrity_system.py
import hashlib
import hmac
import json
import logging
import secrets
import string
import threading
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Union

from flask import Flask, Response
from jinja2 import Environment, PackageLoader, select_autoescape
from pydantic import ValidationError

from mission_control.exceptions import StoreUnavailableError
from mission_control.kv_store import KeyValueStore
from mission_control.models import (
    AuditEntry,
    DeploymentContext,
    FuseLease,
    HeartbeatMetrics,
    HeartbeatRecord,
    RollbackCheckpoint,
)
from mission_control.utils.clock import ms_to_iso, now_ms

logger = logging.getLogger(__name__)

FUSE_TTL_SEC = 300
AUDIT_RETENTION_SEC = 30 * 24 * 60 * 60
UNKNOWN_CLIENT = "unknown"

BADGE_COLORS = {
    "operational": "#4ade80",
    "degraded": "#fbbf24",
    "outage": "#ef4444",
}

_BASE36 = string.digits + string.ascii_lowercase

_templates = Environment(
    loader=PackageLoader("mission_control", "templates"),
    autoescape=select_autoescape(["html", "svg"]),
)


def sha256_hex(data: Union[str, bytes]) -> str:
    """Computes a SHA256 hash."""
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


def generate_id(clock: Callable[[], int] = now_ms) -> str:
    """Time-ordered id with a random suffix: '<epoch_ms>-<7 base36 chars>'."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"{clock()}-{suffix}"


class RequestStats:
    """Rolling request counters feeding the heartbeat metrics."""

    def __init__(self, sample_size: int = 1024):
        self.requests = 0
        self.errors = 0
        self._latencies = deque(maxlen=sample_size)
        self._lock = threading.Lock()

    def record(self, status_code: int, latency_ms: float):
        with self._lock:
            self.requests += 1
            if status_code >= 500:
                self.errors += 1
            self._latencies.append(latency_ms)

    def _percentile(self, ordered: List[float], pct: float) -> float:
        if not ordered:
            return 0.0
        index = min(len(ordered) - 1, int(round(pct / 100 * (len(ordered) - 1))))
        return round(ordered[index], 2)

    def snapshot(self) -> HeartbeatMetrics:
        with self._lock:
            ordered = sorted(self._latencies)
            return HeartbeatMetrics(
                requests=self.requests,
                errors=self.errors,
                latency_p50=self._percentile(ordered, 50),
                latency_p99=self._percentile(ordered, 99),
            )

    def status(self) -> str:
        """healthy / degraded / critical from the server error ratio."""
        with self._lock:
            if not self.requests:
                return "healthy"
            ratio = self.errors / self.requests
        if ratio > 0.25:
            return "critical"
        if ratio > 0.05:
            return "degraded"
        return "healthy"


class DeploymentIntegrity:
    """
    Tamper-evident deployment telemetry.

    Signs heartbeat records with HMAC-SHA256 over their canonical JSON form,
    decides canary membership per client, keeps the dead-man fuse lease
    fresh, appends audit entries and records rollback checkpoints. Writes
    that sit on the response path (fuse, audit) never raise; a store fault
    there is logged and counted.
    """

    def __init__(self, store: Optional[KeyValueStore] = None,
                 context: Optional[DeploymentContext] = None,
                 clock: Callable[[], int] = now_ms):
        self.app: Optional[Flask] = None
        self.store = store
        self.context = context or DeploymentContext()
        self.stats = RequestStats()
        self.audit_failures = 0
        self.fuse_failures = 0
        self._clock = clock
        self._initialized = store is not None

    def init_app(self, app: Flask, store: KeyValueStore, clock: Callable[[], int] = now_ms):
        cfg = app.config
        self.app = app
        self.store = store
        self._clock = clock
        self.context = DeploymentContext(
            service=cfg.get("SERVICE_NAME", "mission-control-hq"),
            region_id=cfg.get("REGION_ID", "us-east-1"),
            deployment_id=cfg.get("DEPLOYMENT_ID"),
            signing_key=cfg.get("GHOST_SIGNATURE"),
            key_id=cfg.get("GHOST_KEY_ID", "default"),
            canary_percent=cfg.get("CANARY_PERCENT", 0),
        )
        self.stats = RequestStats()
        self.audit_failures = 0
        self.fuse_failures = 0
        self._initialized = True
        if not self.context.signing_key:
            logger.warning("GHOST_SIGNATURE not set. Heartbeats will carry an unkeyed digest.")
        logger.info(
            f"DeploymentIntegrity configured: deployment={self.deployment_label} "
            f"region={self.context.region_id} canary={self.context.canary_percent}%"
        )

    @property
    def deployment_label(self) -> str:
        return self.context.deployment_id or "unknown"

    # --- Signatures and digests ---

    def sign(self, record: HeartbeatRecord) -> str:
        """Deterministic '<digest>:<key id>' signature over the canonical record."""
        payload = record.canonical().encode()
        if self.context.signing_key:
            digest = hmac.new(self.context.signing_key.encode(), payload, hashlib.sha256).hexdigest()
            return f"{digest}:{self.context.key_id}"
        return f"{sha256_hex(payload)}:unsigned"

    def verify(self, record: HeartbeatRecord, signature: Optional[str]) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(record), signature)

    def content_digest(self, content: Union[str, bytes]) -> str:
        return sha256_hex(content)

    def heartbeat(self, status: Optional[str] = None,
                  metrics: Optional[HeartbeatMetrics] = None) -> HeartbeatRecord:
        return HeartbeatRecord(
            timestamp=self._clock(),
            service=self.context.service,
            region=self.context.region_id,
            deployment=self.deployment_label,
            status=status or self.stats.status(),
            metrics=metrics,
        )

    # --- Canary routing ---

    def should_serve_canary(self, client_identifier: Optional[str], percent: Optional[int] = None) -> bool:
        """Stable per-client canary membership for the configured percentage."""
        if percent is None:
            percent = self.context.canary_percent
        if percent <= 0:
            return False
        if percent >= 100:
            return True
        identifier = client_identifier or UNKNOWN_CLIENT
        bucket = int.from_bytes(hashlib.sha256(identifier.encode()).digest()[:4], "big")
        return bucket % 100 < percent

    def apply_headers(self, response: Response, content: Optional[Union[str, bytes]] = None) -> Response:
        response.headers["X-Deployment-ID"] = self.deployment_label
        response.headers["X-Region-ID"] = self.context.region_id
        if content:
            digest = self.content_digest(content)
            response.headers["X-Content-SHA256"] = digest
            response.headers["Last-Modified-SHA"] = digest[:8]
        if self.context.canary_percent > 0:
            response.headers["X-Canary-Deployment"] = "true"
            response.headers["X-Canary-Percent"] = str(self.context.canary_percent)
        return response

    # --- Dead-man fuse ---

    def _fuse_key(self) -> str:
        return f"fuse:{self.context.deployment_id or 'default'}"

    def refresh_fuse(self, status: str = "active") -> None:
        lease = FuseLease(status=status, timestamp=self._clock(), region=self.context.region_id, ttl=FUSE_TTL_SEC)
        try:
            self.store.put(self._fuse_key(), lease.model_dump_json().encode(), ttl_seconds=FUSE_TTL_SEC)
        except StoreUnavailableError as e:
            self.fuse_failures += 1
            logger.warning(f"Dead-man fuse refresh dropped: {e}")

    def _read_fuse(self) -> Optional[FuseLease]:
        try:
            raw = self.store.get(self._fuse_key())
        except StoreUnavailableError as e:
            logger.warning(f"Dead-man fuse unreadable: {e}")
            return None
        if not raw:
            return None
        try:
            return FuseLease.model_validate_json(raw)
        except ValidationError:
            logger.warning("Dead-man fuse lease is malformed; treating as inactive.")
            return None

    def _lease_active(self, lease: Optional[FuseLease]) -> bool:
        if lease is None:
            return False
        age = self._clock() - lease.timestamp
        return lease.status == "active" and age < lease.ttl * 1000

    def is_fuse_active(self) -> bool:
        return self._lease_active(self._read_fuse())

    def fuse_state(self) -> str:
        """unknown (never refreshed or expired from the store), active or inactive."""
        lease = self._read_fuse()
        if lease is None:
            return "unknown"
        return "active" if self._lease_active(lease) else "inactive"

    # --- Audit log ---

    def record_audit(self, action: str, actor: str, resource: str, result: str,
                     metadata: Optional[Dict[str, Any]] = None) -> Optional[AuditEntry]:
        entry = AuditEntry(
            id=generate_id(self._clock),
            timestamp=self._clock(),
            action=action,
            actor=actor or UNKNOWN_CLIENT,
            resource=resource,
            result=result,
            metadata=metadata or {},
        )
        key = f"audit:{entry.timestamp}:{entry.id}"
        try:
            self.store.put(key, entry.model_dump_json().encode(), ttl_seconds=AUDIT_RETENTION_SEC)
        except StoreUnavailableError as e:
            self.audit_failures += 1
            logger.warning(f"Audit entry dropped ({self.audit_failures} total): {e}")
            return None
        return entry

    def list_audit(self, limit: int = 10) -> List[AuditEntry]:
        """Most recent audit entries, newest first."""
        keys = [k for k in self.store.list("audit:") if k.split(":")[1].isdigit()]
        keys.sort(key=lambda k: int(k.split(":")[1]), reverse=True)
        entries = []
        for key in keys:
            if len(entries) >= limit:
                break
            raw = self.store.get(key)
            if not raw:
                continue
            try:
                entries.append(AuditEntry.model_validate_json(raw))
            except ValidationError:
                logger.warning(f"Skipping malformed audit entry at {key}")
        return entries

    # --- Rollback checkpoints ---

    def create_checkpoint(self) -> str:
        """Snapshots the deployment configuration. Store faults propagate."""
        checkpoint = RollbackCheckpoint(
            id=generate_id(self._clock),
            timestamp=self._clock(),
            deployment=self.deployment_label,
            region=self.context.region_id,
            config=self.context.snapshot(),
        )
        self.store.put(f"checkpoint:{checkpoint.id}", checkpoint.model_dump_json().encode())
        logger.info(f"Rollback checkpoint {checkpoint.id} created for {checkpoint.deployment}")
        return checkpoint.id

    def get_checkpoint(self, checkpoint_id: str) -> Optional[RollbackCheckpoint]:
        raw = self.store.get(f"checkpoint:{checkpoint_id}")
        return RollbackCheckpoint.model_validate_json(raw) if raw else None

    # --- Rendering ---

    def badge_status(self) -> str:
        if not self.is_fuse_active():
            return "outage"
        return "operational" if self.stats.status() == "healthy" else "degraded"

    def render_badge(self, status: str) -> str:
        if status not in BADGE_COLORS:
            raise ValueError(f"Unknown badge status: {status}")
        return _templates.get_template("badge.svg").render(
            label="Mission Control",
            message=status.capitalize(),
            color=BADGE_COLORS[status],
        )

    def render_proof_page(self, record: HeartbeatRecord, signature: str) -> str:
        return _templates.get_template("proof.html").render(
            heartbeat=record,
            issued_at=ms_to_iso(record.timestamp),
            signature=signature,
            payload=json.dumps(record.model_dump(exclude_none=True), indent=2),
        )


# Singleton instance
integrity_system = DeploymentIntegrity()


# --- Functions for status page ---

def get_integrity_status() -> Dict[str, Any]:
    """Health check for the Deployment Integrity system."""
    if not integrity_system._initialized:
        return {"active": False, "healthy": False, "info": "Integrity system not initialized"}
    fuse = integrity_system.fuse_state()
    return {
        "active": True,
        "healthy": fuse != "inactive",
        "info": f"Dead-man fuse {fuse}",
        "deployment": integrity_system.deployment_label,
        "region": integrity_system.context.region_id,
        "canaryPercent": integrity_system.context.canary_percent,
        "signed": bool(integrity_system.context.signing_key),
        "auditFailures": integrity_system.audit_failures,
    }
