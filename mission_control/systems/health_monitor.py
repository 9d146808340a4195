# mission_control/systems/health_monitor.py
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import requests
from flask import Flask
from pydantic import ValidationError

from mission_control.exceptions import StoreUnavailableError
from mission_control.kv_store import KeyValueStore
from mission_control.models import HealthCheckResult, HeartbeatRecord, MonitorConfig
from mission_control.utils.clock import ms_to_iso, now_ms

logger = logging.getLogger(__name__)

USER_AGENT = "MissionControl-Monitor/1.0"
PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"


class PagerClient:
    """Thin client for the PagerDuty Events v2 API."""

    def __init__(self, routing_key: Optional[str], events_url: str = PAGERDUTY_EVENTS_URL,
                 source: str = "mission-control-ghost-recon",
                 session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.routing_key = routing_key
        self.events_url = events_url
        self.source = source
        self.timeout = timeout
        self.session = session or requests.Session()

    def _send(self, body: Dict[str, Any]) -> bool:
        if not self.routing_key:
            logger.info(f"No paging routing key configured; skipping {body['event_action']} for {body['dedup_key']}")
            return False
        try:
            response = self.session.post(self.events_url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Paging {body['event_action']} failed for {body['dedup_key']}: {e}")
            return False
        if not response.ok:
            logger.error(f"Paging {body['event_action']} rejected for {body['dedup_key']}: HTTP {response.status_code}")
        return response.ok

    def trigger(self, dedup_key: str, summary: str, details: Optional[Dict[str, Any]] = None) -> bool:
        return self._send({
            "routing_key": self.routing_key,
            "event_action": "trigger",
            "dedup_key": dedup_key,
            "payload": {
                "summary": summary,
                "severity": "critical",
                "source": self.source,
                "component": "heartbeat-monitor",
                "custom_details": details or {},
            },
        })

    def resolve(self, dedup_key: str) -> bool:
        return self._send({
            "routing_key": self.routing_key,
            "event_action": "resolve",
            "dedup_key": dedup_key,
        })


class HealthMonitor:
    """
    Checks heartbeat endpoints and escalates sustained failures.

    Each target keeps a bounded FIFO of its most recent check results in the
    store. An incident is triggered once the last `alert_threshold` checks
    all failed and resolved on the first success after a failing run; both
    calls share a dedup key derived from the target host, so repeated ticks
    collapse into one incident on the paging side.
    """

    def __init__(self, store: Optional[KeyValueStore] = None, config: Optional[MonitorConfig] = None,
                 pager: Optional[PagerClient] = None, session: Optional[requests.Session] = None,
                 verifier=None, clock: Callable[[], int] = now_ms):
        self.app: Optional[Flask] = None
        self.store = store
        self.config = config or MonitorConfig()
        self.pager = pager or PagerClient(None)
        self.session = session or requests.Session()
        self.verifier = verifier
        self.last_tick: Optional[int] = None
        self._clock = clock
        self._loop_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._initialized = store is not None

    def init_app(self, app: Flask, store: KeyValueStore, pager: Optional[PagerClient] = None,
                 session: Optional[requests.Session] = None, verifier=None,
                 clock: Callable[[], int] = now_ms):
        self.stop()
        cfg = app.config
        self.app = app
        self.store = store
        threshold = cfg.get("MONITOR_ALERT_THRESHOLD", 4)
        self.config = MonitorConfig(
            targets=cfg.get("MONITOR_TARGETS", []),
            check_interval=cfg.get("MONITOR_INTERVAL_SEC", 30),
            alert_threshold=threshold,
            history_size=max(10, threshold + 1),
            request_timeout=cfg.get("MONITOR_REQUEST_TIMEOUT_SEC", 10),
        )
        self.pager = pager or PagerClient(
            cfg.get("PAGERDUTY_INTEGRATION_KEY"),
            events_url=cfg.get("PAGERDUTY_EVENTS_URL", PAGERDUTY_EVENTS_URL),
            source=self.config.source,
        )
        self.session = session or requests.Session()
        self.verifier = verifier
        self.last_tick = None
        self._clock = clock
        self._initialized = True
        logger.info(
            f"HealthMonitor configured: {len(self.config.targets)} target(s), "
            f"every {self.config.check_interval}s, threshold {self.config.alert_threshold}"
        )

    # --- Checking ---

    def check_heartbeat(self, url: str) -> HealthCheckResult:
        """Checks one heartbeat endpoint. Never raises; failures come back as data."""
        try:
            response = self.session.get(
                url, headers={"User-Agent": USER_AGENT}, timeout=self.config.request_timeout
            )
        except requests.Timeout:
            return self._failure(error=f"Timed out after {self.config.request_timeout}s", kind="timeout")
        except requests.RequestException as e:
            return self._failure(error=str(e) or e.__class__.__name__, kind="network")

        if not 200 <= response.status_code < 300:
            return self._failure(status=response.status_code, error=f"HTTP {response.status_code}", kind="http")

        try:
            data = response.json()
        except ValueError:
            return self._failure(status=response.status_code, error="Heartbeat is not valid JSON", kind="payload")
        if not isinstance(data, dict):
            return self._failure(status=response.status_code, error="Heartbeat is not a JSON object", kind="payload")

        signature = data.get("signature")
        if not isinstance(signature, str):
            signature = None
        verified = data.get("verified") is True and bool(signature)
        if verified and self.verifier is not None:
            verified = self._verify_locally(data.get("heartbeat"), signature)

        if not verified:
            return self._failure(
                status=response.status_code,
                signature=signature,
                verified=False,
                error="Invalid signature",
                kind="signature",
            )

        return HealthCheckResult(
            success=True,
            status=response.status_code,
            signature=signature,
            verified=True,
            timestamp=self._clock(),
        )

    def _verify_locally(self, heartbeat: Any, signature: str) -> bool:
        try:
            record = HeartbeatRecord.model_validate(heartbeat)
        except ValidationError:
            return False
        return self.verifier.verify(record, signature)

    def _failure(self, error: str, kind: str, status: Optional[int] = None,
                 signature: Optional[str] = None, verified: Optional[bool] = None) -> HealthCheckResult:
        return HealthCheckResult(
            success=False,
            status=status,
            signature=signature,
            verified=verified,
            error=error,
            error_kind=kind,
            timestamp=self._clock(),
        )

    # --- History ---

    def get_health_history(self, target: str) -> List[HealthCheckResult]:
        try:
            raw = self.store.get(f"health:{target}")
        except StoreUnavailableError as e:
            logger.warning(f"Health history unavailable for {target}: {e}")
            return []
        if not raw:
            return []
        try:
            return [HealthCheckResult.model_validate(item) for item in json.loads(raw)]
        except (ValueError, TypeError, ValidationError):
            logger.warning(f"Discarding malformed health history for {target}")
            return []

    def store_health_result(self, target: str, result: HealthCheckResult) -> List[HealthCheckResult]:
        history = self.get_health_history(target)
        history.append(result)
        history = history[-self.config.history_size:]
        body = json.dumps([item.model_dump(exclude_none=True) for item in history]).encode()
        try:
            self.store.put(f"health:{target}", body, ttl_seconds=self.config.history_ttl)
        except StoreUnavailableError as e:
            logger.warning(f"Health result for {target} not stored: {e}")
        return history

    def should_alert(self, target: str, history: Optional[List[HealthCheckResult]] = None) -> bool:
        """True when the most recent `alert_threshold` checks all failed."""
        if history is None:
            history = self.get_health_history(target)
        threshold = self.config.alert_threshold
        if len(history) < threshold:
            return False
        return all(not check.success for check in history[-threshold:])

    # --- Ticks ---

    @staticmethod
    def target_id(url: str) -> str:
        return urlparse(url).hostname or url

    def monitor(self, url: str) -> HealthCheckResult:
        """One monitoring tick for one target: check, record, escalate or resolve."""
        target = self.target_id(url)
        dedup_key = f"ghost-recon-{target}"

        result = self.check_heartbeat(url)
        history = self.store_health_result(target, result)
        threshold = self.config.alert_threshold

        if not result.success:
            logger.warning(f"Heartbeat check failed for {target}: {result.error} ({result.error_kind})")
            if self.should_alert(target, history):
                self.pager.trigger(
                    dedup_key,
                    f"Ghost Recon heartbeat failed for {target}",
                    {
                        "status": result.status,
                        "error": result.error,
                        "error_kind": result.error_kind,
                        "signature": result.signature,
                        "verified": result.verified,
                        "timestamp": ms_to_iso(result.timestamp),
                        "threshold": f"{threshold} consecutive failures",
                    },
                )
        else:
            previous = history[-threshold - 1:-1]
            if any(not check.success for check in previous):
                logger.info(f"Heartbeat for {target} recovered; resolving {dedup_key}")
                self.pager.resolve(dedup_key)
        return result

    def run_tick(self) -> Dict[str, HealthCheckResult]:
        """Checks every configured target concurrently."""
        targets = list(self.config.targets)
        self.last_tick = self._clock()
        if not targets:
            return {}
        results = {}
        with ThreadPoolExecutor(max_workers=len(targets), thread_name_prefix="MonitorCheck") as pool:
            futures = {url: pool.submit(self.monitor, url) for url in targets}
            for url, future in futures.items():
                try:
                    results[url] = future.result()
                except Exception as e:
                    logger.error(f"Monitoring tick failed for {url}: {e}", exc_info=True)
                    result = self._failure(error=str(e) or e.__class__.__name__, kind="internal")
                    self.store_health_result(self.target_id(url), result)
                    results[url] = result
        return results

    # --- Background loop ---

    def start(self):
        """Starts the background tick loop thread."""
        if not self._initialized:
            raise RuntimeError("Cannot start: HealthMonitor not initialized.")
        if self.is_running():
            return
        logger.info("Starting HealthMonitor background loop...")
        self._stop_event.clear()
        self._loop_thread = threading.Thread(target=self._run_loop, daemon=True, name="HealthMonitorLoop")
        self._loop_thread.start()

    def stop(self):
        if self.is_running():
            logger.info("Stopping HealthMonitor background loop...")
            self._stop_event.set()
            self._loop_thread.join(timeout=self.config.request_timeout + 5)
            logger.info("HealthMonitor background loop stopped.")

    def is_running(self) -> bool:
        return bool(self._loop_thread and self._loop_thread.is_alive())

    def _run_loop(self):
        while not self._stop_event.is_set():
            try:
                self.run_tick()
            except Exception as e:
                logger.error(f"Unexpected error in HealthMonitor tick: {e}", exc_info=True)
            self._stop_event.wait(self.config.check_interval)


# Singleton instance
health_monitor = HealthMonitor()


# --- Functions for status page ---

def get_monitor_status() -> Dict[str, Any]:
    """Health check for the Health Monitor."""
    if not health_monitor._initialized:
        return {"active": False, "healthy": False, "info": "Health Monitor not initialized"}
    return {
        "active": health_monitor.is_running(),
        "healthy": True,
        "info": "Health Monitor running" if health_monitor.is_running() else "Health Monitor idle",
        "targets": list(health_monitor.config.targets),
        "lastTick": ms_to_iso(health_monitor.last_tick) if health_monitor.last_tick else None,
    }
