# mission_control/systems/status.py
import datetime
from typing import Any, Dict

from flask import current_app

from mission_control.systems.admission_system import get_admission_status
from mission_control.systems.auth_system import get_auth_status
from mission_control.systems.health_monitor import get_monitor_status
from mission_control.systems.integrity_system import get_integrity_status


def get_store_status() -> Dict[str, Any]:
    store = current_app.extensions.get("kv_store")
    if store is None:
        return {"active": False, "healthy": False, "info": "Store not configured"}
    reachable = store.ping()
    return {
        "active": True,
        "healthy": reachable,
        "info": f"{store.__class__.__name__} {'reachable' if reachable else 'unreachable'}",
    }


def get_backend_status() -> Dict[str, Any]:
    """Aggregate the health status of all core systems."""
    status = {
        "store": get_store_status(),
        "admission": get_admission_status(),
        "integrity": get_integrity_status(),
        "monitor": get_monitor_status(),
        "auth": get_auth_status(),
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }

    critical_systems = ["store", "admission", "integrity", "auth"]
    status["systemHealthy"] = all(
        status.get(system, {}).get("healthy", False) for system in critical_systems
    )
    return status
