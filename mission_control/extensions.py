from typing import Callable, Optional

from flask import Flask
from flask_cors import CORS

from mission_control.kv_store import KeyValueStore, create_store
from mission_control.utils.clock import now_ms

# --- Flask Extensions ---
cors = CORS()


def init_store(app: Flask, store: Optional[KeyValueStore] = None,
               clock: Callable[[], int] = now_ms) -> KeyValueStore:
    """Attaches the keyed state store to the app, building one from REDIS_URL if needed."""
    if store is None:
        store = create_store(app.config.get("REDIS_URL"), clock=clock)
    app.extensions["kv_store"] = store
    return store
