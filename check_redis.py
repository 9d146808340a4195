import os
import sys

from mission_control.exceptions import StoreUnavailableError
from mission_control.kv_store import RedisStore


def main():
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    store = RedisStore(redis_url)
    if not store.ping():
        print(f"Failed to ping Redis at {redis_url}")
        sys.exit(1)

    print(f"Successfully connected to Redis at {redis_url}")
    try:
        for prefix in ("rl:", "fuse:", "audit:", "checkpoint:", "health:"):
            print(f"  {prefix:<12} {len(store.list(prefix))} key(s)")
    except StoreUnavailableError as e:
        print(f"Key scan failed: {e}")
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
