from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    try:
        from celery_app import celery

        registered = "borrowpal.tasks.notification_tasks.deliver_notification" in celery.tasks
        _ = str(celery.conf.broker_url or "")
        print(f"ok: celery_app:celery import succeeded deliver_notification_registered={registered}")
        return 0
    except Exception as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
