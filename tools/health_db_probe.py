from sqlalchemy import inspect, text
from sqlalchemy.engine.url import make_url

from borrowpal import create_app
from borrowpal.extensions import db

REQUIRED_TABLES = (
    "users",
    "listings",
    "orders",
    "order_negotiations",
    "handover_codes",
    "order_events",
    "payment_sessions",
    "notifications",
    "platform_events",
    "webhook_events",
)


def _safe_uri(uri: str) -> str:
    if not uri:
        return "unknown"
    try:
        return make_url(uri).render_as_string(hide_password=True)
    except Exception:
        return "unknown"


def main() -> int:
    app = create_app()
    with app.app_context():
        uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
        print("SQLALCHEMY_DATABASE_URI:", _safe_uri(uri))
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            print("SELECT 1: success")
        except Exception as e:
            print("SELECT 1: fail")
            msg = str(e)
            if msg:
                msg = (msg[:300] + "...") if len(msg) > 300 else msg
                print("error:", msg)
            return 1
        present = set(inspect(db.engine).get_table_names())
        missing = [t for t in REQUIRED_TABLES if t not in present]
        if missing:
            print("missing tables:", ", ".join(missing))
            return 2
        print("tables: ok")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
