from sqlalchemy import create_engine, inspect, text

from app.db.engine import (
    _ensure_user_subscription_columns,
    _ensure_webhook_event_columns,
)


def test_ensure_webhook_event_columns_adds_missing_columns():
    engine = create_engine("sqlite:///:memory:")

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE webhook_events (
                    id INTEGER PRIMARY KEY,
                    provider VARCHAR NOT NULL,
                    event_id VARCHAR UNIQUE,
                    event_type VARCHAR,
                    raw_payload VARCHAR NOT NULL,
                    processed BOOLEAN NOT NULL,
                    received_at DATETIME NOT NULL
                )
                """
            )
        )

        # Must be safe to run repeatedly during startup.
        _ensure_webhook_event_columns(conn)
        _ensure_webhook_event_columns(conn)

        columns = {col["name"] for col in inspect(conn).get_columns("webhook_events")}

    assert "status" in columns
    assert "error_msg" in columns
    assert "updated_at" in columns


def test_ensure_user_subscription_columns_adds_missing_columns():
    engine = create_engine("sqlite:///:memory:")

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE user_subscriptions (
                    user_id VARCHAR PRIMARY KEY,
                    plan VARCHAR,
                    status VARCHAR NOT NULL,
                    current_period_start DATETIME,
                    current_period_end DATETIME,
                    updated_at DATETIME NOT NULL
                )
                """
            )
        )

        _ensure_user_subscription_columns(conn)
        _ensure_user_subscription_columns(conn)

        columns = {col["name"] for col in inspect(conn).get_columns("user_subscriptions")}

    assert "last_event_at" in columns


def test_schema_guards_ignore_missing_tables():
    engine = create_engine("sqlite:///:memory:")

    with engine.begin() as conn:
        _ensure_webhook_event_columns(conn)
        _ensure_user_subscription_columns(conn)

        assert inspect(conn).get_table_names() == []
