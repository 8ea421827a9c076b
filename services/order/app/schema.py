"""
Order Service — テーブル定義

金額は Decimal の文字列、日時は固定幅の UTC ISO-8601 文字列で保存する。
同じ SQL が PostgreSQL (asyncpg) と SQLite (aiosqlite) の両方で動く。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS catalog_items (
        id VARCHAR(64) PRIMARY KEY,
        item_name VARCHAR(255) NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        unit VARCHAR(32) NOT NULL DEFAULT '',
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(36) PRIMARY KEY,
        client_id VARCHAR(64) NOT NULL,
        order_status VARCHAR(32) NOT NULL,
        payment_status VARCHAR(16) NOT NULL,
        items TEXT NOT NULL,
        total VARCHAR(40) NOT NULL,
        credit_due_date VARCHAR(40),
        version INTEGER NOT NULL,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40) NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_orders_status_due
        ON orders (order_status, credit_due_date)
    """,
    """
    CREATE TABLE IF NOT EXISTS order_audit_logs (
        order_id VARCHAR(36) NOT NULL REFERENCES orders (id),
        seq INTEGER NOT NULL,
        action VARCHAR(32) NOT NULL,
        changed_by VARCHAR(64) NOT NULL,
        detail TEXT NOT NULL,
        from_status VARCHAR(32),
        to_status VARCHAR(32),
        recorded_at VARCHAR(40) NOT NULL,
        PRIMARY KEY (order_id, seq)
    )
    """,
]


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
