"""
Order Service — テーブル定義

orders と quotes の 2 テーブルだけ。PostgreSQL と SQLite の両方で通る DDL にしている。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

DDL = [
    """
    CREATE TABLE IF NOT EXISTS quotes (
        quote_id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL,
        business_partner_id VARCHAR(255),
        total_price NUMERIC(10, 2) NOT NULL,
        currency_code VARCHAR(3) NOT NULL,
        basket_snapshot TEXT NOT NULL,
        pricing_snapshot TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        order_id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL,
        quote_id VARCHAR(64) NOT NULL UNIQUE REFERENCES quotes (quote_id),
        business_partner_id VARCHAR(255),
        status VARCHAR(50) NOT NULL,
        payment_reference VARCHAR(255),
        delivery_reference VARCHAR(255),
        failure_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user_id ON orders (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_status ON orders (status)",
    "CREATE INDEX IF NOT EXISTS ix_quotes_user_id ON quotes (user_id)",
]


async def create_tables(conn: AsyncConnection) -> None:
    for statement in DDL:
        await conn.execute(text(statement))
