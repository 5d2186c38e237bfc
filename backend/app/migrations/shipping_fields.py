"""
Database migration for Shiprocket shipping

Adds the shipment columns to the existing orders table and creates the
webhook dead-letter table:
- orders: carrier ids, AWB, courier, shipment status, document URLs, dates
- shipping_webhook_failures: webhooks that could not be applied

Idempotent; runs on every startup.
"""
import asyncio
import logging
from sqlalchemy import text

logger = logging.getLogger(__name__)

ORDER_SHIPMENT_COLUMNS = [
    ("shiprocket_order_id", "VARCHAR(255)"),
    ("shiprocket_shipment_id", "VARCHAR(255)"),
    ("awb_number", "VARCHAR(255)"),
    ("courier_name", "VARCHAR(255)"),
    ("courier_id", "INTEGER"),
    ("shipment_status", "VARCHAR(100)"),
    ("estimated_delivery_date", "TIMESTAMP WITH TIME ZONE"),
    ("tracking_url", "TEXT"),
    ("label_url", "TEXT"),
    ("manifest_url", "TEXT"),
    ("pickup_scheduled_date", "TIMESTAMP WITH TIME ZONE"),
]


async def migrate_shipping_fields(engine):
    """Add shipment columns and the dead-letter table if missing."""
    logger.info("Starting shipping fields migration...")

    async with engine.begin() as conn:
        # ==================== orders columns ====================
        for column, column_type in ORDER_SHIPMENT_COLUMNS:
            await conn.execute(text(
                f"ALTER TABLE orders ADD COLUMN IF NOT EXISTS {column} {column_type}"
            ))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_orders_awb_number ON orders(awb_number)"
        ))
        logger.info(f"Verified {len(ORDER_SHIPMENT_COLUMNS)} shipment columns on orders")

        # ==================== shipping_webhook_failures table ====================
        await conn.execute(text("""
            CREATE TABLE IF NOT EXISTS shipping_webhook_failures (
                id SERIAL PRIMARY KEY,
                awb VARCHAR(255),
                current_status VARCHAR(100),
                payload JSON,
                reason TEXT NOT NULL,
                received_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                resolved_at TIMESTAMP WITH TIME ZONE
            )
        """))
        for idx_sql in [
            "CREATE INDEX IF NOT EXISTS ix_shipping_webhook_failures_awb ON shipping_webhook_failures(awb)",
            "CREATE INDEX IF NOT EXISTS ix_shipping_webhook_failures_resolved_at "
            "ON shipping_webhook_failures(resolved_at)",
        ]:
            await conn.execute(text(idx_sql))
        logger.info("Created/verified shipping_webhook_failures table")

    logger.info("Shipping fields migration complete!")


async def run_migration():
    """Run the migration using the app's database engine."""
    from app.core.database import engine

    await migrate_shipping_fields(engine)


if __name__ == "__main__":
    asyncio.run(run_migration())
