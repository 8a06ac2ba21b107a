import psycopg2
from psycopg2.extras import execute_values
from typing import List

from src.core.entities.trade import TradeRecord


class TradeRepo:
    def __init__(self, dsn: str):
        self.dsn = dsn
        self._init_db()

    def _init_db(self):
        conn = psycopg2.connect(self.dsn)
        cur = conn.cursor()

        # One row per lifecycle; re-syncing a trade overwrites it
        cur.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                trade_id VARCHAR PRIMARY KEY,
                position_key VARCHAR,
                lifecycle_ordinal INTEGER,
                owner VARCHAR,
                asset VARCHAR,
                side VARCHAR,
                status VARCHAR,
                entry_price BIGINT,
                exit_price BIGINT,
                max_size_usd BIGINT,
                collateral_usd BIGINT,
                leverage DOUBLE PRECISION,
                pnl_usd BIGINT,
                roi DOUBLE PRECISION,
                fees_usd BIGINT,
                open_time TIMESTAMPTZ,
                close_time TIMESTAMPTZ,
                event_count INTEGER
            );
        """)

        conn.commit()
        cur.close()
        conn.close()

    def bulk_insert_trades(self, trades: List[TradeRecord]) -> int:
        if not trades:
            return 0

        conn = psycopg2.connect(self.dsn)
        cur = conn.cursor()

        data = [
            (
                t.trade_id, t.position_key, t.lifecycle_ordinal, t.owner, t.asset,
                t.side.value, t.status.value, t.entry_price, t.exit_price,
                t.max_size_reached, t.collateral, t.leverage, t.cumulative_pnl,
                t.roi, t.cumulative_fees, t.open_time, t.close_time, t.event_count
            )
            for t in trades
        ]

        insert_query = """
            INSERT INTO trades (
                trade_id, position_key, lifecycle_ordinal, owner, asset, side, status,
                entry_price, exit_price, max_size_usd, collateral_usd, leverage,
                pnl_usd, roi, fees_usd, open_time, close_time, event_count
            )
            VALUES %s
            ON CONFLICT (trade_id) DO UPDATE SET
                status = EXCLUDED.status,
                exit_price = EXCLUDED.exit_price,
                max_size_usd = EXCLUDED.max_size_usd,
                collateral_usd = EXCLUDED.collateral_usd,
                leverage = EXCLUDED.leverage,
                pnl_usd = EXCLUDED.pnl_usd,
                roi = EXCLUDED.roi,
                fees_usd = EXCLUDED.fees_usd,
                close_time = EXCLUDED.close_time,
                event_count = EXCLUDED.event_count
        """

        execute_values(cur, insert_query, data)
        conn.commit()
        cur.close()
        conn.close()
        return len(data)
