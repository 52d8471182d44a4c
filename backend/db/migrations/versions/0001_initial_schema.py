"""Initial schema for the warehouse stock ledger."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


HEADER_TABLES: tuple[str, ...] = (
    "incoming_goods",
    "outgoing_goods",
    "material_usages",
    "production_outputs",
    "adjustments",
)

ITEM_TABLES: tuple[tuple[str, str], ...] = (
    ("incoming_good_items", "incoming_goods"),
    ("outgoing_good_items", "outgoing_goods"),
    ("material_usage_items", "material_usages"),
    ("production_output_items", "production_outputs"),
    ("adjustment_items", "adjustments"),
)

_CUSTOMS_HEADER_COLUMNS = """
        owner TEXT,
        customs_document_type TEXT,
        ppkek_number TEXT,
        customs_registration_date DATE,
        evidence_number TEXT,
        invoice_number TEXT,
        invoice_date DATE,
        counterparty_name TEXT,"""

_PRICED_ITEM_COLUMNS = """
        hs_code TEXT,
        currency TEXT,
        amount NUMERIC(19,4),"""


def _header_table(table: str, extra_columns: str) -> str:
    return f"""
    CREATE TABLE {table} (
        header_id BIGINT GENERATED ALWAYS AS IDENTITY,
        company_code INTEGER NOT NULL,
        external_id TEXT NOT NULL,
        business_date DATE NOT NULL,
        reversal BOOLEAN NOT NULL DEFAULT FALSE,
        received_at TIMESTAMPTZ,
        header_state record_state_enum NOT NULL DEFAULT 'LIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ,{extra_columns}
        CONSTRAINT pk_{table} PRIMARY KEY (header_id),
        CONSTRAINT ck_{table}_external_id_not_blank CHECK (length(btrim(external_id)) > 0),
        CONSTRAINT ck_{table}_state_deleted_at CHECK (
            (header_state = 'LIVE' AND deleted_at IS NULL)
            OR (header_state = 'TOMBSTONED' AND deleted_at IS NOT NULL)
        )
    );
    """


def _item_table(table: str, header_table: str, extra_columns: str) -> str:
    return f"""
    CREATE TABLE {table} (
        item_id BIGINT GENERATED ALWAYS AS IDENTITY,
        header_id BIGINT NOT NULL,
        company_code INTEGER NOT NULL,
        business_date DATE NOT NULL,
        item_type TEXT NOT NULL,
        item_code TEXT NOT NULL,
        line_tag TEXT NOT NULL DEFAULT '',
        item_name TEXT NOT NULL,
        uom TEXT NOT NULL,
        qty NUMERIC(15,3) NOT NULL,
        line_state record_state_enum NOT NULL DEFAULT 'LIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ,{extra_columns}
        CONSTRAINT pk_{table} PRIMARY KEY (item_id),
        CONSTRAINT fk_{table}_header FOREIGN KEY (header_id)
            REFERENCES {header_table} (header_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_{table}_qty_nonneg CHECK (qty >= 0),
        CONSTRAINT ck_{table}_state_deleted_at CHECK (
            (line_state = 'LIVE' AND deleted_at IS NULL)
            OR (line_state = 'TOMBSTONED' AND deleted_at IS NOT NULL)
        )
    );
    """


ENUM_DDL: tuple[str, ...] = (
    "CREATE TYPE recalc_status_enum AS ENUM ('PENDING', 'IN_PROGRESS', 'COMPLETED', 'FAILED');",
    "CREATE TYPE adjustment_type_enum AS ENUM ('GAIN', 'LOSS');",
    "CREATE TYPE record_state_enum AS ENUM ('LIVE', 'TOMBSTONED');",
    "CREATE TYPE job_status_enum AS ENUM ('RUNNING', 'COMPLETED', 'FAILED');",
)

TABLE_DDL: tuple[str, ...] = (
    _header_table("incoming_goods", _CUSTOMS_HEADER_COLUMNS),
    _item_table("incoming_good_items", "incoming_goods", _PRICED_ITEM_COLUMNS),
    _header_table("outgoing_goods", _CUSTOMS_HEADER_COLUMNS),
    _item_table("outgoing_good_items", "outgoing_goods", _PRICED_ITEM_COLUMNS),
    _header_table(
        "material_usages",
        """
        work_order_number TEXT,
        cost_center_number TEXT,
        internal_evidence_number TEXT,""",
    ),
    _item_table(
        "material_usage_items",
        "material_usages",
        """
        ppkek_number TEXT,""",
    ),
    _header_table(
        "production_outputs",
        """
        internal_evidence_number TEXT,""",
    ),
    _item_table(
        "production_output_items",
        "production_outputs",
        """
        work_order_numbers TEXT[] NOT NULL DEFAULT '{}',""",
    ),
    _header_table(
        "adjustments",
        """
        wms_doc_type TEXT,
        internal_evidence_number TEXT,""",
    ),
    _item_table(
        "adjustment_items",
        "adjustments",
        """
        adjustment_type adjustment_type_enum NOT NULL,
        reason TEXT,""",
    ),
    """
    CREATE TABLE stock_daily_snapshot (
        snapshot_id BIGINT GENERATED ALWAYS AS IDENTITY,
        company_code INTEGER NOT NULL,
        item_type TEXT NOT NULL,
        item_code TEXT NOT NULL,
        item_name TEXT NOT NULL DEFAULT '',
        uom TEXT NOT NULL DEFAULT '',
        snapshot_date DATE NOT NULL,
        opening_balance NUMERIC(15,3) NOT NULL,
        incoming_qty NUMERIC(15,3) NOT NULL DEFAULT 0,
        outgoing_qty NUMERIC(15,3) NOT NULL DEFAULT 0,
        usage_qty NUMERIC(15,3) NOT NULL DEFAULT 0,
        production_qty NUMERIC(15,3) NOT NULL DEFAULT 0,
        adjustment_qty NUMERIC(15,3) NOT NULL DEFAULT 0,
        closing_balance NUMERIC(15,3) NOT NULL,
        calculated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_stock_daily_snapshot PRIMARY KEY (snapshot_id),
        CONSTRAINT uq_stock_daily_snapshot_item_date UNIQUE (company_code, item_type, item_code, snapshot_date),
        CONSTRAINT ck_stock_daily_snapshot_balance_identity CHECK (
            closing_balance = opening_balance + incoming_qty - outgoing_qty
            - usage_qty + production_qty + adjustment_qty
        )
    );
    """,
    """
    CREATE TABLE beginning_balances (
        balance_id BIGINT GENERATED ALWAYS AS IDENTITY,
        company_code INTEGER NOT NULL,
        item_type TEXT NOT NULL,
        item_code TEXT NOT NULL,
        item_name TEXT NOT NULL DEFAULT '',
        uom TEXT NOT NULL DEFAULT '',
        balance_date DATE NOT NULL,
        qty NUMERIC(15,3) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_beginning_balances PRIMARY KEY (balance_id),
        CONSTRAINT uq_beginning_balances_item_date UNIQUE (company_code, item_type, item_code, balance_date)
    );
    """,
    """
    CREATE TABLE snapshot_recalc_queue (
        queue_id BIGINT GENERATED ALWAYS AS IDENTITY,
        company_code INTEGER NOT NULL,
        recalc_date DATE NOT NULL,
        item_type TEXT,
        item_code TEXT,
        status recalc_status_enum NOT NULL DEFAULT 'PENDING',
        priority INTEGER NOT NULL DEFAULT 0,
        reason TEXT NOT NULL,
        queued_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        error_message TEXT,
        CONSTRAINT pk_snapshot_recalc_queue PRIMARY KEY (queue_id),
        CONSTRAINT ck_snapshot_recalc_queue_item_scope CHECK ((item_type IS NULL) = (item_code IS NULL)),
        CONSTRAINT ck_snapshot_recalc_queue_started_after_queued CHECK (started_at IS NULL OR started_at >= queued_at),
        CONSTRAINT ck_snapshot_recalc_queue_completed_terminal CHECK (
            completed_at IS NULL OR status IN ('COMPLETED', 'FAILED')
        )
    );
    """,
    """
    CREATE TABLE snapshot_job_log (
        job_id BIGINT GENERATED ALWAYS AS IDENTITY,
        job_type TEXT NOT NULL,
        company_code INTEGER NOT NULL,
        snapshot_date DATE NOT NULL,
        status job_status_enum NOT NULL DEFAULT 'RUNNING',
        triggered_by TEXT NOT NULL,
        processed_records INTEGER NOT NULL DEFAULT 0,
        failed_records INTEGER NOT NULL DEFAULT 0,
        started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        completed_at TIMESTAMPTZ,
        error_message TEXT,
        CONSTRAINT pk_snapshot_job_log PRIMARY KEY (job_id),
        CONSTRAINT ck_snapshot_job_log_counts_nonneg CHECK (processed_records >= 0 AND failed_records >= 0),
        CONSTRAINT ck_snapshot_job_log_completed_terminal CHECK (
            completed_at IS NULL OR status IN ('COMPLETED', 'FAILED')
        )
    );
    """,
    """
    CREATE TABLE work_order_fg_production (
        link_id BIGINT GENERATED ALWAYS AS IDENTITY,
        company_code INTEGER NOT NULL,
        source_external_id TEXT NOT NULL,
        work_order_number TEXT NOT NULL,
        item_type TEXT NOT NULL,
        item_code TEXT NOT NULL,
        qty NUMERIC(15,3) NOT NULL,
        business_date DATE NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_work_order_fg_production PRIMARY KEY (link_id),
        CONSTRAINT uq_work_order_fg_production_link UNIQUE (company_code, source_external_id, work_order_number, item_code)
    );
    """,
    """
    CREATE TABLE work_order_material_consumption (
        link_id BIGINT GENERATED ALWAYS AS IDENTITY,
        company_code INTEGER NOT NULL,
        source_external_id TEXT NOT NULL,
        work_order_number TEXT NOT NULL,
        item_type TEXT NOT NULL,
        item_code TEXT NOT NULL,
        ppkek_number TEXT,
        qty NUMERIC(15,3) NOT NULL,
        business_date DATE NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_work_order_material_consumption PRIMARY KEY (link_id),
        CONSTRAINT uq_work_order_material_consumption_link UNIQUE (company_code, source_external_id, work_order_number, item_code)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    *(
        statement
        for table in HEADER_TABLES
        for statement in (
            f"CREATE UNIQUE INDEX uq_{table}_live_external_id ON {table} (company_code, external_id) "
            "WHERE header_state = 'LIVE';",
            f"CREATE INDEX idx_{table}_company_date ON {table} (company_code, business_date);",
        )
    ),
    *(
        statement
        for table, _ in ITEM_TABLES
        for statement in (
            f"CREATE UNIQUE INDEX uq_{table}_live_natural_key ON {table} (header_id, item_type, item_code, line_tag) "
            "WHERE line_state = 'LIVE';",
            f"CREATE INDEX idx_{table}_company_item_date ON {table} (company_code, item_type, item_code, business_date);",
        )
    ),
    "CREATE INDEX idx_stock_daily_snapshot_company_date ON stock_daily_snapshot (company_code, snapshot_date);",
    """
    CREATE UNIQUE INDEX uq_snapshot_recalc_queue_open_scope
    ON snapshot_recalc_queue (company_code, recalc_date, COALESCE(item_type, ''), COALESCE(item_code, ''))
    WHERE status IN ('PENDING', 'IN_PROGRESS');
    """,
    """
    CREATE INDEX idx_snapshot_recalc_queue_pending_order
    ON snapshot_recalc_queue (priority DESC, queued_at)
    WHERE status = 'PENDING';
    """,
    "CREATE INDEX idx_snapshot_job_log_company_date ON snapshot_job_log (company_code, snapshot_date);",
    "CREATE INDEX idx_work_order_fg_production_work_order ON work_order_fg_production (company_code, work_order_number);",
    "CREATE INDEX idx_work_order_material_consumption_work_order "
    "ON work_order_material_consumption (company_code, work_order_number);",
)

FUNCTION_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION get_item_opening_balance(
        p_company_code INTEGER,
        p_item_type TEXT,
        p_item_code TEXT,
        p_snapshot_date DATE
    )
    RETURNS NUMERIC
    LANGUAGE plpgsql
    STABLE
    AS $$
    DECLARE
        v_balance NUMERIC(15,3);
    BEGIN
        SELECT b.qty INTO v_balance
        FROM beginning_balances b
        WHERE b.company_code = p_company_code
          AND b.item_type = p_item_type
          AND b.item_code = p_item_code
          AND b.balance_date = p_snapshot_date;
        IF FOUND THEN
            RETURN v_balance;
        END IF;

        SELECT s.closing_balance INTO v_balance
        FROM stock_daily_snapshot s
        WHERE s.company_code = p_company_code
          AND s.item_type = p_item_type
          AND s.item_code = p_item_code
          AND s.snapshot_date < p_snapshot_date
        ORDER BY s.snapshot_date DESC
        LIMIT 1;
        IF FOUND THEN
            RETURN v_balance;
        END IF;

        RETURN 0;
    END;
    $$;
    """,
    """
    CREATE OR REPLACE FUNCTION upsert_item_stock_snapshot(
        p_company_code INTEGER,
        p_item_type TEXT,
        p_item_code TEXT,
        p_item_name TEXT,
        p_uom TEXT,
        p_snapshot_date DATE
    )
    RETURNS TABLE (
        opening_balance NUMERIC,
        closing_balance NUMERIC,
        incoming_qty NUMERIC,
        outgoing_qty NUMERIC,
        usage_qty NUMERIC,
        production_qty NUMERIC,
        adjustment_qty NUMERIC,
        operation TEXT
    )
    LANGUAGE plpgsql
    AS $$
    #variable_conflict use_column
    DECLARE
        v_opening NUMERIC(15,3);
        v_incoming NUMERIC(15,3);
        v_outgoing NUMERIC(15,3);
        v_usage NUMERIC(15,3);
        v_production NUMERIC(15,3);
        v_adjustment NUMERIC(15,3);
        v_closing NUMERIC(15,3);
        v_existed BOOLEAN;
    BEGIN
        v_opening := get_item_opening_balance(p_company_code, p_item_type, p_item_code, p_snapshot_date);

        SELECT COALESCE(SUM(CASE WHEN h.reversal THEN -i.qty ELSE i.qty END), 0) INTO v_incoming
        FROM incoming_good_items i
        JOIN incoming_goods h ON h.header_id = i.header_id
        WHERE i.company_code = p_company_code AND i.item_type = p_item_type AND i.item_code = p_item_code
          AND i.business_date = p_snapshot_date AND i.line_state = 'LIVE' AND h.header_state = 'LIVE';

        SELECT COALESCE(SUM(CASE WHEN h.reversal THEN -i.qty ELSE i.qty END), 0) INTO v_outgoing
        FROM outgoing_good_items i
        JOIN outgoing_goods h ON h.header_id = i.header_id
        WHERE i.company_code = p_company_code AND i.item_type = p_item_type AND i.item_code = p_item_code
          AND i.business_date = p_snapshot_date AND i.line_state = 'LIVE' AND h.header_state = 'LIVE';

        SELECT COALESCE(SUM(CASE WHEN h.reversal THEN -i.qty ELSE i.qty END), 0) INTO v_usage
        FROM material_usage_items i
        JOIN material_usages h ON h.header_id = i.header_id
        WHERE i.company_code = p_company_code AND i.item_type = p_item_type AND i.item_code = p_item_code
          AND i.business_date = p_snapshot_date AND i.line_state = 'LIVE' AND h.header_state = 'LIVE';

        SELECT COALESCE(SUM(CASE WHEN h.reversal THEN -i.qty ELSE i.qty END), 0) INTO v_production
        FROM production_output_items i
        JOIN production_outputs h ON h.header_id = i.header_id
        WHERE i.company_code = p_company_code AND i.item_type = p_item_type AND i.item_code = p_item_code
          AND i.business_date = p_snapshot_date AND i.line_state = 'LIVE' AND h.header_state = 'LIVE';

        SELECT COALESCE(SUM(
            CASE WHEN i.adjustment_type = 'GAIN' THEN i.qty ELSE -i.qty END
            * CASE WHEN h.reversal THEN -1 ELSE 1 END
        ), 0) INTO v_adjustment
        FROM adjustment_items i
        JOIN adjustments h ON h.header_id = i.header_id
        WHERE i.company_code = p_company_code AND i.item_type = p_item_type AND i.item_code = p_item_code
          AND i.business_date = p_snapshot_date AND i.line_state = 'LIVE' AND h.header_state = 'LIVE';

        v_closing := v_opening + v_incoming - v_outgoing - v_usage + v_production + v_adjustment;

        SELECT EXISTS (
            SELECT 1
            FROM stock_daily_snapshot s
            WHERE s.company_code = p_company_code
              AND s.item_type = p_item_type
              AND s.item_code = p_item_code
              AND s.snapshot_date = p_snapshot_date
        ) INTO v_existed;

        INSERT INTO stock_daily_snapshot (
            company_code, item_type, item_code, item_name, uom, snapshot_date,
            opening_balance, incoming_qty, outgoing_qty, usage_qty, production_qty,
            adjustment_qty, closing_balance, calculated_at, updated_at
        )
        VALUES (
            p_company_code, p_item_type, p_item_code, COALESCE(p_item_name, ''), COALESCE(p_uom, ''),
            p_snapshot_date, v_opening, v_incoming, v_outgoing, v_usage, v_production,
            v_adjustment, v_closing, now(), now()
        )
        ON CONFLICT ON CONSTRAINT uq_stock_daily_snapshot_item_date DO UPDATE SET
            item_name = COALESCE(NULLIF(EXCLUDED.item_name, ''), stock_daily_snapshot.item_name),
            uom = COALESCE(NULLIF(EXCLUDED.uom, ''), stock_daily_snapshot.uom),
            opening_balance = EXCLUDED.opening_balance,
            incoming_qty = EXCLUDED.incoming_qty,
            outgoing_qty = EXCLUDED.outgoing_qty,
            usage_qty = EXCLUDED.usage_qty,
            production_qty = EXCLUDED.production_qty,
            adjustment_qty = EXCLUDED.adjustment_qty,
            closing_balance = EXCLUDED.closing_balance,
            calculated_at = now(),
            updated_at = now();

        RETURN QUERY SELECT
            v_opening::NUMERIC,
            v_closing::NUMERIC,
            v_incoming::NUMERIC,
            v_outgoing::NUMERIC,
            v_usage::NUMERIC,
            v_production::NUMERIC,
            v_adjustment::NUMERIC,
            CASE WHEN v_existed THEN 'UPDATE' ELSE 'INSERT' END;
    END;
    $$;
    """,
    """
    CREATE OR REPLACE FUNCTION recalculate_item_snapshots_from_date(
        p_company_code INTEGER,
        p_item_type TEXT,
        p_item_code TEXT,
        p_from_date DATE
    )
    RETURNS INTEGER
    LANGUAGE plpgsql
    AS $$
    DECLARE
        v_row RECORD;
        v_count INTEGER := 0;
    BEGIN
        FOR v_row IN
            SELECT s.snapshot_date, s.item_name, s.uom
            FROM stock_daily_snapshot s
            WHERE s.company_code = p_company_code
              AND s.item_type = p_item_type
              AND s.item_code = p_item_code
              AND s.snapshot_date > p_from_date
            ORDER BY s.snapshot_date ASC
        LOOP
            PERFORM upsert_item_stock_snapshot(
                p_company_code,
                p_item_type,
                p_item_code,
                v_row.item_name,
                v_row.uom,
                v_row.snapshot_date
            );
            v_count := v_count + 1;
        END LOOP;
        RETURN v_count;
    END;
    $$;
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(FUNCTION_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP FUNCTION IF EXISTS recalculate_item_snapshots_from_date(INTEGER, TEXT, TEXT, DATE);",
            "DROP FUNCTION IF EXISTS upsert_item_stock_snapshot(INTEGER, TEXT, TEXT, TEXT, TEXT, DATE);",
            "DROP FUNCTION IF EXISTS get_item_opening_balance(INTEGER, TEXT, TEXT, DATE);",
            "DROP TABLE IF EXISTS work_order_material_consumption;",
            "DROP TABLE IF EXISTS work_order_fg_production;",
            "DROP TABLE IF EXISTS snapshot_job_log;",
            "DROP TABLE IF EXISTS snapshot_recalc_queue;",
            "DROP TABLE IF EXISTS beginning_balances;",
            "DROP TABLE IF EXISTS stock_daily_snapshot;",
            *(f"DROP TABLE IF EXISTS {table};" for table, _ in reversed(ITEM_TABLES)),
            *(f"DROP TABLE IF EXISTS {table};" for table in reversed(HEADER_TABLES)),
            "DROP TYPE IF EXISTS job_status_enum;",
            "DROP TYPE IF EXISTS record_state_enum;",
            "DROP TYPE IF EXISTS adjustment_type_enum;",
            "DROP TYPE IF EXISTS recalc_status_enum;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
