"""
Table bootstrap for the import service.

The DDL sticks to types both PostgreSQL and SQLite accept: string UUIDs,
JSON kept in TEXT columns and ``CURRENT_TIMESTAMP`` defaults. Timestamps
written by the service are UTC strings from ``utcnow_text`` so ordering
and retention cut-offs compare the same way on either backend.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

IMPORT_TABLE_DDL: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS import_jobs (
        id VARCHAR(36) PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        organization_id VARCHAR(64),
        file_name VARCHAR(500) NOT NULL,
        file_size INTEGER DEFAULT 0,
        file_type VARCHAR(16),
        file_path VARCHAR(1000),
        import_type VARCHAR(32) NOT NULL DEFAULT 'accounts',
        template_id VARCHAR(36),
        portfolio_id VARCHAR(36),
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        progress INTEGER DEFAULT 0,
        total_rows INTEGER DEFAULT 0,
        processed_rows INTEGER DEFAULT 0,
        successful_rows INTEGER DEFAULT 0,
        failed_rows INTEGER DEFAULT 0,
        duplicate_rows INTEGER DEFAULT 0,
        skipped_empty_rows INTEGER DEFAULT 0,
        field_mapping TEXT,
        validation_results TEXT,
        errors TEXT,
        error_message TEXT,
        failed_rows_csv_path VARCHAR(1000),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        completed_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_import_jobs_user ON import_jobs(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_import_jobs_status ON import_jobs(status)",
    """
    CREATE TABLE IF NOT EXISTS import_staging_data (
        id VARCHAR(36) PRIMARY KEY,
        job_id VARCHAR(36) NOT NULL,
        staging_table VARCHAR(64) NOT NULL,
        row_number INTEGER NOT NULL,
        field_mapping TEXT,
        mapped_data TEXT,
        original_data TEXT,
        materialize_error TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_import_staging_job_row ON import_staging_data(job_id, row_number)",
    """
    CREATE TABLE IF NOT EXISTS import_templates (
        id VARCHAR(36) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        description TEXT,
        import_type VARCHAR(32) NOT NULL DEFAULT 'accounts',
        field_mappings TEXT,
        required_columns TEXT,
        optional_columns TEXT,
        validation_rules TEXT,
        created_by VARCHAR(64) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(created_by, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS persons (
        id VARCHAR(36) PRIMARY KEY,
        ssn VARCHAR(9) NOT NULL UNIQUE,
        first_name VARCHAR(255) NOT NULL,
        middle_name VARCHAR(255),
        last_name VARCHAR(255) NOT NULL,
        full_name VARCHAR(600),
        dob DATE,
        address_line1 VARCHAR(500),
        address_line2 VARCHAR(500),
        city VARCHAR(255),
        state VARCHAR(64),
        zipcode VARCHAR(16),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS person_contacts (
        id VARCHAR(36) PRIMARY KEY,
        person_id VARCHAR(36) NOT NULL,
        contact_type VARCHAR(16) NOT NULL,
        value VARCHAR(320) NOT NULL,
        source_field VARCHAR(64),
        import_batch_id VARCHAR(36),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(person_id, contact_type, value)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS debt_accounts (
        id VARCHAR(36) PRIMARY KEY,
        person_id VARCHAR(36) NOT NULL,
        portfolio_id VARCHAR(36),
        import_batch_id VARCHAR(36),
        account_number VARCHAR(255) NOT NULL,
        original_account_number VARCHAR(255),
        original_creditor VARCHAR(255),
        original_balance NUMERIC(14, 2) NOT NULL,
        current_balance NUMERIC(14, 2) DEFAULT 0,
        charge_off_date DATE,
        date_opened DATE,
        last_payment_date DATE,
        last_payment_amount NUMERIC(14, 2),
        last_activity_date DATE,
        account_type VARCHAR(32) DEFAULT 'other',
        account_status VARCHAR(32) DEFAULT 'active',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_debt_accounts_batch ON debt_accounts(import_batch_id)",
    "CREATE INDEX IF NOT EXISTS idx_debt_accounts_person ON debt_accounts(person_id)",
    """
    CREATE TABLE IF NOT EXISTS debtor_payments (
        id VARCHAR(36) PRIMARY KEY,
        person_id VARCHAR(36) NOT NULL,
        debt_account_id VARCHAR(36),
        amount NUMERIC(14, 2) NOT NULL,
        paid_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


def create_import_tables(engine: Engine) -> None:
    """Create every table the import pipeline reads or writes, if missing."""
    with engine.begin() as conn:
        for statement in IMPORT_TABLE_DDL:
            conn.execute(text(statement))
    logger.info("Import tables ready")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow_text(offset: timedelta = timedelta(0)) -> str:
    """Current UTC time (plus ``offset``) in the sortable format stored in timestamp columns."""
    return (datetime.now(timezone.utc) + offset).strftime(TIMESTAMP_FORMAT)
