"""
PostgreSQL schema for the bot.

Applied idempotently at startup by Database.apply_schema(). The uniqueness
constraints on ingested_records and event_keys are what make concurrent
ingestion safe; the trigger on ingested_records feeds the follow-up consumer.
"""

POSTED_CHANNEL = "record_posted"

SCHEMA_STATEMENTS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS ingested_records (
        id BIGSERIAL PRIMARY KEY,
        category TEXT NOT NULL,
        natural_key TEXT NOT NULL,
        source_id TEXT NOT NULL,
        subject_name TEXT,
        token_id TEXT,
        contract_address TEXT,
        value NUMERIC(38, 18) NOT NULL,
        currency TEXT NOT NULL DEFAULT 'ETH',
        occurred_at TIMESTAMPTZ NOT NULL,
        received_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        status TEXT NOT NULL DEFAULT 'unposted'
            CHECK (status IN ('unposted', 'posted', 'failed')),
        publish_ref TEXT,
        posted_at TIMESTAMPTZ,
        last_error TEXT,
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        enrichment JSONB,
        CONSTRAINT ingested_records_category_key UNIQUE (category, natural_key)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_ingested_records_status
        ON ingested_records (category, status, occurred_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS event_keys (
        category TEXT NOT NULL,
        natural_key TEXT NOT NULL,
        source_id TEXT NOT NULL,
        outcome TEXT NOT NULL DEFAULT 'pending',
        claimed_at TIMESTAMPTZ NOT NULL,
        settled_at TIMESTAMPTZ,
        PRIMARY KEY (category, natural_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cursors (
        source_id TEXT PRIMARY KEY,
        last_seen_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS publish_attempts (
        id BIGSERIAL PRIMARY KEY,
        published_at TIMESTAMPTZ NOT NULL,
        success BOOLEAN NOT NULL,
        record_id BIGINT,
        error TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_publish_attempts_published_at
        ON publish_attempts (published_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS system_state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS follow_ups (
        record_id BIGINT NOT NULL,
        action TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'claimed'
            CHECK (status IN ('claimed', 'done', 'failed')),
        claimed_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        result_ref TEXT,
        error TEXT,
        PRIMARY KEY (record_id, action)
    )
    """,
    f"""
    CREATE OR REPLACE FUNCTION notify_record_posted() RETURNS trigger AS $$
    BEGIN
        PERFORM pg_notify(
            '{POSTED_CHANNEL}',
            json_build_object(
                'record_id', NEW.id,
                'status', NEW.status,
                'category', NEW.category
            )::text
        );
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS ingested_records_posted ON ingested_records",
    """
    CREATE TRIGGER ingested_records_posted
        AFTER UPDATE OF status ON ingested_records
        FOR EACH ROW
        WHEN (OLD.status = 'unposted' AND NEW.status = 'posted')
        EXECUTE FUNCTION notify_record_posted()
    """,
]
