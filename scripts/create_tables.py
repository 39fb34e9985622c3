#!/usr/bin/env python3
"""Create the conversation, message and webhook audit tables."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. conversations
CREATE TABLE IF NOT EXISTS conversations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    phone VARCHAR(32) NOT NULL UNIQUE,
    display_name VARCHAR(255),
    archived BOOLEAN NOT NULL DEFAULT FALSE,
    unread_count INTEGER NOT NULL DEFAULT 0 CHECK (unread_count >= 0),
    last_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_conversations_last_at ON conversations(last_at DESC);

CREATE OR REPLACE FUNCTION increment_conversation_unread(target_id UUID)
RETURNS INTEGER
LANGUAGE sql
AS $$
    UPDATE conversations
    SET unread_count = unread_count + 1, updated_at = NOW()
    WHERE id = target_id
    RETURNING unread_count;
$$;

-- 2. messages
CREATE TABLE IF NOT EXISTS messages (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    direction VARCHAR(10) NOT NULL CHECK (direction IN ('inbound', 'outbound')),
    body TEXT,
    media JSONB,
    provider_message_id VARCHAR(255),
    status VARCHAR(20),
    reply_to_message_id UUID REFERENCES messages(id) ON DELETE SET NULL,
    raw JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation_id ON messages(conversation_id, created_at);
CREATE UNIQUE INDEX IF NOT EXISTS uq_messages_provider_message_id
    ON messages(provider_message_id) WHERE provider_message_id IS NOT NULL;

-- 3. webhook_events
CREATE TABLE IF NOT EXISTS webhook_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    provider_slug VARCHAR(50) NOT NULL,
    event_type VARCHAR(20) NOT NULL,
    status_code INTEGER NOT NULL,
    headers JSONB NOT NULL DEFAULT '{}'::jsonb,
    query JSONB NOT NULL DEFAULT '{}'::jsonb,
    body JSONB,
    response JSONB NOT NULL DEFAULT '{}'::jsonb,
    error TEXT,
    request_id VARCHAR(100),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_webhook_events_created_at ON webhook_events(created_at DESC);
"""


def main():
    if not DATABASE_URL:
        raise SystemExit("DATABASE_URL is not set")

    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
