#!/usr/bin/env python3
"""Create database tables for Entitlement Sync."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. amember_installations (administered out-of-band)
CREATE TABLE IF NOT EXISTS amember_installations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name VARCHAR(100) NOT NULL,
    slug VARCHAR(100) UNIQUE NOT NULL,
    api_url VARCHAR(255) NOT NULL,
    ip_address VARCHAR(45) UNIQUE,
    login_url VARCHAR(255),
    button_text VARCHAR(100),
    api_key VARCHAR(255) NOT NULL,
    webhook_secret VARCHAR(255),
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_amember_installations_active ON amember_installations(is_active);

-- 2. users: link columns for installation-backed identities
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) NOT NULL,
    name VARCHAR(255),
    username VARCHAR(255) UNIQUE,
    password VARCHAR(255) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
ALTER TABLE users ADD COLUMN IF NOT EXISTS amember_user_id VARCHAR(64);
ALTER TABLE users ADD COLUMN IF NOT EXISTS amember_installation_id UUID
    REFERENCES amember_installations(id) ON DELETE SET NULL;
CREATE UNIQUE INDEX IF NOT EXISTS uq_users_amember_link
    ON users(amember_installation_id, amember_user_id)
    WHERE amember_user_id IS NOT NULL AND amember_installation_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_users_email_lower ON users(lower(email));

-- 3. amember_subscriptions (entitlement records)
CREATE TABLE IF NOT EXISTS amember_subscriptions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    installation_id UUID NOT NULL REFERENCES amember_installations(id) ON DELETE CASCADE,
    access_id VARCHAR(64) NOT NULL,
    user_id VARCHAR(64),
    local_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
    product_id VARCHAR(64),
    begin_date TIMESTAMPTZ,
    expire_date TIMESTAMPTZ,
    status VARCHAR(20) NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(installation_id, access_id)
);
ALTER TABLE amember_subscriptions ADD COLUMN IF NOT EXISTS local_user_id UUID
    REFERENCES users(id) ON DELETE SET NULL;
CREATE INDEX IF NOT EXISTS idx_amember_subscriptions_user ON amember_subscriptions(installation_id, user_id);
CREATE INDEX IF NOT EXISTS idx_amember_subscriptions_local_user ON amember_subscriptions(local_user_id);
CREATE INDEX IF NOT EXISTS idx_amember_subscriptions_user_product ON amember_subscriptions(user_id, product_id);
CREATE INDEX IF NOT EXISTS idx_amember_subscriptions_status ON amember_subscriptions(user_id, status);

-- 4. amember_products (product mappings)
CREATE TABLE IF NOT EXISTS amember_products (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    installation_id UUID NOT NULL REFERENCES amember_installations(id) ON DELETE CASCADE,
    product_id VARCHAR(64) NOT NULL,
    title VARCHAR(255),
    tier VARCHAR(100),
    display_name VARCHAR(255),
    slug VARCHAR(255),
    mappable_type VARCHAR(255),
    mappable_id VARCHAR(64),
    features JSONB,
    metadata JSONB,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(installation_id, product_id)
);
CREATE INDEX IF NOT EXISTS idx_amember_products_tier ON amember_products(installation_id, tier);
CREATE INDEX IF NOT EXISTS idx_amember_products_mappable ON amember_products(mappable_type, mappable_id);

-- 5. amember_webhook_logs (append-only audit)
CREATE TABLE IF NOT EXISTS amember_webhook_logs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    event_type VARCHAR(100) NOT NULL,
    status VARCHAR(20) NOT NULL,
    payload TEXT,
    message TEXT,
    ip_address VARCHAR(45),
    installation_id UUID REFERENCES amember_installations(id) ON DELETE SET NULL,
    request_id VARCHAR(100),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_amember_webhook_logs_event_type ON amember_webhook_logs(event_type);
CREATE INDEX IF NOT EXISTS idx_amember_webhook_logs_status ON amember_webhook_logs(status);
CREATE INDEX IF NOT EXISTS idx_amember_webhook_logs_created_at ON amember_webhook_logs(created_at);

-- 6. amember_webhook_jobs (durable queue)
CREATE TABLE IF NOT EXISTS amember_webhook_jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    queue_name VARCHAR(100) NOT NULL,
    installation_id UUID NOT NULL,
    declared_event VARCHAR(100),
    kind VARCHAR(50) NOT NULL,
    event JSONB NOT NULL,
    snapshot JSONB NOT NULL DEFAULT '{}'::jsonb,
    status VARCHAR(20) NOT NULL DEFAULT 'queued',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    available_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    claimed_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ,
    last_error TEXT,
    request_id VARCHAR(100),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_amember_webhook_jobs_due ON amember_webhook_jobs(queue_name, status, available_at);
CREATE INDEX IF NOT EXISTS idx_amember_webhook_jobs_claimed ON amember_webhook_jobs(status, claimed_at);

-- 7. super_admins (operators)
CREATE TABLE IF NOT EXISTS super_admins (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) UNIQUE NOT NULL,
    password_hash VARCHAR(255) NOT NULL,
    name VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 8. observability_metric_snapshots
CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(100) NOT NULL,
    request_id VARCHAR(100),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_observability_metric_snapshots_created_at
    ON observability_metric_snapshots(created_at);
"""

def main():
    print(f"Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables present: {[t[0] for t in tables]}")

    cur.execute("SELECT slug, ip_address, is_active FROM amember_installations ORDER BY slug;")
    installations = cur.fetchall()
    print(f"Installations: {installations}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
