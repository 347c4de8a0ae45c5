#!/usr/bin/env python3
"""
Register or update one external subscription installation.

Reads INSTALLATION_NAME, INSTALLATION_SLUG, INSTALLATION_API_URL, INSTALLATION_API_KEY and the
optional INSTALLATION_IP_ADDRESS, INSTALLATION_WEBHOOK_SECRET, INSTALLATION_LOGIN_URL from .env.
Run from project root: python scripts/register_installation.py
"""

import sys
import os

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from entitlement_sync.config import settings
from entitlement_sync.db import supabase

REQUIRED = ("INSTALLATION_NAME", "INSTALLATION_SLUG", "INSTALLATION_API_URL", "INSTALLATION_API_KEY")


def main():
    missing = [key for key in REQUIRED if not os.getenv(key)]
    if missing:
        print(f"Error: missing {', '.join(missing)} in .env")
        sys.exit(1)

    row = {
        "name": os.getenv("INSTALLATION_NAME"),
        "slug": os.getenv("INSTALLATION_SLUG"),
        "api_url": os.getenv("INSTALLATION_API_URL").rstrip("/"),
        "api_key": os.getenv("INSTALLATION_API_KEY"),
        "ip_address": os.getenv("INSTALLATION_IP_ADDRESS") or None,
        "webhook_secret": os.getenv("INSTALLATION_WEBHOOK_SECRET") or None,
        "login_url": os.getenv("INSTALLATION_LOGIN_URL") or None,
        "is_active": True,
    }
    table = supabase.table(settings.table_names().installations)

    if row["ip_address"]:
        clash = table.select("id, slug").eq("ip_address", row["ip_address"]).execute()
        others = [r for r in clash.data or [] if r["slug"] != row["slug"]]
        if others:
            print(f"Error: ip_address {row['ip_address']} already belongs to '{others[0]['slug']}'")
            sys.exit(1)

    existing = table.select("id").eq("slug", row["slug"]).execute()
    if existing.data:
        result = table.update(row).eq("id", existing.data[0]["id"]).execute()
        action = "Updated"
    else:
        result = table.insert(row).execute()
        action = "Registered"

    if not result.data:
        print("Error: installation write returned no rows")
        sys.exit(1)

    installation = result.data[0]
    print(f"{action} installation '{installation['slug']}' (id={installation['id']})")
    if not row["webhook_secret"]:
        print("  Warning: no webhook secret set; webhooks from this installation are unsigned.")


if __name__ == "__main__":
    main()
