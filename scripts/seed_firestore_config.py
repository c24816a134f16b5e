#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import time
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from google.cloud import firestore

from arb_agent.storage.settings import require_document_path

DEFAULT_CONFIG: dict[str, Any] = {
    "schema_version": 1,
    "min_spread_bps": 50.0,
    "min_profit_usd": 5.0,
    "reference_price_usd": "2450",
    "reference_max_age_seconds": 0.0,
    "trade_enabled": False,
    "order_guard_ttl_seconds": 60,
}


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(float(raw.strip()))
    except ValueError:
        return default


def parse_args() -> argparse.Namespace:
    bot_collection = (os.getenv("BOT_COLLECTION", "bots").strip("/") or "bots")
    bot_id = (os.getenv("BOT_ID", "arb-agent").strip() or "arb-agent").replace("/", "-")
    default_config_doc = os.getenv("FIRESTORE_CONFIG_DOC") or f"{bot_collection}/{bot_id}/config/runtime"

    parser = argparse.ArgumentParser(
        description="Seed the runtime trading config document in Firestore for the arbitrage agent.",
    )

    parser.add_argument(
        "--project-id",
        default=os.getenv("FIRESTORE_PROJECT_ID", ""),
        help="GCP project id. Defaults to FIRESTORE_PROJECT_ID from env.",
    )
    parser.add_argument(
        "--config-doc",
        default=default_config_doc,
        help="Firestore document path of the runtime config (collection/doc/...).",
    )
    parser.add_argument(
        "--credentials",
        default=os.getenv("FIREBASE_CREDENTIALS", ""),
        help="Service account json path. Defaults to FIREBASE_CREDENTIALS from env.",
    )
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Replace the full document (merge=false).",
    )
    parser.add_argument(
        "--print-only",
        action="store_true",
        help="Print resolved doc path and payload without writing to Firestore.",
    )
    parser.add_argument(
        "--reference-only",
        action="store_true",
        help="Only update reference_price_usd and its timestamp.",
    )

    parser.add_argument(
        "--schema-version",
        type=int,
        default=max(1, env_int("CONFIG_SCHEMA_VERSION", DEFAULT_CONFIG["schema_version"])),
    )
    parser.add_argument("--min-spread-bps", type=float, default=DEFAULT_CONFIG["min_spread_bps"])
    parser.add_argument("--min-profit-usd", type=float, default=DEFAULT_CONFIG["min_profit_usd"])
    parser.add_argument(
        "--reference-price-usd",
        default=DEFAULT_CONFIG["reference_price_usd"],
        help="Reference (off-venue) price of one base unit in USD, stored as a decimal string.",
    )
    parser.add_argument(
        "--reference-max-age-seconds",
        type=float,
        default=DEFAULT_CONFIG["reference_max_age_seconds"],
        help="Reject reference prices older than this. 0 disables the check.",
    )
    parser.add_argument(
        "--trade-enabled",
        action="store_true",
        help="Set trade_enabled=true. Omit to keep false by default.",
    )
    parser.add_argument(
        "--order-guard-ttl-seconds",
        type=int,
        default=DEFAULT_CONFIG["order_guard_ttl_seconds"],
    )



def build_payload(args: argparse.Namespace, *, now: float | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "reference_price_usd": str(args.reference_price_usd).strip(),
        "reference_price_updated_at": time.time() if now is None else now,
    }
    if args.reference_only:
        return payload

    payload.update(
        {
            "schema_version": max(1, int(args.schema_version)),
            "min_spread_bps": max(0.0, float(args.min_spread_bps)),
            "min_profit_usd": max(0.0, float(args.min_profit_usd)),
            "reference_max_age_seconds": max(0.0, float(args.reference_max_age_seconds)),
            "trade_enabled": bool(args.trade_enabled),
            "order_guard_ttl_seconds": max(1, int(args.order_guard_ttl_seconds)),
        }
    )
    return payload


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    load_dotenv(repo_root / ".env")

    args = parse_args()
    if args.reference_only and args.replace:
        raise ValueError("--reference-only cannot be combined with --replace.")

    target_doc_path = require_document_path(args.config_doc)
    payload = build_payload(args)

    credentials_path = args.credentials.strip()
    if credentials_path:
        os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = credentials_path

    project_id = args.project_id.strip()
    if not project_id:
        raise ValueError("FIRESTORE_PROJECT_ID is required (set env or --project-id).")

    print(f"[info] project_id={project_id}")
    print(f"[info] target_doc={target_doc_path}")
    print(f"[info] merge={not args.replace}")
    print("[info] payload=")
    print(json.dumps(payload, ensure_ascii=False, indent=2))

    if args.print_only:
        print("[info] print-only mode: skipped Firestore write")
        return

    client = firestore.Client(project=project_id)
    doc_ref = client.document(target_doc_path)
    doc_ref.set(payload, merge=not args.replace)

    print("[ok] Firestore config seeded successfully")


if __name__ == "__main__":
    main()
