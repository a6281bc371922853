#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from credportal.domain.session import SYSTEM_SESSION
from credportal.logging_config import configure_logging
from credportal.services.container import build_services


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Re-dispatch generated contracts and regenerate failed ones")
    parser.add_argument(
        "--contract-id",
        action="append",
        dest="contract_ids",
        help="Contract to reprocess (repeatable); defaults to every generated or failed contract",
    )
    parser.add_argument(
        "--serve-expired-sanctions",
        action="store_true",
        help="Also mark active sanctions past their end date as served",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    services = build_services()
    configure_logging(level=services.config.log_level)

    report = services.contracts.reprocess_stuck_contracts(SYSTEM_SESSION, args.contract_ids)
    output = {
        "persistence": "supabase" if services.using_supabase else "memory",
        "contracts": report.as_response(),
    }
    if args.serve_expired_sanctions:
        output["sanctions"] = services.sanctions.serve_expired_sanctions(SYSTEM_SESSION).as_response()

    print(json.dumps(output, indent=2))
    services.close()


if __name__ == "__main__":
    main()
