"""
Capture real Google Sheets values responses and save them as test fixtures.

Run this script with a project that has a stored Google connection:

    python scripts/capture_fixtures.py PROJECT_ID SPREADSHEET_ID SHEET_NAME [--name NAME]

Outputs (overwrite tests/fixtures/):
    sheet_values_<NAME>.json    raw `values` rows, header row first

These fixtures are used by the mapper and executor tests so they exercise
real cell formatting (currency strings, locale dates, ragged rows), not
hand-crafted guesses.
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Allow running from repo root without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from metricsync.db.engine import get_engine
from metricsync.sheets.client import GoogleSheetsFetcher
from metricsync.sheets.credentials import CredentialProvider
from metricsync.sync.errors import FetchError


FIXTURES_DIR = Path(__file__).parent.parent / "tests" / "fixtures"


def _save(name: str, data: object) -> None:
    path = FIXTURES_DIR / name
    path.write_text(json.dumps(data, indent=2, default=str))
    print(f"  ✅ Saved {path.relative_to(Path.cwd())} ({path.stat().st_size} bytes)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Capture real Google Sheets fixtures")
    parser.add_argument("project_id")
    parser.add_argument("spreadsheet_id")
    parser.add_argument("sheet_name")
    parser.add_argument("--name", help="Fixture suffix (default: sheet name, lowercased)")
    args = parser.parse_args()

    print("🔑 Loading Google credentials...")
    credentials = CredentialProvider(get_engine()).get_credentials(args.project_id)
    if credentials is None:
        print(f"❌ No Google connection stored for project {args.project_id}.")
        sys.exit(1)

    print(f"   Fetching {args.sheet_name!r} from {args.spreadsheet_id}...")
    try:
        rows = asyncio.run(GoogleSheetsFetcher().fetch_rows(args.spreadsheet_id, args.sheet_name, credentials))
    except FetchError as exc:
        print(f"❌ Fetch failed ({exc.kind.value}): {exc}")
        sys.exit(1)

    name = args.name or args.sheet_name.lower().replace(" ", "_")
    print("💾 Saving fixture...")
    _save(f"sheet_values_{name}.json", rows)

    print("\n⚠️  Check the saved file for customer data before committing.\n")
    print("📊 Summary:")
    print(f"   Header:  {rows[0] if rows else 'N/A'}")
    print(f"   Rows:    {max(len(rows) - 1, 0)}")


if __name__ == "__main__":
    main()
