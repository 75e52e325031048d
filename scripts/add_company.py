"""Register a company and its DevPos / QuickBooks credentials.

Secrets are encrypted with ENCRYPTION_KEY before they reach the database.

Usage:
    python scripts/add_company.py --code ACME --name "Acme Sh.p.k" \
        --devpos-tenant acme --devpos-user api@acme.al --devpos-password ... \
        --realm-id 9130... --access-token ... --refresh-token ... --vat --vat-rate 20=TAX --vat-rate 0=EXEMPT:excluded
"""

import argparse
import sys
from datetime import datetime, timedelta
from pathlib import Path
import logging

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import SyncSettings
from core.db import init_db
from core.errors import ConfigurationError
from core.models.documents import VatRateMapping
from core.security.credential_store import CredentialStore
from mapping_store.db import save_vat_rate_mapping


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def parse_vat_rate(value: str, company_id: int) -> VatRateMapping:
    """'20=TAX' or '0=EXEMPT:excluded' -> VatRateMapping."""
    rate, _, code = value.partition("=")
    code, _, flag = code.partition(":")
    if not rate or not code:
        raise ValueError(f"Invalid --vat-rate {value!r}, expected RATE=CODE[:excluded]")
    return VatRateMapping(
        company_id=company_id,
        source_vat_rate=float(rate),
        target_tax_code=code,
        is_excluded=flag.lower() == "excluded",
    )


def main():
    parser = argparse.ArgumentParser(description="Register a company for DevPos to QuickBooks sync")
    parser.add_argument("--code", required=True, help="Short unique company code")
    parser.add_argument("--name", required=True, help="Company name")
    parser.add_argument("--vat", action="store_true", help="Company tracks VAT in QuickBooks")
    parser.add_argument("--devpos-tenant")
    parser.add_argument("--devpos-user")
    parser.add_argument("--devpos-password")
    parser.add_argument("--realm-id", help="QuickBooks realm (company) id")
    parser.add_argument("--access-token")
    parser.add_argument("--refresh-token")
    parser.add_argument("--expires-in", type=int, default=3600, help="Access token lifetime in seconds")
    parser.add_argument("--vat-rate", action="append", default=[], help="RATE=CODE[:excluded], repeatable")
    args = parser.parse_args()

    settings = SyncSettings.from_env()
    init_db(settings.db_path)

    try:
        store = CredentialStore.from_key(settings.encryption_key, settings.db_path)
        company = store.add_company(args.code, args.name, tracks_vat=args.vat)
        logger.info(f"Created company {company.id} ({company.company_code})")

        if args.devpos_tenant and args.devpos_user and args.devpos_password:
            store.save_source_credentials(company.id, args.devpos_tenant, args.devpos_user, args.devpos_password)
            logger.info("Stored DevPos credentials")

        if args.realm_id and args.refresh_token:
            store.save_target_credentials(
                company.id,
                args.realm_id,
                args.access_token or "",
                args.refresh_token,
                datetime.utcnow() + timedelta(seconds=args.expires_in) if args.access_token else None,
            )
            logger.info("Stored QuickBooks credentials")

        for value in args.vat_rate:
            mapping = save_vat_rate_mapping(parse_vat_rate(value, company.id), settings.db_path)
            logger.info(f"VAT {mapping.source_vat_rate}% -> {mapping.target_tax_code}")

    except (ConfigurationError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(company.id)
    return 0


if __name__ == "__main__":
    sys.exit(main())
