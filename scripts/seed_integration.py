from __future__ import annotations

import argparse
import asyncio
import json
import sys

from entitysync.core.errors import ConfigurationError
from entitysync.core.integrations import get_integration
from entitysync.core.logging import configure_logging
from entitysync.persistence.db import SessionLocal
from entitysync.persistence.repos import integrations as integrations_repo
from entitysync.services.sync.reconciler import JobReconciler


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Enable an integration for a tenant and seed its sync jobs")
    parser.add_argument("tenant_id", help="Tenant to enable the integration for")
    parser.add_argument("integration_id", help="Catalogue id, e.g. dattormm or microsoft-365")
    parser.add_argument("--config", default=None, help="Connector config as a JSON object")
    parser.add_argument("--connection-name", default=None, help="Create one active connection with this name")
    parser.add_argument(
        "--site",
        action="append",
        default=[],
        metavar="SITE_ID=EXTERNAL_ID",
        help="Map a source company/site external id onto a local site (repeatable)",
    )
    parser.add_argument("--no-reconcile", action="store_true", help="Skip seeding sync jobs")
    return parser


def _parse_sites(values: list[str]) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for value in values:
        site_id, sep, external_id = value.partition("=")
        if not sep or not site_id or not external_id:
            raise ValueError(f"Invalid --site value {value!r}; expected SITE_ID=EXTERNAL_ID")
        pairs.append((site_id, external_id))
    return pairs


async def _seed(args: argparse.Namespace) -> int:
    if get_integration(args.integration_id) is None:
        raise ConfigurationError(f"Unknown integration: {args.integration_id}")
    config = json.loads(args.config) if args.config else None
    sites = _parse_sites(args.site)

    async with SessionLocal() as session:
        await integrations_repo.upsert_tenant_integration(
            session,
            tenant_id=args.tenant_id,
            integration_id=args.integration_id,
            enabled=True,
            config_json=config,
        )
        connection_id = None
        if args.connection_name:
            connection = await integrations_repo.create_connection(
                session,
                tenant_id=args.tenant_id,
                integration_id=args.integration_id,
                name=args.connection_name,
            )
            connection_id = connection.id
        for site_id, external_id in sites:
            await integrations_repo.create_site_mapping(
                session,
                tenant_id=args.tenant_id,
                integration_id=args.integration_id,
                connection_id=connection_id,
                site_id=site_id,
                external_id=external_id,
            )
        await session.commit()

    print("integration seeded:")
    print(f"  tenant_id: {args.tenant_id}")
    print(f"  integration_id: {args.integration_id}")
    print(f"  connection_id: {connection_id}")
    print(f"  site_mappings: {len(sites)}")
    if not args.no_reconcile:
        created = await JobReconciler().reconcile()
        print(f"  sync_jobs_created: {created}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_seed(args))
    except Exception as exc:  # noqa: BLE001 - surface seed failures clearly in CLI output.
        print(f"seed_integration failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
