"""Admin CLI for the media sync service."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any
from urllib.parse import urlparse

import httpx

_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}
TOKEN_ENV_VAR = "MEDIASYNC_ADMIN_TOKEN"


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


class AdminClient:
    """Thin wrapper over the admin HTTP API."""

    def __init__(
        self,
        server_url: str,
        token: str,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.client = httpx.Client(
            base_url=self.server_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=300.0,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> AdminClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        response.raise_for_status()
        result: dict[str, Any] = response.json()
        return result

    def verify(self, *, fix_conflicts: bool = False, fix_missing: bool = False) -> dict[str, Any]:
        if fix_conflicts or fix_missing:
            return self._json(
                self.client.post(
                    "/api/sync/verify",
                    json={"fix_conflicts": fix_conflicts, "fix_missing_in_database": fix_missing},
                )
            )
        return self._json(self.client.get("/api/sync/verify"))

    def sync(self, *, single_asset: str | None = None, force: bool = False) -> dict[str, Any]:
        body: dict[str, Any] = {"force": force}
        if single_asset:
            body["single_asset"] = single_asset
        return self._json(self.client.post("/api/cloudinary/sync", json=body))

    def cleanup(self, *, limit: int | None = None, force_retry: bool = False) -> dict[str, Any]:
        body: dict[str, Any] = {"force_retry": force_retry}
        if limit is not None:
            body["limit"] = limit
        return self._json(self.client.post("/api/cloudinary/cleanup", json=body))

    def queue(self) -> dict[str, Any]:
        return self._json(self.client.get("/api/cloudinary/cleanup"))

    def scheduler(self, action: str) -> dict[str, Any]:
        if action == "status":
            return self._json(self.client.get("/api/cloudinary/scheduler"))
        return self._json(self.client.post("/api/cloudinary/scheduler", json={"action": action}))

    def snapshot(self, snapshot_type: str = "manual") -> dict[str, Any]:
        return self._json(
            self.client.post("/api/sync/snapshots", json={"snapshot_type": snapshot_type})
        )


def print_verification(result: dict[str, Any]) -> None:
    summary = result.get("summary", {})
    verification = result.get("verification", {})
    print("Sync Verification:")
    print(f"  Cloudinary assets:     {summary.get('total_cloudinary_assets', 0)}")
    print(f"  Database assets:       {summary.get('total_database_assets', 0)}")
    print(f"  Missing in database:   {summary.get('missing_in_database', 0)}")
    print(f"  Missing in Cloudinary: {summary.get('missing_in_cloudinary', 0)}")
    print(f"  Conflicts:             {summary.get('sync_conflicts', 0)}")
    for conflict in verification.get("sync_conflicts", []):
        print(f"    ! {conflict['public_id']} ({conflict['issue']})")
    for rec in verification.get("recommendations", []):
        print(f"  - {rec}")
    fixes = result.get("fix_results")
    if fixes:
        print(
            f"  Fixed: {fixes.get('fixed_missing_in_database', 0)} imported, "
            f"{fixes.get('fixed_conflicts', 0)} conflicts"
        )
        for error in fixes.get("fix_errors", []):
            print(f"    x {error}")


def print_cleanup(result: dict[str, Any]) -> None:
    summary = result.get("summary", {})
    print("Cleanup:")
    print(f"  Processed: {summary.get('processed', 0)}")
    print(f"  Succeeded: {summary.get('succeeded', 0)}")
    print(f"  Retrying:  {summary.get('retried', 0)}")
    print(f"  Failed:    {summary.get('failed', 0)}")
    print(f"  Remaining: {summary.get('remaining', 0)}")
    for item in summary.get("items", []):
        if item.get("error"):
            print(f"    x {item['public_id']}: {item['error']}")


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="mediasync-admin",
        description="Administer the media sync service",
    )
    parser.add_argument("--server", "-s", default="http://localhost:8000", help="Server URL")
    parser.add_argument("--token", "-t", help=f"Admin API token (default: ${TOKEN_ENV_VAR})")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--json", action="store_true", help="Print raw JSON responses")

    subparsers = parser.add_subparsers(dest="command")
    verify = subparsers.add_parser("verify", help="Compare Cloudinary and the database")
    verify.add_argument("--fix-conflicts", action="store_true")
    verify.add_argument("--fix-missing", action="store_true")
    sync = subparsers.add_parser("sync", help="Run a full or single-asset sync")
    sync.add_argument("--single", metavar="PUBLIC_ID")
    sync.add_argument("--force", action="store_true")
    cleanup = subparsers.add_parser("cleanup", help="Drain the cleanup queue")
    cleanup.add_argument("--limit", type=int)
    cleanup.add_argument("--force-retry", action="store_true")
    subparsers.add_parser("queue", help="Show cleanup queue status")
    scheduler = subparsers.add_parser("scheduler", help="Inspect or control the scheduler")
    scheduler.add_argument("action", choices=["status", "start", "stop"])
    snapshot = subparsers.add_parser("snapshot", help="Record a status snapshot")
    snapshot.add_argument(
        "--type", default="manual", choices=["hourly", "daily", "manual", "error"]
    )

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    try:
        server_url = validate_server_url(args.server, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    token = args.token or os.environ.get(TOKEN_ENV_VAR)
    if not token:
        print(f"Error: --token or ${TOKEN_ENV_VAR} is required")
        return 1

    try:
        with AdminClient(server_url, token) as client:
            if args.command == "verify":
                result = client.verify(
                    fix_conflicts=args.fix_conflicts, fix_missing=args.fix_missing
                )
                printer = print_verification
            elif args.command == "sync":
                result = client.sync(single_asset=args.single, force=args.force)
                printer = _print_sync
            elif args.command == "cleanup":
                result = client.cleanup(limit=args.limit, force_retry=args.force_retry)
                printer = print_cleanup
            elif args.command == "queue":
                result = client.queue()
                printer = _print_queue
            elif args.command == "scheduler":
                result = client.scheduler(args.action)
                printer = _print_scheduler
            else:
                result = client.snapshot(args.type)
                printer = _print_snapshot
    except httpx.HTTPStatusError as exc:
        print(f"Error: {exc.response.status_code} {exc.response.text[:200]}")
        return 2
    except httpx.HTTPError as exc:
        print(f"Error: {exc}")
        return 2

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        printer(result)
    return 0


def _print_sync(result: dict[str, Any]) -> None:
    data = result.get("data", {})
    print(f"Sync {'succeeded' if result.get('success') else 'finished with errors'}:")
    print(f"  Created: {data.get('synced_items', 0)}")
    print(f"  Updated: {data.get('updated_items', 0)}")
    for error in data.get("errors", []):
        print(f"    x {error}")


def _print_queue(result: dict[str, Any]) -> None:
    print("Cleanup queue:")
    for key, value in result.get("stats", {}).items():
        print(f"  {key:<11}{value}")


def _print_scheduler(result: dict[str, Any]) -> None:
    stats = result.get("stats", {})
    print(f"Scheduler: {'running' if stats.get('is_running') else 'stopped'}")
    print(f"  Last run:     {stats.get('last_run') or '-'}")
    print(f"  Next run:     {stats.get('next_run') or '-'}")
    print(f"  Success rate: {stats.get('success_rate', 0)}%")


def _print_snapshot(result: dict[str, Any]) -> None:
    print(f"Snapshot {result.get('id')}: {result.get('system_health')}")
    print(f"  Assets: {result.get('total_assets', 0)} (errors: {result.get('error_assets', 0)})")
    print(f"  Error rate: {result.get('error_rate', 0)}%")


if __name__ == "__main__":
    sys.exit(main())
