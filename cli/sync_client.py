"""CLI client for the photo sync server."""

from __future__ import annotations

import argparse
import json
import mimetypes
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

CONFIG_FILE = ".photo-sync.json"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


class SyncClientError(Exception):
    """Raised when the server rejects a request or a stream ends with an error event."""


class SyncClient:
    """Client for one tenant on a photo sync server."""

    def __init__(
        self,
        server_url: str,
        tenant_id: str,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.tenant_id = tenant_id
        self.client = httpx.Client(
            base_url=self.server_url,
            headers={"X-Tenant-Id": tenant_id},
            timeout=httpx.Timeout(30.0, read=None),
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> SyncClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        try:
            detail = resp.json().get("detail", resp.text)
        except ValueError:
            detail = resp.text
        raise SyncClientError(f"Server returned {resp.status_code}: {detail}")

    def _stream_events(self, request: httpx.Request) -> Iterator[dict[str, Any]]:
        resp = self.client.send(request, stream=True)
        try:
            if not resp.is_success:
                resp.read()
                self._raise_for_status(resp)
            for line in resp.iter_lines():
                if not line.strip():
                    continue
                event: dict[str, Any] = json.loads(line)
                if event.get("type") == "error":
                    message = event.get("payload", {}).get("message", "unknown error")
                    raise SyncClientError(message)
                yield event
        finally:
            resp.close()

    def run(self, *, dry_run: bool = False) -> Iterator[dict[str, Any]]:
        """Start a reconciliation run and yield its progress events."""
        request = self.client.build_request("POST", "/api/sync/run", json={"dry_run": dry_run})
        return self._stream_events(request)

    def status(self) -> dict[str, Any]:
        resp = self.client.get("/api/sync/status")
        self._raise_for_status(resp)
        result: dict[str, Any] = resp.json()
        return result

    def conflicts(self) -> list[dict[str, Any]]:
        resp = self.client.get("/api/sync/conflicts")
        self._raise_for_status(resp)
        result: list[dict[str, Any]] = resp.json()
        return result

    def resolve(self, record_id: int, strategy: str, *, dry_run: bool = False) -> dict[str, Any]:
        resp = self.client.post(
            f"/api/sync/conflicts/{record_id}/resolve",
            json={"strategy": strategy, "dry_run": dry_run},
        )
        self._raise_for_status(resp)
        result: dict[str, Any] = resp.json()
        return result

    def upload(
        self, paths: list[Path], *, directory: str | None = None
    ) -> Iterator[dict[str, Any]]:
        """Upload files and yield the upload's progress events."""
        files = [
            (
                "files",
                (
                    path.name,
                    path.read_bytes(),
                    mimetypes.guess_type(path.name)[0] or "application/octet-stream",
                ),
            )
            for path in paths
        ]
        data = {"directory": directory} if directory else None
        request = self.client.build_request("POST", "/api/photos/upload", files=files, data=data)
        return self._stream_events(request)


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


def load_config(dir_path: Path) -> dict[str, str]:
    """Load CLI configuration."""
    config_path = dir_path / CONFIG_FILE
    if not config_path.exists():
        return {}
    data: dict[str, str] = json.loads(config_path.read_text())
    return data


def save_config(dir_path: Path, config: dict[str, str]) -> None:
    """Save CLI configuration."""
    config_path = dir_path / CONFIG_FILE
    config_path.write_text(json.dumps(config, indent=2))


def format_event(event: dict[str, Any]) -> str | None:
    """One human-readable line for a progress event, or None to stay quiet."""
    payload = event.get("payload", {})
    event_type = event.get("type")
    if event_type == "start":
        totals = payload.get("totals", {})
        parts = ", ".join(f"{stage}={count}" for stage, count in totals.items())
        return f"Starting: {parts}"
    if event_type == "stage" and payload.get("status") == "complete":
        return f"  {payload['stage']}: {payload['processed']}/{payload['total']}"
    if event_type == "action":
        action = payload.get("action", {})
        marker = "" if action.get("applied") else " (not applied)"
        return f"    {action.get('type')} {action.get('storage_key')}{marker}"
    if event_type == "log" and payload.get("level") in {"warn", "error"}:
        return f"    [{payload['level']}] {payload.get('message')}"
    if event_type == "complete":
        summary = payload.get("summary", {})
        parts = ", ".join(f"{key}={value}" for key, value in summary.items())
        return f"Done: {parts}"
    return None


def _print_events(events: Iterator[dict[str, Any]], out: Callable[[str], None] = print) -> None:
    for event in events:
        line = format_event(event)
        if line is not None:
            out(line)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="photo-sync",
        description="Reconcile photo storage with the catalogue on a photo sync server",
    )
    parser.add_argument("--dir", "-d", default=".", help="Config directory (default: current)")
    parser.add_argument("--server", "-s", help="Server URL")
    parser.add_argument("--tenant", "-t", help="Tenant id")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init", help="Save server and tenant configuration")
    run_parser = subparsers.add_parser("run", help="Run a reconciliation")
    run_parser.add_argument("--dry-run", action="store_true", help="Preview without writing")
    subparsers.add_parser("status", help="Show the last sync run")
    subparsers.add_parser("conflicts", help="List conflicts")
    resolve_parser = subparsers.add_parser("resolve", help="Resolve one conflict")
    resolve_parser.add_argument("id", type=int, help="Conflict record id")
    resolve_parser.add_argument(
        "--strategy",
        choices=["prefer-storage", "prefer-database"],
        default="prefer-storage",
    )
    resolve_parser.add_argument("--dry-run", action="store_true", help="Preview without writing")
    upload_parser = subparsers.add_parser("upload", help="Upload photos and Live Photo videos")
    upload_parser.add_argument("files", nargs="+", help="Files to upload")
    upload_parser.add_argument("--directory", help="Storage directory for the uploads")

    args = parser.parse_args(argv)
    config_dir = Path(args.dir).resolve()

    if args.command == "init":
        if not args.server or not args.tenant:
            print("Error: --server and --tenant required for init")
            sys.exit(1)
        try:
            server_url = validate_server_url(args.server, args.allow_insecure_http)
        except ValueError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        save_config(config_dir, {"server": server_url, "tenant": args.tenant})
        print(f"Initialized sync config in {config_dir / CONFIG_FILE}")
        return

    config = load_config(config_dir)
    configured_server_url = args.server or config.get("server")
    tenant_id = args.tenant or config.get("tenant")
    if not configured_server_url or not tenant_id:
        print("Error: No server configured. Run 'photo-sync init --server <url> --tenant <id>'.")
        sys.exit(1)
    try:
        server_url = validate_server_url(configured_server_url, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    try:
        with SyncClient(server_url, tenant_id) as client:
            if args.command == "run":
                _print_events(client.run(dry_run=args.dry_run))
            elif args.command == "status":
                last_run = client.status().get("last_run")
                if last_run is None:
                    print("No sync runs yet.")
                else:
                    mode = " (dry run)" if last_run["dry_run"] else ""
                    print(f"Last run {last_run['completed_at']}{mode}:")
                    for key, value in last_run["summary"].items():
                        print(f"  {key}: {value}")
            elif args.command == "conflicts":
                conflicts = client.conflicts()
                if not conflicts:
                    print("No conflicts.")
                for conflict in conflicts:
                    kind = (conflict.get("payload") or {}).get("type", "unknown")
                    print(f"  [{conflict['id']}] {conflict['storage_key']} ({kind})")
            elif args.command == "resolve":
                action = client.resolve(args.id, args.strategy, dry_run=args.dry_run)
                print(f"{action['type']} {action['storage_key']}: {action.get('reason') or ''}")
            elif args.command == "upload":
                paths = [Path(name) for name in args.files]
                missing = [str(path) for path in paths if not path.is_file()]
                if missing:
                    print(f"Error: not a file: {', '.join(missing)}")
                    sys.exit(1)
                _print_events(client.upload(paths, directory=args.directory))
            else:
                parser.print_help()
    except (SyncClientError, httpx.HTTPError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
