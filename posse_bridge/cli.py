"""CLI entry point for posse-bridge.

Usage:
    posse-bridge serve [--host HOST] [--port PORT]
    posse-bridge publish --source-id ID --title TITLE --url URL [--excerpt TEXT] [--account ID]
    posse-bridge retry
    posse-bridge import-events [--org ORG_ID ...]
    posse-bridge log [--failures] [--source ID]
    posse-bridge actions list|submit|approve|reject|pin|priority ...
    posse-bridge keygen KEY_FILE
    posse-bridge link ACCOUNT --token-file FILE --key-file FILE
    posse-bridge disconnect ACCOUNT
    posse-bridge status
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

from posse_bridge.civic_actions import STATUS_APPROVED, CivicAction
from posse_bridge.config import BridgeConfig, load_config
from posse_bridge.credentials import AuthGrant
from posse_bridge.dpop import ProofKey
from posse_bridge.errors import BridgeError, PublishInProgressError, RetryablePublishError
from posse_bridge.factory import Bridge, build_bridge
from posse_bridge.logging_config import configure_logging
from posse_bridge.pipeline import PublishTrigger
from posse_bridge.sync_log import SyncLogEntry
from posse_bridge.transform import Article


def _print_entry(entry: SyncLogEntry) -> None:
    ref = entry.target_ref or {}
    detail = ref.get("uri") or entry.error or "N/A"
    kind = f" ({entry.error_kind})" if entry.error_kind else ""
    print(f"  [{entry.status.upper()}{kind}] {entry.source_id} → {entry.account_id}: {detail}")


def _print_action(action: CivicAction) -> None:
    pin = "*" if action.is_pinned else " "
    print(f"  {pin} [{action.status}] p{action.priority:<3} {action.action_id} "
          f"{action.event_date or '-'} {action.title}")


def cmd_serve(bridge: Bridge, host: str, port: int) -> None:
    import uvicorn

    from posse_bridge.webhook import create_app
    uvicorn.run(create_app(bridge), host=host, port=port, log_config=None)


def cmd_publish(bridge: Bridge, source_id: str, title: str, url: str,
                excerpt: str, account_id: str | None) -> None:
    trigger = PublishTrigger(
        source_id=source_id,
        account_id=account_id or bridge.config.default_account_id,
        article=Article(source_id=source_id, title=title, url=url, excerpt=excerpt),
    )
    try:
        entry = bridge.pipeline.publish(trigger)
    except PublishInProgressError as exc:
        print(str(exc))
        return
    except RetryablePublishError as exc:
        _print_entry(exc.entry)
        sys.exit(1)
    _print_entry(entry)
    if not entry.is_success:
        sys.exit(1)


def cmd_retry(bridge: Bridge) -> None:
    results = bridge.pipeline.retry_failed()
    print(f"Retried: {len(results)}")
    for entry in results:
        _print_entry(entry)


def cmd_import(bridge: Bridge, org_ids: list[int] | None) -> None:
    result = bridge.importer.import_events(org_ids)
    print(f"Synced: {result.synced}  Skipped: {result.skipped}  Errors: {result.errors}")


def cmd_log(bridge: Bridge, failures_only: bool, source_id: str | None) -> None:
    log = bridge.sync_log
    if source_id:
        records = log.get_by_source(source_id)
    else:
        records = log.get_failures() if failures_only else log.all_records
    print(f"{'Failures' if failures_only else 'All records'}: {len(records)}")
    for r in records:
        _print_entry(r)


def cmd_actions(bridge: Bridge, args: argparse.Namespace) -> None:
    store = bridge.civic_actions
    if args.action_command == "list":
        if args.status == STATUS_APPROVED:
            actions = store.list_approved()
        else:
            actions = store.list(args.status)
        print(f"Civic actions: {len(actions)}")
        for action in actions:
            _print_action(action)
        return

    if args.action_command == "submit":
        action = store.submit(args.title, args.description or "", event_date=args.event_date,
                              location=args.location, external_url=args.url)
    elif args.action_command == "approve":
        action = store.approve(args.action_id, pinned=args.pin)
    elif args.action_command == "reject":
        action = store.reject(args.action_id, args.reason or "")
    elif args.action_command == "pin":
        action = store.toggle_pin(args.action_id)
    else:
        action = store.set_priority(args.action_id, args.priority)
    _print_action(action)


def cmd_keygen(key_file: Path) -> None:
    key = ProofKey.generate()
    key_file.write_text(json.dumps(key.to_jwk(), indent=2), encoding="utf-8")
    print(f"Wrote proof key {key.thumbprint()} to {key_file}")


def cmd_link(bridge: Bridge, account_id: str, token_file: Path, key_file: Path,
             token_endpoint: str | None, service_url: str | None) -> None:
    token = json.loads(token_file.read_text(encoding="utf-8"))
    key = ProofKey.from_jwk(json.loads(key_file.read_text(encoding="utf-8")))
    grant = AuthGrant.from_token_response(
        account_id,
        token,
        key,
        token_endpoint=token_endpoint or bridge.config.token_endpoint,
        service_url=service_url or bridge.config.bluesky_service_url,
        now=time.time(),
    )
    bridge.sessions.link(grant)
    print(f"Linked {account_id} as {grant.subject}")


def cmd_disconnect(bridge: Bridge, account_id: str) -> None:
    if bridge.sessions.disconnect(account_id):
        print(f"Disconnected {account_id}")
    else:
        print(f"No grant linked for {account_id}")


def cmd_status(cfg: BridgeConfig, bridge: Bridge) -> None:
    print(f"Live mode: {cfg.live_mode}")
    print(f"Data dir:  {cfg.data_dir or 'in-memory'}")
    print(f"Webhook:   {'configured' if cfg.ghost_webhook_secret else 'no secret configured'}")
    print(f"Accounts:  {', '.join(bridge.credentials.account_ids) or 'none linked'}")
    print(f"Mobilize:  orgs {', '.join(str(o) for o in cfg.mobilize_org_ids) or 'none'}")
    print(f"Sync log:  {bridge.sync_log.total_records} records, "
          f"{len(bridge.sync_log.retryable())} awaiting retry")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="posse-bridge", description="Ghost → Bluesky POSSE bridge")
    parser.add_argument("--config", type=Path, default=None, help="Config YAML file")
    sub = parser.add_subparsers(dest="command")

    serve_p = sub.add_parser("serve", help="Run the webhook and admin HTTP server")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8000)

    publish_p = sub.add_parser("publish", help="Publish one article to Bluesky")
    publish_p.add_argument("--source-id", required=True)
    publish_p.add_argument("--title", required=True)
    publish_p.add_argument("--url", required=True)
    publish_p.add_argument("--excerpt", default="")
    publish_p.add_argument("--account", default=None)

    sub.add_parser("retry", help="Re-publish articles whose last attempt failed transiently")

    import_p = sub.add_parser("import-events", help="Import upcoming Mobilize events")
    import_p.add_argument("--org", type=int, action="append", dest="org_ids",
                          help="Organization id (repeatable; default from config)")

    log_p = sub.add_parser("log", help="View sync log")
    log_p.add_argument("--failures", action="store_true")
    log_p.add_argument("--source", default=None)

    actions_p = sub.add_parser("actions", help="Moderate civic actions")
    actions_sub = actions_p.add_subparsers(dest="action_command", required=True)
    list_p = actions_sub.add_parser("list")
    list_p.add_argument("--status", choices=["pending", "approved", "rejected"], default=None)
    submit_p = actions_sub.add_parser("submit")
    submit_p.add_argument("--title", required=True)
    submit_p.add_argument("--description", default="")
    submit_p.add_argument("--event-date", default=None)
    submit_p.add_argument("--location", default=None)
    submit_p.add_argument("--url", default=None)
    approve_p = actions_sub.add_parser("approve")
    approve_p.add_argument("action_id")
    approve_p.add_argument("--pin", action="store_true")
    reject_p = actions_sub.add_parser("reject")
    reject_p.add_argument("action_id")
    reject_p.add_argument("--reason", default="")
    pin_p = actions_sub.add_parser("pin")
    pin_p.add_argument("action_id")
    priority_p = actions_sub.add_parser("priority")
    priority_p.add_argument("action_id")
    priority_p.add_argument("priority", type=int)

    keygen_p = sub.add_parser("keygen", help="Generate a DPoP proof key (private JWK)")
    keygen_p.add_argument("key_file", type=Path)

    link_p = sub.add_parser("link", help="Store a grant from an authorization token response")
    link_p.add_argument("account_id")
    link_p.add_argument("--token-file", type=Path, required=True)
    link_p.add_argument("--key-file", type=Path, required=True)
    link_p.add_argument("--token-endpoint", default=None)
    link_p.add_argument("--service-url", default=None)

    disconnect_p = sub.add_parser("disconnect", help="Revoke and delete an account's grant")
    disconnect_p.add_argument("account_id")

    sub.add_parser("status", help="Show configuration status")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    if args.command == "keygen":
        cmd_keygen(args.key_file)
        return

    cfg = load_config(args.config)
    configure_logging(cfg.log_level)
    bridge = build_bridge(cfg)

    try:
        if args.command == "serve":
            cmd_serve(bridge, args.host, args.port)
        elif args.command == "publish":
            cmd_publish(bridge, args.source_id, args.title, args.url, args.excerpt, args.account)
        elif args.command == "retry":
            cmd_retry(bridge)
        elif args.command == "import-events":
            cmd_import(bridge, args.org_ids)
        elif args.command == "log":
            cmd_log(bridge, args.failures, args.source)
        elif args.command == "actions":
            cmd_actions(bridge, args)
        elif args.command == "link":
            cmd_link(bridge, args.account_id, args.token_file, args.key_file,
                     args.token_endpoint, args.service_url)
        elif args.command == "disconnect":
            cmd_disconnect(bridge, args.account_id)
        elif args.command == "status":
            cmd_status(cfg, bridge)
    except BridgeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
