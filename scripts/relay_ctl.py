#!/usr/bin/env python3
"""
Relay Control CLI - Administrative tool for LiveRelay.

Commands:
    relay_ctl.py follow <guild> <channel> <streamer> [--clips]
    relay_ctl.py unfollow <channel> <streamer> [--clips]
    relay_ctl.py list <channel>              - Follows of a Discord channel
    relay_ctl.py subscriptions               - Local subscription ledger
    relay_ctl.py sweep                       - Run one reconciliation sweep
    relay_ctl.py poll                        - Run one clip poll cycle
    relay_ctl.py status                      - Table counts + recent audit log
    relay_ctl.py rotate-key                  - New encryption key, credential re-encrypted
    relay_ctl.py template set|remove|show <guild> <kind> [text]

Usage:
    python scripts/relay_ctl.py follow 123 456 some_streamer --config config/config.yaml
    python scripts/relay_ctl.py status --db liverelay.db
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.config import get_secrets, load_config
from core.message_builder import TEMPLATE_KINDS
from core.models import FOLLOW_CLIPS, FOLLOW_LIVE
from core.relay import Relay, build_relay
from database.manager import DatabaseManager


def _config(args):
    config = load_config(args.config, secrets=get_secrets())
    if args.db:
        config.db_path = args.db
    return config


def _db(args) -> DatabaseManager:
    config = _config(args)
    return DatabaseManager(config.db_path, key_file=config.key_file)


async def _with_relay(args, action, start_chat: bool = False):
    """Open a Relay (credential, optionally Discord), run action(relay), close."""
    relay: Relay = build_relay(_config(args))
    try:
        await relay.open(start_chat=start_chat)
        return await action(relay)
    finally:
        await relay.close()


def _kind(args) -> str:
    return FOLLOW_CLIPS if args.clips else FOLLOW_LIVE


# ============================================================================
# Commands
# ============================================================================

def cmd_follow(args):
    async def action(relay: Relay):
        return await relay.follows.follow(args.guild, args.channel, args.streamer, _kind(args))

    result = asyncio.run(_with_relay(args, action))
    print(f"{'✅' if result.ok else '❌'} {result.message}")
    return 0 if result.ok else 1


def cmd_unfollow(args):
    async def action(relay: Relay):
        return await relay.follows.unfollow(args.channel, args.streamer, _kind(args))

    result = asyncio.run(_with_relay(args, action))
    print(f"{'✅' if result.ok else '❌'} {result.message}")
    return 0 if result.ok else 1


def cmd_list(args):
    follows = _db(args).get_channel_follows(args.channel)
    if not follows:
        print("   (none)")
        return 0
    print(f"   {'Streamer':<27} {'Kind':<7} {'Since'}")
    print(f"   {'-' * 60}")
    for follow in follows:
        print(f"   {follow.entity_name:<27} {follow.follow_kind:<7} {follow.created_at:%Y-%m-%d %H:%M}")
    return 0


def cmd_subscriptions(args):
    subscriptions = _db(args).list_subscriptions()
    print(f"\n📋 SUBSCRIPTIONS ({len(subscriptions)} total):")
    if not subscriptions:
        print("   (none)")
    for sub in subscriptions:
        print(f"   {sub.entity_name:<27} {sub.event_kind:<22} {sub.status:<10} {sub.subscription_id}")
    return 0


def cmd_sweep(args):
    async def action(relay: Relay):
        return await relay.reconciler.sweep()

    report = asyncio.run(_with_relay(args, action))
    print(json.dumps(report.as_dict(), indent=2))
    return 0 if not report.errors and not report.timed_out else 1


def cmd_poll(args):
    async def action(relay: Relay):
        return await relay.poller.poll_once()

    report = asyncio.run(_with_relay(args, action, start_chat=True))
    print(
        f"🎬 new={report.new_items} deleted={report.deleted_items} "
        f"failed={report.failed} timed_out={report.timed_out} ({report.duration_ms}ms)"
    )
    return 0 if not report.failed and not report.timed_out else 1


def cmd_status(args):
    db = _db(args)
    print("\n" + "=" * 80)
    print("LiveRelay - Status")
    print("=" * 80)

    print("\n📊 Tables:")
    for table, count in db.get_stats().items():
        print(f"   {table:<22} {count}")

    print(f"\n🔑 Key fingerprint: {db.encryptor.get_key_fingerprint()}")
    credential = db.load_credential()
    if credential is None:
        print("   Credential: (none)")
    else:
        state = "EXPIRED" if credential.is_expired() else "valid"
        print(f"   Credential: {state} (expires {credential.expires_at:%Y-%m-%d %H:%M} UTC)")

    print(f"\n📝 Audit log (last {args.limit}):")
    for entry in db.get_audit_log(args.limit):
        print(f"   {entry['created_at'][:19]} {entry['severity']:<7} {entry['event_type']:<22} {entry['details']}")

    print("=" * 80 + "\n")
    return 0


def cmd_rotate_key(args):
    db = _db(args)
    old = db.encryptor.get_key_fingerprint()
    reencrypted = db.rotate_key()
    print(f"🔑 Key rotated: {old} -> {db.encryptor.get_key_fingerprint()}")
    print(f"   Credential {'re-encrypted' if reencrypted else 'absent, nothing to re-encrypt'}")
    return 0


def cmd_template(args):
    db = _db(args)
    if args.action == "set":
        if not args.text:
            print("❌ Template text is required")
            return 1
        db.set_template(args.guild, args.kind, args.text)
        print(f"✅ {args.kind} template set for guild {args.guild}")
    elif args.action == "remove":
        removed = db.remove_template(args.guild, args.kind)
        print(f"{'✅ Removed' if removed else '⚠️ No'} {args.kind} template for guild {args.guild}")
    else:
        print(db.get_template(args.guild, args.kind) or "(default)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LiveRelay Control CLI")
    parser.add_argument("--config", type=str, default="config/config.yaml", help="Config file")
    parser.add_argument("--db", type=str, default=None, help="Database path (overrides config)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    follow_parser = subparsers.add_parser("follow", help="Follow a streamer in a channel")
    follow_parser.add_argument("guild")
    follow_parser.add_argument("channel")
    follow_parser.add_argument("streamer")
    follow_parser.add_argument("--clips", action="store_true", help="Follow clips instead of lives")

    unfollow_parser = subparsers.add_parser("unfollow", help="Stop following a streamer")
    unfollow_parser.add_argument("channel")
    unfollow_parser.add_argument("streamer")
    unfollow_parser.add_argument("--clips", action="store_true")

    list_parser = subparsers.add_parser("list", help="List follows of a channel")
    list_parser.add_argument("channel")

    subparsers.add_parser("subscriptions", help="List the subscription ledger")
    subparsers.add_parser("sweep", help="Run one reconciliation sweep")
    subparsers.add_parser("poll", help="Run one clip poll cycle")
    subparsers.add_parser("rotate-key", help="Rotate the credential encryption key")

    status_parser = subparsers.add_parser("status", help="Show relay status")
    status_parser.add_argument("--limit", type=int, default=10, help="Audit entries to show")

    template_parser = subparsers.add_parser("template", help="Per-guild announcement templates")
    template_parser.add_argument("action", choices=["set", "remove", "show"])
    template_parser.add_argument("guild")
    template_parser.add_argument("kind", choices=TEMPLATE_KINDS)
    template_parser.add_argument("text", nargs="?", default="")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "follow": cmd_follow,
        "unfollow": cmd_unfollow,
        "list": cmd_list,
        "subscriptions": cmd_subscriptions,
        "sweep": cmd_sweep,
        "poll": cmd_poll,
        "status": cmd_status,
        "rotate-key": cmd_rotate_key,
        "template": cmd_template,
    }
    return commands[args.command](args)


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n👋 Interrupted")
        sys.exit(0)
    except Exception as e:
        print(f"❌ Error: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
