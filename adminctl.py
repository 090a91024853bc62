#!/usr/bin/env python3
"""adminctl.py

Command-line client for the moderation bot API of a running server.

Usage:
  # Strike + delete an identity
  python adminctl.py delete-user <username>

  # Post a system announcement to the global channel
  python adminctl.py announce "Server restarts in 5 minutes"

  # Block an IP for an hour (default) or a custom number of seconds
  python adminctl.py ban-ip 203.0.113.7 --seconds 600

  # Show the newest reports
  python adminctl.py reports --limit 20

Options:
  --base URL     Server base URL (default: TONKOTSU_URL or http://127.0.0.1:5000)
  --secret S     Bot shared secret (default: TONKOTSU_BOT_SECRET or tonkotsu_config.json)
"""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path

import requests

from constants import CONFIG_FILE
from permissions import BOT_SECRET_HEADER


def _secret_from_config() -> str | None:
    """Best-effort bot secret discovery from tonkotsu_config.json."""
    path = Path(CONFIG_FILE)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError:
        return None
    return str(data.get("bot_shared_secret") or "").strip() or None


class BotClient:
    def __init__(self, base: str, secret: str, timeout: float = 10.0):
        self.base = base.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({BOT_SECRET_HEADER: secret, "X-Tonkotsu-Bot-Name": "adminctl"})
        self.timeout = timeout

    def _call(self, method: str, path: str, **kwargs) -> dict:
        r = self.session.request(method, f"{self.base}{path}", timeout=self.timeout, **kwargs)
        try:
            body = r.json()
        except ValueError:
            body = {"ok": False, "error": r.text[:200]}
        if r.status_code >= 400:
            raise RuntimeError(f"{method} {path} failed: {r.status_code} {body}")
        return body

    def delete_user(self, username: str) -> dict:
        return self._call("POST", "/api/bot/deleteUser", json={"username": username})

    def announce(self, text: str) -> dict:
        return self._call("POST", "/api/bot/announce", json={"text": text})

    def ban_ip(self, ip: str, seconds: int = 3600) -> dict:
        return self._call("POST", "/api/bot/banIp", json={"ip": ip, "seconds": seconds})

    def reports(self, limit: int = 10) -> dict:
        return self._call("GET", "/api/bot/reports", params={"limit": limit})


def cmd_delete_user(client: BotClient, username: str) -> int:
    res = client.delete_user(username)
    if res.get("permanent"):
        print(f"✅ Deleted {username} (strike {res.get('strikes')}, permanently banned)")
    elif res.get("until"):
        print(f"✅ Deleted {username} (strike {res.get('strikes')}, banned until {res.get('until'):.0f})")
    else:
        print(f"✅ Deleted {username} (strike {res.get('strikes')}, no ban)")
    return 0


def cmd_reports(client: BotClient, limit: int) -> int:
    rows = client.reports(limit).get("reports") or []
    if not rows:
        print("(no reports)")
        return 0
    for r in rows:
        reporter = (r.get("reporter") or {}).get("username")
        print(f"- [{r.get('ts'):.0f}] {reporter} reported {r.get('message_id')} in {r.get('thread_id')}: {r.get('reason')}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Moderation bot API client.")
    parser.add_argument("--base", default=os.getenv("TONKOTSU_URL") or "http://127.0.0.1:5000")
    parser.add_argument("--secret", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_del = sub.add_parser("delete-user", aliases=["rm"], help="Strike and delete an identity")
    p_del.add_argument("username")

    p_ann = sub.add_parser("announce", help="Post an announcement to the global channel")
    p_ann.add_argument("text")

    p_ban = sub.add_parser("ban-ip", help="Block an IP address")
    p_ban.add_argument("ip")
    p_ban.add_argument("--seconds", type=int, default=3600)

    p_rep = sub.add_parser("reports", aliases=["ls"], help="List recent reports")
    p_rep.add_argument("--limit", type=int, default=10)

    args = parser.parse_args()
    secret = args.secret or os.getenv("TONKOTSU_BOT_SECRET") or _secret_from_config()
    if not secret:
        print("❌ No bot secret. Pass --secret, set TONKOTSU_BOT_SECRET, or configure bot_shared_secret.")
        return 2

    client = BotClient(args.base, secret)
    try:
        if args.cmd in ("delete-user", "rm"):
            return cmd_delete_user(client, args.username)
        if args.cmd == "announce":
            msg = client.announce(args.text).get("message") or {}
            print(f"✅ Announced (id={msg.get('id')})")
            return 0
        if args.cmd == "ban-ip":
            res = client.ban_ip(args.ip, args.seconds)
            print(f"✅ Blocked {res.get('ip')} until {res.get('until'):.0f}")
            return 0
        if args.cmd in ("reports", "ls"):
            return cmd_reports(client, args.limit)
    except (requests.RequestException, RuntimeError) as e:
        print(f"❌ {e}")
        return 3
    parser.error("Unknown command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
