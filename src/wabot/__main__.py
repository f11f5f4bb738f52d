"""Entry point for `python -m wabot` / `wabot`.

Subcommands:
    wabot                  Run the service (default)
    wabot pair <session>   Pair one session from the terminal, then exit
                           (QR code, or pairing code with --phone)
    wabot sessions         List stored sessions
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys


def _run() -> None:
    from wabot.app import WabotApp

    app = WabotApp()
    asyncio.run(app.run())


async def _pair(session_id: str, name: str | None, phone: str | None) -> int:
    from wabot.app import WabotApp
    from wabot.qr import render_ascii
    from wabot.types import SessionStatus

    app = WabotApp()
    registry = await app.start()
    await registry.load()

    last_qr: str | None = None
    last_code: str | None = None

    print("Link this session in WhatsApp:")
    print("  1. Open WhatsApp on your phone")
    print("  2. Tap Settings → Linked Devices → Link a Device")
    if phone:
        print("  3. Choose \"Link with phone number instead\" and enter the code below\n")
    else:
        print("  3. Point your camera at the QR code below\n")

    async def _watch() -> None:
        nonlocal last_qr, last_code
        while True:
            record = registry.get_session(session_id)
            if record.status in (SessionStatus.CONNECTED, SessionStatus.CLOSED):
                return
            payload = record.qr_payload
            if payload and payload != last_qr:
                last_qr = payload
                print(render_ascii(payload), flush=True)
            code = record.pairing_code
            if code and code != last_code:
                last_code = code
                print(f"Pairing code: {code}", flush=True)
            await asyncio.sleep(0.5)

    try:
        await registry.start_session(session_id, name=name, phone_number=phone)
        await _watch()
        record = registry.get_session(session_id)
        if record.status is SessionStatus.CONNECTED:
            print(f"\n✓ Session {session_id} paired with WhatsApp")
            return 0
        reason = record.close_reason.value if record.close_reason else "unknown"
        print(f"\n✗ Pairing failed ({reason}). Please try again.")
        return 1
    finally:
        await app.stop()


async def _sessions() -> None:
    from wabot.state import close_database, get_all_sessions, init_database

    await init_database()
    try:
        records = await get_all_sessions()
    finally:
        await close_database()
    print(json.dumps([r.to_record() for r in records], indent=2))


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="wabot",
        description="Multi-session WhatsApp auto-reply bot",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the service (default)")
    pair = sub.add_parser("pair", help="Pair a session from the terminal (QR or pairing code)")
    pair.add_argument("session_id")
    pair.add_argument("--name", default=None, help="Display name for the session")
    pair.add_argument(
        "--phone",
        default=None,
        help="Link by pairing code sent to this number (international format, +1234567890)",
    )
    sub.add_parser("sessions", help="List stored sessions")

    args = parser.parse_args()

    match args.command:
        case "pair":
            from wabot.errors import InvalidPhoneNumberError

            try:
                sys.exit(asyncio.run(_pair(args.session_id, args.name, args.phone)))
            except InvalidPhoneNumberError as exc:
                print(exc)
                sys.exit(2)
            except KeyboardInterrupt:
                print("\nPairing cancelled.")
                sys.exit(1)
        case "sessions":
            asyncio.run(_sessions())
        case _:
            _run()


if __name__ == "__main__":
    main()
