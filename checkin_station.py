#!/usr/bin/env python3
"""
Field Day check-in station

Reads booking QR codes from image files (a stand-in for the gate camera)
and checks each one in against the server:
  1) POST /admin/login  (form)            -> session cookie
  2) scan frames until a code is decoded
  3) POST /api/admin/checkin {query: code} -> checked in / already attended

Usage:
  python checkin_station.py --base http://localhost:8000 \
                            --user admin --password supasecret \
                            scans/*.png

  python checkin_station.py --event ev_1 --fps 10 --loop scans/gate.png

Notes:
- The software decoder needs the `scan` extra (pyzbar) and libzbar.
"""

import asyncio
import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from fieldday.errors import CameraPermissionError
from fieldday.scanner import SCAN_FPS, ImageFileSource, ScanSession

logger = logging.getLogger("checkin_station")


@dataclass
class Tally:
    checked_in: List[str] = field(default_factory=list)
    already: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def print(self):
        print("\n=== Check-in Summary ===")
        print(
            f"Checked in: {len(self.checked_in)}   "
            f"Already attended: {len(self.already)}   "
            f"Errors: {len(self.errors)}"
        )
        for e in self.errors:
            print(f"  ! {e}")


async def login(client: httpx.AsyncClient, base: str,
                user: str, password: str) -> None:
    resp = await client.post(
        f"{base}/admin/login",
        data={"username": user, "password": password},
    )
    resp.raise_for_status()


async def post_checkin(client: httpx.AsyncClient, base: str, code: str,
                       event_id: Optional[str], tally: Tally) -> None:
    body = {"query": code}
    if event_id:
        body["event_id"] = event_id
    resp = await client.post(f"{base}/api/admin/checkin", json=body)
    if resp.status_code != 200:
        try:
            msg = resp.json().get("message") or resp.text
        except ValueError:
            msg = resp.text
        tally.errors.append(f"{code}: HTTP {resp.status_code} {msg}")
        print(f"✗ {code}: {msg}")
        return
    j = resp.json()
    if j["already_attended"]:
        tally.already.append(code)
        print(f"• {j['message']}")
    else:
        tally.checked_in.append(code)
        print(f"✓ {j['message']} (games: {j['games_attended']})")


async def run_station(args) -> Tally:
    tally = Tally()
    source = ImageFileSource(args.images, loop=args.loop)
    session = ScanSession(source, fps=args.fps)

    async with httpx.AsyncClient(
        timeout=10.0, headers={"User-Agent": "FieldDayCheckin/1.0"}
    ) as client:
        await login(client, args.base, args.user, args.password)
        await session.open()
        seen = set()
        try:
            async for code in session.codes():
                if code in seen:
                    # the same badge held in front of the camera
                    continue
                seen.add(code)
                await post_checkin(client, args.base, code, args.event, tally)
        finally:
            await session.close()
    return tally


def main():
    ap = argparse.ArgumentParser(description="Field Day check-in station")
    ap.add_argument("images", nargs="+", help="Image files to scan")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--user", default="admin", help="Admin username")
    ap.add_argument("--password", default="supasecret",
                    help="Admin password")
    ap.add_argument("--event", default=None,
                    help="Restrict name matches to this event id")
    ap.add_argument("--fps", type=float, default=SCAN_FPS,
                    help="Frames per second to pull")
    ap.add_argument("--loop", action="store_true",
                    help="Replay the images until interrupted")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        tally = asyncio.run(run_station(args))
    except CameraPermissionError as e:
        print(f"{e.message} ({e.detail})")
        sys.exit(2)
    except KeyboardInterrupt:
        sys.exit(130)
    tally.print()


if __name__ == "__main__":
    main()
