"""Entry point for `python -m omnidesk` / `omnidesk`.

Subcommands:
    omnidesk                    Run the service (default)
    omnidesk run --channel ID   Run the service, ingesting only one channel
    omnidesk channels           List configured channels and their cursors
"""

from __future__ import annotations

import argparse
import asyncio


def _run(channel_id: int | None = None) -> None:
    from omnidesk.app import OmnideskApp

    app = OmnideskApp(channel_id=channel_id)
    asyncio.run(app.run())


async def _list_channels() -> None:
    from omnidesk.state import close_database, get_all_channels, get_cursor, init_database

    await init_database()
    try:
        channels = await get_all_channels()
        if not channels:
            print("No channels configured.")
            return
        for channel in channels:
            state = "active" if channel.is_active else "inactive"
            cursor = await get_cursor(channel.id)
            flags = " automations-disabled" if channel.automations_disabled else ""
            print(
                f"{channel.id:>4}  {channel.type:<10} {state:<8} "
                f"cursor={cursor:<10} {channel.name}{flags}"
            )
    finally:
        await close_database()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="omnidesk",
        description="Omnichannel helpdesk ingestion and automation engine",
    )
    sub = parser.add_subparsers(dest="command")
    run_parser = sub.add_parser("run", help="Run the service")
    run_parser.add_argument(
        "--channel", type=int, default=None, help="Only ingest the channel with this id"
    )
    sub.add_parser("channels", help="List configured channels")

    args = parser.parse_args()

    match args.command:
        case "channels":
            asyncio.run(_list_channels())
        case "run":
            _run(args.channel)
        case _:
            _run()


if __name__ == "__main__":
    main()
