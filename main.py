from __future__ import annotations
import argparse
import asyncio
import logging
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from lobbylink import ClientConfig, LobbyContext, MatchFound, MatchMode, LobbyLinkError
from lobbylink.messages import Icons
from lobbylink.version import __version__

APP_TITLE = "LobbyLink"

log = logging.getLogger("lobbylink.main")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="lobbylink", description=f"{APP_TITLE} {__version__} console client")
    p.add_argument("--mode", choices=[m.value for m in MatchMode], help="enqueue for a match after connecting")
    p.add_argument("--host", help="server host (default: NAKAMA_HOST or 127.0.0.1)")
    p.add_argument("--port", type=int, help="server port (default: NAKAMA_PORT or 7350)")
    p.add_argument("--ssl", action="store_true", help="use TLS for HTTP and the realtime socket")
    p.add_argument("--proxy", help="proxy, e.g. user:pass@host:port or socks5h://host:port")
    p.add_argument("--state-file", help="where the device id is stored")
    p.add_argument("--debug", action="store_true", help="verbose logging including wire frames")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> ClientConfig:
    cfg = ClientConfig.from_env()
    if args.host:
        cfg.host = args.host
    if args.port:
        cfg.port = args.port
    if args.ssl:
        cfg.use_ssl = True
    if args.proxy:
        cfg.proxy = args.proxy
    if args.state_file:
        cfg.state_file = args.state_file
    if args.debug:
        cfg.debug_wire = True
    return cfg


async def run(cfg: ClientConfig, mode: Optional[str]) -> int:
    async with LobbyContext(cfg) as ctx:
        try:
            session = await ctx.login()
        except LobbyLinkError as e:
            log.error(f"{Icons.ERROR} Login failed: {e}")
            return 1
        print(f"Signed in as {session.username}")

        matched: asyncio.Queue[MatchFound] = asyncio.Queue()
        ctx.matchmaking.add_match_listener(matched.put_nowait)
        ctx.connection.add_close_listener(lambda exc: print(f"Connection lost ({exc}); reconnecting..."))

        await ctx.wait_connected()
        print("Connected")
        if not mode:
            # stay connected until interrupted
            await asyncio.Event().wait()
        ticket = await ctx.matchmaking.enqueue(mode)
        print(f"Queued for {ticket.mode.value} (ticket {ticket.id})")
        found = await matched.get()
        print(f"Match found: {found.match_id} [{found.mode.value}]")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        Path('files').mkdir(parents=True, exist_ok=True)
        Path('logs').mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=logging.DEBUG if args.debug else logging.INFO,
            format='%(asctime)s - %(levelname)s - [%(name)s] - %(message)s',
            handlers=[
                RotatingFileHandler(str(Path('logs')/'lobbylink.log'), maxBytes=2*1024*1024, backupCount=5, encoding='utf-8'),
                logging.StreamHandler()
            ]
        )
        log.info(f"Starting {APP_TITLE} {__version__}...")
        return asyncio.run(run(build_config(args), args.mode))
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down")
        return 130
    except Exception as e:
        tb = traceback.format_exc()
        try:
            with open(Path('logs')/"startup_error.log", 'w', encoding='utf-8') as f:
                f.write(tb)
        except OSError:
            pass
        print("[StartupError]", e, file=sys.stderr)
        print(tb, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
