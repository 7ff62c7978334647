import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .config import Config
from .errors import ConfigError, StateError, TransportError
from .relay import RelayServer
from .session import Delivery, Session

"""
run_node.py — single entry point for the relay and for an interactive peer.

What you can do here:
- Relay:  the self-hosted broadcast channel every peer connects to
- Peer:   connect, exchange keys, elect a master and send encrypted payloads

Peer commands (one per line on stdin):
    peers                       list user ids we've exchanged keys with
    status                      connection status, master, counters
    master                      announce ourselves as master
    send <json>                 encrypt for the master and send
    send-to <userId> <json>     encrypt for one peer and send
    quit                        say goodbye on the channel and exit
"""

logger = logging.getLogger(__name__)


# -------------------------
# Process runners (thin wrappers)
# -------------------------

async def run_relay(host: str, port: int, tokens: Optional[List[str]], channels: Optional[List[str]],
                    max_messages: int, window_seconds: float) -> None:
    """Spin up the relay and serve forever on host:port."""
    relay = RelayServer(host, port, tokens=set(tokens or []), channels=set(channels or []),
                        max_messages=max_messages, window_seconds=window_seconds)
    await relay.serve_forever()


def print_delivery(delivery: Delivery) -> None:
    print(f"[transmit] {delivery.from_user_id}: {json.dumps(delivery.payload)}")


async def read_line() -> str:
    """stdin without blocking the event loop."""
    return await asyncio.get_running_loop().run_in_executor(None, sys.stdin.readline)


async def handle_command(session: Session, line: str) -> bool:
    """Run one peer command. Returns False when the user asked to quit."""
    cmd, _, rest = line.strip().partition(" ")
    if not cmd:
        return True

    if cmd == "quit":
        return False

    if cmd == "peers":
        peers = session.peers()
        if not peers:
            print("No peers yet.")
        for user_id, public_key in peers.items():
            print(f"{user_id}  {public_key}")

    elif cmd == "status":
        print(session.status_line)
        master = session.master.announced_by or ("(me)" if session.is_master else "none")
        print(f"user id: {session.user_id}  peers: {len(session.registry)}  master: {master}")
        print(f"counters: {dict(session.stats)}")

    elif cmd == "master":
        if not session.can_announce_master:
            print("Master already known (or not connected); not announcing.")
        else:
            await session.announce_master()
            print("Announced as master.")

    elif cmd in ("send", "send-to"):
        target = None
        if cmd == "send-to":
            target, _, rest = rest.partition(" ")
        try:
            payload = json.loads(rest)
        except json.JSONDecodeError as exc:
            print(f"Payload must be JSON: {exc}")
            return True
        if session.is_master and target is None:
            print("We are the master; use send-to <userId> <json>.")
            return True
        if target is None:
            await session.transmit(payload)
        else:
            await session.transmit_to(target, payload)
        print("Sent.")

    else:
        print("Unknown command. Try: peers, status, master, send, send-to, quit")
    return True


async def run_peer(config: Config, announce_master: bool = False) -> None:
    """
    Connect to the relay and run the command loop. Payloads meant for us are
    printed as they arrive.
    """
    session = Session.from_config(config, on_payload=print_delivery)
    print(f"Starting as {session.user_id}")
    await session.connect()
    try:
        if announce_master:
            # Give the ready -> fetch -> handshake sequence a moment to land.
            await asyncio.sleep(1.0)
            if session.can_announce_master:
                await session.announce_master()
        print(session.status_line)
        while True:
            line = await read_line()
            if not line:
                break
            try:
                if not await handle_command(session, line):
                    break
            except (StateError, TransportError) as exc:
                print(f"[!] {exc}")
    finally:
        await session.close()


# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Quick examples:
      Relay:  python -m whisperbus.run_node --mode relay --host 127.0.0.1 --port 9000 --token s3cret
      Peer:   python -m whisperbus.run_node --mode peer --relay 127.0.0.1:9000 --token s3cret --channel lobby
    """
    p = argparse.ArgumentParser(prog="whisperbus")
    p.add_argument("--mode", choices=["relay", "peer"], required=True)
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=9000)
    p.add_argument("--token", action="append", dest="tokens",
                   help="relay: accepted token (repeatable); peer: login token")
    p.add_argument("--channel", action="append", dest="channels",
                   help="relay: existing channel (repeatable); peer: channel to join")
    p.add_argument("--max-messages", type=int, default=5, help="relay: sends allowed per window")
    p.add_argument("--window", type=float, default=5.0, help="relay: rate limit window in seconds")
    p.add_argument("--relay", help="peer: relay address host:port")
    p.add_argument("--login-cooldown", type=int, help="peer: seconds to wait after a failed login")
    p.add_argument("--master", action="store_true", help="peer: announce as master once connected")
    p.add_argument("--auto-reconnect", action="store_true", help="peer: reconnect after cooldown")
    p.add_argument("--log-level")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    """Environment first, then anything given on the command line."""
    config = Config.from_env()
    if args.tokens:
        config.token = args.tokens[-1]
    if args.channels:
        config.channel_id = args.channels[-1]
    if args.relay:
        config.relay = args.relay
    if args.login_cooldown is not None:
        config.login_failure_cooldown = args.login_cooldown
    if args.log_level:
        config.log_level = args.log_level.upper()
    config.auto_reconnect = args.auto_reconnect
    config.check_log_level()
    return config


# -------------------------
# Main entrypoint
# -------------------------

def main(argv: Optional[List[str]] = None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ConfigError as exc:
        raise SystemExit(str(exc))
    logging.basicConfig(level=config.log_level,
                        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    if args.mode == "relay":
        asyncio.run(run_relay(args.host, args.port, args.tokens, args.channels,
                              args.max_messages, args.window))

    elif args.mode == "peer":
        try:
            config.validate()
        except ConfigError as exc:
            raise SystemExit(f"{exc} (set --token/--channel or WHISPERBUS_TOKEN/WHISPERBUS_CHANNEL)")
        try:
            asyncio.run(run_peer(config, announce_master=args.master))
        except KeyboardInterrupt:
            pass


if __name__ == "__main__":
    main()
