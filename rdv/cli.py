"""
rdv CLI — rendezvous server and peer commands.

Commands:
  rdv server       - Run the rendezvous server (foreground)
  rdv peer PORT    - Register a peer listening on PORT and chat from stdin
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def _port(text: str) -> int:
    """argparse type for a listening port (0 = any free port)."""
    try:
        port = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {text!r}") from None
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range (0-65535): {port}")
    return port


def _server_port(text: str) -> int:
    """argparse type for the rendezvous server port (1-65535)."""
    port = _port(text)
    if port == 0:
        raise argparse.ArgumentTypeError("server port must be between 1 and 65535")
    return port


def _server_address(text: str):
    """argparse type for HOST:PORT. Host may be a name or an IP literal."""
    from rdv.protocol import Address

    host, sep, port_text = text.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {port_text!r}") from None
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range (1-65535): {port}")
    return Address(host, port)


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, help="TOML config file (default: ~/.rdv/rdv.toml)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR (or set RDV_LOG_LEVEL)")


def cmd_server(args: argparse.Namespace) -> None:
    """Run the rendezvous server in foreground mode."""
    from rdv.server import run_server

    run_server(
        host=args.host,
        port=args.port,
        config_path=args.config,
        log_level=args.log_level,
    )


def cmd_peer(args: argparse.Namespace) -> None:
    """Run a peer in foreground mode."""
    from rdv.peer import run_peer

    run_peer(
        args.port,
        host=args.host,
        server=args.server,
        config_path=args.config,
        log_level=args.log_level,
    )


def build_parser() -> argparse.ArgumentParser:
    from rdv import __version__

    parser = argparse.ArgumentParser(
        prog="rdv",
        description="UDP rendezvous server and peers that find each other through it.",
    )
    parser.add_argument("--version", action="version", version=f"rdv {__version__}")
    sub = parser.add_subparsers(dest="command")

    # server
    p_server = sub.add_parser("server", help="Run the rendezvous server (foreground)")
    p_server.add_argument("--host", help="Bind address (default: 127.0.0.1)")
    p_server.add_argument("--port", type=_server_port, help="UDP port (default: 50000)")
    _add_common_args(p_server)

    # peer
    p_peer = sub.add_parser("peer", help="Run a peer (foreground)")
    p_peer.add_argument("port", type=_port, help="UDP listen port (0 picks a free one)")
    p_peer.add_argument("--host", help="Listen address (default: 127.0.0.1)")
    p_peer.add_argument(
        "--server", type=_server_address,
        help="Rendezvous server as HOST:PORT (default: 127.0.0.1:50000)",
    )
    _add_common_args(p_peer)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        print("rdv — UDP rendezvous and peer messaging")
        print()
        print("Usage:")
        print("  rdv server [--host ADDR] [--port N]")
        print("  rdv peer <port> [--server HOST:PORT]")
        print()
        print("Run 'rdv <command> --help' for details on any command.")
        sys.exit(0)

    from rdv.config import ConfigError

    commands = {
        "server": cmd_server,
        "peer": cmd_peer,
    }
    try:
        commands[args.command](args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
