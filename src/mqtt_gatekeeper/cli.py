"""
Command line interface.

    gatekeeper [start] [options]              run the broker (default)
    gatekeeper adduser <user> <pass> [options] add or update a user
    gatekeeper rmuser <user> [options]         remove a user

Options are shared by every command and may be given before or after it.
Only options given explicitly end up in the flags layer, so a config file or
the built-in defaults fill in the rest.
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from mqtt_gatekeeper import __version__
from mqtt_gatekeeper.server.credentials import CredentialStore
from mqtt_gatekeeper.server.errors import ConfigError
from mqtt_gatekeeper.server.main import effective_config, log_level, serve, setup_logging

logger = logging.getLogger(__name__)

COMMAND_ARGS = ("command", "user", "password", "create")


def comma_separated_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False, argument_default=argparse.SUPPRESS)
    common.add_argument("-p", "--port", type=int, help="the port to listen to")
    common.add_argument("--host", help="the host to listen to")
    common.add_argument("--protos", type=comma_separated_list,
                        help="comma separated protocols. Allowed values are tcp, ws, tls, wss")
    common.add_argument("--ws-port", type=int, help="start an mqtt-over-websocket server on the specified port")
    common.add_argument("--wss-port", type=int,
                        help="start an mqtt-over-secure-websocket server on the specified port")
    common.add_argument("--tls-port", type=int, help="the TLS port to listen to")
    common.add_argument("--credentials", help="the file containing the credentials")
    common.add_argument("--authorize-publish", help="the pattern for publishing to topics for the added user")
    common.add_argument("--authorize-subscribe", help="the pattern for subscribing to topics for the added user")
    common.add_argument("--hash-iterations", type=int, help="PBKDF2 iterations for newly added passwords")
    common.add_argument("--key", help="the server's private key")
    common.add_argument("--cert", help="the certificate issued to the server")
    common.add_argument("--ca", help="CA bundle used to verify client certificates")
    common.add_argument("--reject-unauthorized", action=argparse.BooleanOptionalAction,
                        help="reject clients whose certificate does not verify against --ca")
    common.add_argument("--broker-id", help="the id of the broker")
    common.add_argument("-c", "--config", help="the YAML config file to use (overrides every other option)")
    common.add_argument("--concurrency", type=int)
    common.add_argument("--queue-limit", type=int)
    common.add_argument("--max-client-id-length", type=int)
    common.add_argument("--heartbeat-interval", type=int, help="milliseconds")
    common.add_argument("--connect-timeout", type=int, help="milliseconds")
    common.add_argument("-v", "--verbose", action="store_true", help="set the log level to INFO")
    common.add_argument("--very-verbose", action="store_true", help="set the log level to DEBUG")
    return common


def build_parser() -> argparse.ArgumentParser:
    common = common_options()
    parser = argparse.ArgumentParser(prog="gatekeeper", parents=[common],
                                     description="MQTT broker with credential and topic ACL checks")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command")
    # Must follow add_subparsers, the subparsers action owns the default
    parser.set_defaults(command="start")
    commands.add_parser("start", parents=[common], help="start the server (default)")

    adduser = commands.add_parser("adduser", parents=[common], help="add a user to the given credentials file")
    adduser.add_argument("user")
    adduser.add_argument("password")
    adduser.add_argument("--create", action="store_true", default=False,
                         help="start a new credentials file if none exists")

    rmuser = commands.add_parser("rmuser", parents=[common], help="remove a user from the given credentials file")
    rmuser.add_argument("user")
    return parser


def _credentials_path(config: Dict[str, Any]) -> Path:
    if not config.get("credentials"):
        raise ConfigError("No credentials file given, use --credentials")
    return Path(config["credentials"])


async def add_user(flags: Dict[str, Any], username: str, password: str, create: bool = False) -> bool:
    """Adds or updates a user and rewrites the credentials file. Returns True if it existed."""
    config = effective_config(flags)
    path = _credentials_path(config)
    iterations = int(config["hash_iterations"])
    if create and not path.exists():
        store = CredentialStore(iterations=iterations)
    else:
        store = CredentialStore.from_file(path, iterations=iterations)

    existed = await store.add_user(username, password, config.get("authorize_publish"),
                                   config.get("authorize_subscribe"))
    store.save(path)
    print(f"{'MODIFY' if existed else 'CREATE'} {username}")
    return existed


async def remove_user(flags: Dict[str, Any], username: str) -> bool:
    """Removes a user and rewrites the credentials file. Returns True if it existed."""
    config = effective_config(flags)
    path = _credentials_path(config)
    store = CredentialStore.from_file(path)
    existed = store.remove_user(username)
    store.save(path)
    print(f"{'REMOVE' if existed else 'NOT FOUND'} {username}")
    return existed


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    flags = {k: v for k, v in vars(args).items() if k not in COMMAND_ARGS}
    setup_logging(log_level(flags))

    try:
        if args.command == "adduser":
            asyncio.run(add_user(flags, args.user, args.password, args.create))
        elif args.command == "rmuser":
            asyncio.run(remove_user(flags, args.user))
        else:
            asyncio.run(serve(flags))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
