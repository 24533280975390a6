from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable, Dict

import orjson
from pydantic import BaseModel

from ccsdk.core import crypto
from ccsdk.core.api import Api
from ccsdk.core.config import ClientConfig, load_config
from ccsdk.core.errors import CCError
from ccsdk.core.schemas import Schemas, SimpleNote

log = logging.getLogger("ccsdk.cmd.client")


def _emit(obj: Any) -> None:
    if isinstance(obj, BaseModel):
        obj = obj.model_dump(by_alias=True, exclude_none=True)
    elif isinstance(obj, list):
        obj = [o.model_dump(by_alias=True, exclude_none=True) if isinstance(o, BaseModel) else o for o in obj]
    sys.stdout.write(orjson.dumps(obj, option=orjson.OPT_INDENT_2).decode() + "\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _whoami(api: Api, args: argparse.Namespace) -> None:
    entity = await api.read_entity(api.ccid)
    _emit(
        {
            "ccid": api.ccid,
            "publicKey": crypto.public_key_hex(api.signer.public_key),
            "entity": entity.model_dump(by_alias=True) if entity else None,
        }
    )


async def _post(api: Api, args: argparse.Namespace) -> None:
    _emit(await api.create_message(Schemas.simpleNote, SimpleNote(body=args.body), args.stream))


async def _read(api: Api, args: argparse.Namespace) -> None:
    message = await api.read_message_with_author(args.id, args.author)
    if message is None:
        log.error("message %s not found", args.id)
        raise SystemExit(1)
    _emit(message)


async def _recent(api: Api, args: argparse.Namespace) -> None:
    _emit(await api.read_stream_recent(args.streams))


async def _entity(api: Api, args: argparse.Namespace) -> None:
    entity = await api.read_entity(args.ccid)
    if entity is None:
        log.error("entity %s not found", args.ccid)
        raise SystemExit(1)
    _emit(entity)


async def _hosts(api: Api, args: argparse.Namespace) -> None:
    _emit(await api.get_known_hosts(args.remote))


COMMANDS: Dict[str, Callable[[Api, argparse.Namespace], Awaitable[None]]] = {
    "whoami": _whoami,
    "post": _post,
    "read": _read,
    "recent": _recent,
    "entity": _entity,
    "hosts": _hosts,
}


async def _run(config: ClientConfig, args: argparse.Namespace) -> None:
    api = Api(config.private_key, config.host, config.client, timeout_s=config.timeout_s, scheme=config.scheme)
    try:
        await COMMANDS[args.command](api, args)
    finally:
        await api.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ccsdk", description="Concurrent federated client")
    parser.add_argument("--config", help="Path to client YAML config (default: configs/client.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("keygen", help="Generate a new secp256k1 identity")
    sub.add_parser("whoami", help="Show the configured identity")

    post = sub.add_parser("post", help="Post a simple note")
    post.add_argument("body")
    post.add_argument("--stream", action="append", required=True, help="Destination stream (key or key@host)")

    read = sub.add_parser("read", help="Read one message")
    read.add_argument("id")
    read.add_argument("author", help="CCID of the message author")

    recent = sub.add_parser("recent", help="Newest elements across streams")
    recent.add_argument("streams", nargs="+")

    entity = sub.add_parser("entity", help="Look up an entity by CCID")
    entity.add_argument("ccid")

    hosts = sub.add_parser("hosts", help="List hosts known to a host")
    hosts.add_argument("--remote", help="Host to ask (default: configured host)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "keygen":
        key = crypto.generate_private_key()
        _emit({"privateKey": crypto.private_key_hex(key), "ccid": crypto.compute_ccid(key.public_key())})
        return 0

    try:
        config = load_config(args.config)
    except ValueError as exc:
        log.error("invalid configuration: %s", exc)
        return 2

    try:
        asyncio.run(_run(config, args))
    except CCError as exc:
        log.error("%s failed: %s", args.command, exc)
        return 1
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
