"""Command-line helper for encrypted media and realtime conversations.

Usage:
    immoguinee-media encrypt photo.jpg photo.bin --mime image/jpeg
    immoguinee-media decrypt photo.bin photo.jpg --key ... --iv ... --tag ...
    immoguinee-media watch 42 --token $TOKEN
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from immoguinee_e2e.core.settings import settings
from immoguinee_e2e.services.channels import ConversationCallbacks, ConversationChannels
from immoguinee_e2e.services.connection_config import StaticTokenSource
from immoguinee_e2e.services.media_cipher import MediaCipher, MediaCipherError
from immoguinee_e2e.services.realtime import ConnectionManager
from immoguinee_e2e.services.transport import PusherTransport
from immoguinee_e2e.utils.encoding import base64_to_bytes, bytes_to_base64

logger = logging.getLogger("immoguinee_e2e.media_tool")


def encrypt_file(source: Path, target: Path, mime_type: str) -> dict[str, Any]:
    """Encrypt ``source`` into ``target`` and return metadata plus the key."""
    plaintext = source.read_bytes()
    result = MediaCipher().encrypt(plaintext)
    target.write_bytes(result.ciphertext)
    metadata = result.to_metadata(len(plaintext), mime_type)
    return {"metadata": metadata.model_dump(), "key": bytes_to_base64(result.key)}


def decrypt_file(source: Path, target: Path, key: str, iv: str, tag: str) -> int:
    """Decrypt ``source`` into ``target`` and return the plaintext size."""
    plaintext = MediaCipher().decrypt(
        source.read_bytes(),
        base64_to_bytes(iv),
        base64_to_bytes(key),
        base64_to_bytes(tag),
    )
    target.write_bytes(plaintext)
    return len(plaintext)


def _print_event(kind: str) -> Any:
    def handler(payload: Any) -> None:
        print(json.dumps({"event": kind, "payload": payload}, default=str))

    return handler


async def watch_conversation(conversation_id: str, token: str) -> int:
    """Print conversation events until interrupted."""
    manager = ConnectionManager(PusherTransport(), StaticTokenSource(token))
    if not await manager.start():
        print("Unable to start realtime connection", file=sys.stderr)
        return 1

    channels = ConversationChannels(manager)
    channels.subscribe(
        conversation_id,
        ConversationCallbacks(
            on_message=_print_event("message"),
            on_typing=_print_event("typing"),
            on_read=_print_event("read"),
            on_delivered=_print_event("delivered"),
        ),
    )
    manager.add_state_listener(lambda state: logger.info("Connection state: %s", state.value))
    try:
        await asyncio.Event().wait()
    finally:
        await manager.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="immoguinee-media", description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)

    enc = sub.add_parser("encrypt", help="Encrypt a media file")
    enc.add_argument("source", type=Path)
    enc.add_argument("target", type=Path)
    enc.add_argument("--mime", default="application/octet-stream")

    dec = sub.add_parser("decrypt", help="Decrypt a media file")
    dec.add_argument("source", type=Path)
    dec.add_argument("target", type=Path)
    dec.add_argument("--key", required=True, help="Base64 key")
    dec.add_argument("--iv", required=True, help="Base64 IV")
    dec.add_argument("--tag", required=True, help="Base64 auth tag")

    watch = sub.add_parser("watch", help="Print realtime events of a conversation")
    watch.add_argument("conversation_id")
    watch.add_argument("--token", required=True, help="Bearer token")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "encrypt":
        print(json.dumps(encrypt_file(args.source, args.target, args.mime), indent=2))
        return 0

    if args.command == "decrypt":
        try:
            size = decrypt_file(args.source, args.target, args.key, args.iv, args.tag)
        except (MediaCipherError, ValueError) as exc:
            print(f"Media unavailable: {exc}", file=sys.stderr)
            return 1
        print(f"Decrypted {size} bytes to {args.target}")
        return 0

    try:
        return asyncio.run(watch_conversation(args.conversation_id, args.token))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
