"""CLI entrypoint for the local model hub."""

from __future__ import annotations

import argparse
import logging
import os

from ignition_rl.config import TOKEN_ENV_VAR

from .hub_store import BlobStore
from .server import HubHTTPServer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Local named-blob model hub")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--root", type=str, default=None, help="Directory for blobs (in-memory if omitted)")
    parser.add_argument(
        "--token",
        type=str,
        default=os.environ.get(TOKEN_ENV_VAR),
        help=f"Bearer token required for writes (default: ${TOKEN_ENV_VAR})",
    )
    parser.add_argument("--log-level", default="INFO")
    return parser


def main():
    args = build_parser().parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")

    store = BlobStore(root=args.root)
    server = HubHTTPServer(store=store, host=args.host, port=args.port, token=args.token)
    where = args.root or "memory"
    print(f"Ignition hub listening on http://{server.host}:{server.port} (store: {where})")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.shutdown()


if __name__ == "__main__":
    main()
