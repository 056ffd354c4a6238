from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

from powchain.chain import Ledger, LedgerError
from powchain.config import CONFIG
from powchain.models import parse_block_key
from powchain.p2p import (
    NetworkError,
    Node,
    add_peer_to_node,
    api_append,
    api_block,
    api_blocks,
    api_health,
    api_mine,
    api_resolve,
)
from powchain.pow_hash import MiningInterruptedError
from powchain.storage import JsonChainStore, PersistenceError
from powchain.validation import check_chain


def _chain_path(data_dir: str) -> Path:
    return Path(data_dir) / "chain.json"


def _load_ledger(data_dir: str, must_exist: bool = True) -> Ledger:
    store = JsonChainStore(_chain_path(data_dir))
    if not store.exists():
        if must_exist:
            raise LedgerError(f"Chain state not found in '{data_dir}'. Run 'mine' or 'node-run' first.")
        return Ledger(store)
    # Opening a Ledger on a bad file would replace it with genesis; refuse instead.
    stored = store.load()
    if not stored:
        raise LedgerError(f"Chain state in '{data_dir}' is unreadable. Run 'validate' for details.")
    verdict = check_chain(stored)
    if not verdict:
        reason = verdict.reason.value if verdict.reason else "invalid"
        raise LedgerError(f"Chain state in '{data_dir}' is invalid ({reason} at position {verdict.index})")
    return Ledger(store)


def _parse_data(raw: str) -> Any:
    # Accept JSON values on the command line, fall back to a plain string.
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def cmd_status(args: argparse.Namespace) -> None:
    ledger = _load_ledger(args.data_dir)
    _print_json(ledger.status())


def cmd_explorer(args: argparse.Namespace) -> None:
    ledger = _load_ledger(args.data_dir)
    rows = ledger.explorer_rows()
    if args.json:
        _print_json(rows)
        return
    for row in rows:
        print(
            f"#{row['index']:<5} {row['timeISO'] or '-':<24} d={row['difficulty']:<2} "
            f"{row['hash'][:16]}  {row['payloadPreview']}"
        )


def cmd_validate(args: argparse.Namespace) -> None:
    store = JsonChainStore(_chain_path(args.data_dir))
    if not store.exists():
        raise LedgerError(f"Chain state not found in '{args.data_dir}'")
    verdict = check_chain(store.load())
    _print_json(verdict.to_dict())
    if not verdict:
        raise SystemExit(2)


def cmd_mine(args: argparse.Namespace) -> None:
    ledger = _load_ledger(args.data_dir, must_exist=False)

    def on_progress(progress: dict[str, Any]) -> None:
        if args.quiet:
            return
        print(f"  nonce={progress['nonce']} attempts={progress['attempts']} rate={progress['hash_rate']:.0f} H/s")

    for _ in range(args.count):
        block = ledger.append(_parse_data(args.data), difficulty=args.difficulty, progress_callback=on_progress)
        _print_json(block.to_dict())


def cmd_node_run(args: argparse.Namespace) -> None:
    config = dataclasses.replace(
        CONFIG,
        default_difficulty=args.difficulty,
        request_timeout=args.request_timeout,
        max_peer_count=args.max_peers,
        max_request_body_bytes=args.max_request_body_bytes,
    )
    node = Node(
        data_dir=args.data_dir,
        host=args.host,
        port=args.port,
        advertise_host=args.advertise_host,
        peers=args.peer,
        config=config,
        node_name=args.name,
    )
    _print_json({"node": node.node_url, "data_dir": str(Path(args.data_dir)), "peers": node.peers.get_peers()})
    print("Node running. Press Ctrl+C to stop.")

    try:
        node.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        node.shutdown()


def cmd_api_health(args: argparse.Namespace) -> None:
    _print_json(api_health(args.node, timeout=args.timeout))


def cmd_api_chain(args: argparse.Namespace) -> None:
    _print_json(api_blocks(args.node, timeout=args.timeout))


def cmd_api_block(args: argparse.Namespace) -> None:
    parse_block_key(args.key)
    _print_json(api_block(args.node, args.key, timeout=args.timeout))


def cmd_api_append(args: argparse.Namespace) -> None:
    _print_json(api_append(args.node, _parse_data(args.data), timeout=args.timeout))


def cmd_api_mine(args: argparse.Namespace) -> None:
    _print_json(api_mine(args.node, _parse_data(args.data), difficulty=args.difficulty, timeout=args.timeout))


def cmd_api_resolve(args: argparse.Namespace) -> None:
    _print_json(api_resolve(args.node, timeout=args.timeout))


def cmd_node_add_peer(args: argparse.Namespace) -> None:
    _print_json(add_peer_to_node(args.node, args.peer, timeout=args.timeout))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="powchain",
        description="Minimal proof-of-work blockchain node (educational).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Show local chain status")
    status.add_argument("--data-dir", default="./data", help="Data directory")
    status.set_defaults(func=cmd_status)

    explorer = subparsers.add_parser("explorer", help="List blocks of the local chain")
    explorer.add_argument("--data-dir", default="./data", help="Data directory")
    explorer.add_argument("--json", action="store_true", help="Print rows as JSON")
    explorer.set_defaults(func=cmd_explorer)

    validate = subparsers.add_parser("validate", help="Validate the stored chain file")
    validate.add_argument("--data-dir", default="./data", help="Data directory")
    validate.set_defaults(func=cmd_validate)

    mine = subparsers.add_parser("mine", help="Mine blocks into the local chain")
    mine.add_argument("--data-dir", default="./data", help="Data directory")
    mine.add_argument("--data", required=True, help="Block payload (JSON value or plain text)")
    mine.add_argument("--difficulty", type=int, help="Leading zero hex digits (default: node default)")
    mine.add_argument("--count", type=int, default=1, help="Number of blocks to mine")
    mine.add_argument("--quiet", action="store_true", help="Suppress progress output")
    mine.set_defaults(func=cmd_mine)

    node_run = subparsers.add_parser("node-run", help="Run an HTTP node")
    node_run.add_argument("--data-dir", default="./data", help="Data directory")
    node_run.add_argument("--host", default="127.0.0.1", help="Bind host")
    node_run.add_argument("--port", type=int, default=4001, help="Bind port")
    node_run.add_argument("--advertise-host", help="Host advertised to peers (default: bind host)")
    node_run.add_argument("--peer", action="append", default=[], help="Peer URL (repeatable)")
    node_run.add_argument("--name", help="Node name shown in health output")
    node_run.add_argument("--difficulty", type=int, default=CONFIG.default_difficulty, help="Default mining difficulty")
    node_run.add_argument("--request-timeout", type=float, default=CONFIG.request_timeout, help="Peer request timeout (seconds)")
    node_run.add_argument("--max-peers", type=int, default=CONFIG.max_peer_count, help="Maximum known peers")
    node_run.add_argument(
        "--max-request-body-bytes",
        type=int,
        default=CONFIG.max_request_body_bytes,
        help="Maximum accepted request body size",
    )
    node_run.set_defaults(func=cmd_node_run)

    def _add_node_args(sub: argparse.ArgumentParser, timeout: float = 5.0) -> None:
        sub.add_argument("--node", default="http://127.0.0.1:4001", help="Node URL")
        sub.add_argument("--timeout", type=float, default=timeout, help="Request timeout (seconds)")

    api_health_cmd = subparsers.add_parser("api-health", help="Query node health")
    _add_node_args(api_health_cmd)
    api_health_cmd.set_defaults(func=cmd_api_health)

    api_chain_cmd = subparsers.add_parser("api-chain", help="Fetch the node's full chain")
    _add_node_args(api_chain_cmd)
    api_chain_cmd.set_defaults(func=cmd_api_chain)

    api_block_cmd = subparsers.add_parser("api-block", help="Fetch one block by index or hash")
    _add_node_args(api_block_cmd)
    api_block_cmd.add_argument("key", help="Block index or hash")
    api_block_cmd.set_defaults(func=cmd_api_block)

    api_append_cmd = subparsers.add_parser("api-append", help="Append a block at the node's default difficulty")
    _add_node_args(api_append_cmd, timeout=300.0)
    api_append_cmd.add_argument("--data", required=True, help="Block payload (JSON value or plain text)")
    api_append_cmd.set_defaults(func=cmd_api_append)

    api_mine_cmd = subparsers.add_parser("api-mine", help="Ask the node to mine a block")
    _add_node_args(api_mine_cmd, timeout=300.0)
    api_mine_cmd.add_argument("--data", required=True, help="Block payload (JSON value or plain text)")
    api_mine_cmd.add_argument("--difficulty", type=int, help="Leading zero hex digits")
    api_mine_cmd.set_defaults(func=cmd_api_mine)

    api_resolve_cmd = subparsers.add_parser("api-resolve", help="Run fork resolution on the node")
    _add_node_args(api_resolve_cmd, timeout=30.0)
    api_resolve_cmd.set_defaults(func=cmd_api_resolve)

    add_peer = subparsers.add_parser("node-add-peer", help="Register peers with a running node")
    _add_node_args(add_peer)
    add_peer.add_argument("--peer", action="append", required=True, help="Peer URL (repeatable)")
    add_peer.set_defaults(func=cmd_node_add_peer)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        args.func(args)
    except NetworkError as exc:
        print(f"Network error: {exc}")
        raise SystemExit(1) from exc
    except (LedgerError, MiningInterruptedError, PersistenceError, ValueError) as exc:
        print(f"Validation error: {exc}")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
