#!/usr/bin/env python3
"""Simple CLI for the transaction queue API"""

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional

import httpx

DEFAULT_BASE_URL = os.environ.get("TXQUEUE_API_URL", "http://127.0.0.1:8000")

STATUS_ICONS = {
    "pending": "⏳",
    "confirmed": "✅",
    "failed": "❌",
    "cancelled": "🚫",
    "replaced": "🔁",
    "timeout": "⌛",
}


def print_transaction(tx: Dict[str, Any], verbose: bool = False) -> None:
    """Pretty print one transaction"""
    icon = STATUS_ICONS.get(tx.get("status"), "•")
    title = tx.get("title") or tx.get("type")
    print(f"{icon} {tx['id']}  {tx['status']:<9} chain {tx['chainId']:<6} {title}")
    if not verbose:
        return

    print(f"    Hash:      {tx['hash']}")
    print(f"    Submitted: {tx['submittedAt']}  (retries: {tx['retryCount']})")
    if tx.get("description"):
        print(f"    {tx['description']}")
    if tx.get("blockNumber"):
        print(f"    Block:     {tx['blockNumber']} {tx.get('blockHash') or ''}")
    if tx.get("replacedBy"):
        print(f"    Replaced by: {tx['replacedBy']}")
    if tx.get("error"):
        error = tx["error"]
        print(f"    Error:     [{error.get('code')}] {error.get('message')}")


def print_transactions(transactions: List[Dict[str, Any]]) -> None:
    if not transactions:
        print("📭 No transactions tracked")
        return
    for tx in transactions:
        print_transaction(tx)
    print(f"\n{len(transactions)} transaction(s)")


def _detail(response: httpx.Response) -> str:
    try:
        return response.json().get("detail") or response.text
    except ValueError:
        return response.text


async def cli_add(client: httpx.AsyncClient, args: argparse.Namespace) -> int:
    payload: Dict[str, Any] = {
        "hash": args.hash,
        "chainId": args.chain_id,
        "type": args.type,
        "title": args.title or "",
        "description": args.description or "",
    }
    if args.value is not None:
        payload["value"] = args.value
    if args.to:
        payload["to"] = args.to
    if args.sender:
        payload["from"] = args.sender
    if args.metadata:
        try:
            metadata = json.loads(args.metadata)
        except json.JSONDecodeError as e:
            print(f"❌ --metadata is not valid JSON: {e}")
            return 1
        if not isinstance(metadata, dict):
            print("❌ --metadata must be a JSON object")
            return 1
        payload["metadata"] = metadata

    response = await client.post("/transactions", json=payload)
    if response.status_code != 201:
        print(f"❌ Could not add transaction: {_detail(response)}")
        return 1
    print("➕ Tracking transaction")
    print_transaction(response.json(), verbose=True)
    return 0


async def cli_list(client: httpx.AsyncClient, args: argparse.Namespace) -> int:
    params = {
        key: value
        for key, value in {"chain_id": args.chain_id, "status": args.status, "type": args.type}.items()
        if value is not None
    }
    response = await client.get("/transactions", params=params)
    response.raise_for_status()
    print_transactions(response.json()["transactions"])
    return 0


async def cli_show(client: httpx.AsyncClient, args: argparse.Namespace) -> int:
    response = await client.get(f"/transactions/{args.id}")
    if response.status_code == 404:
        print(f"❌ {_detail(response)}")
        return 1
    response.raise_for_status()
    print_transaction(response.json(), verbose=True)
    return 0


async def cli_remove(client: httpx.AsyncClient, args: argparse.Namespace) -> int:
    response = await client.delete(f"/transactions/{args.id}")
    if response.status_code == 404:
        print(f"❌ {_detail(response)}")
        return 1
    response.raise_for_status()
    print(f"🗑️  Removed {args.id}")
    return 0


async def cli_clear(client: httpx.AsyncClient, args: argparse.Namespace) -> int:
    params = {"chain_id": args.chain_id} if args.chain_id is not None else {}
    response = await client.delete("/transactions", params=params)
    response.raise_for_status()
    scope = f" on chain {args.chain_id}" if args.chain_id is not None else ""
    print(f"🧹 Cleared {response.json()['removed']} transaction(s){scope}")
    return 0


async def cli_cancel(client: httpx.AsyncClient, args: argparse.Namespace) -> int:
    response = await client.post(f"/transactions/{args.id}/cancel", json={"reason": args.reason})
    if response.status_code in (404, 409):
        print(f"❌ {_detail(response)}")
        return 1
    response.raise_for_status()
    print_transaction(response.json(), verbose=True)
    return 0


async def cli_stats(client: httpx.AsyncClient, args: argparse.Namespace) -> int:
    params = {"chain_id": args.chain_id} if args.chain_id is not None else {}
    response = await client.get("/transactions/stats", params=params)
    response.raise_for_status()
    stats = response.json()

    print("\n📊 Transaction Queue")
    print("=" * 30)
    print(f"Total: {stats['total']}")
    for status, icon in STATUS_ICONS.items():
        print(f"{icon} {status:<10} {stats.get(status, 0)}")
    return 0


COMMANDS = {
    "add": cli_add,
    "list": cli_list,
    "show": cli_show,
    "remove": cli_remove,
    "clear": cli_clear,
    "cancel": cli_cancel,
    "stats": cli_stats,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Transaction queue CLI")
    parser.add_argument("--url", default=DEFAULT_BASE_URL, help="API base URL (env: TXQUEUE_API_URL)")
    subparsers = parser.add_subparsers(dest="command")

    add_parser = subparsers.add_parser("add", help="Track a submitted transaction")
    add_parser.add_argument("hash", help="Transaction hash")
    add_parser.add_argument("chain_id", type=int, help="Chain id")
    add_parser.add_argument("--type", default="unknown", help="transfer, approval, swap, dispose, donate")
    add_parser.add_argument("--title")
    add_parser.add_argument("--description")
    add_parser.add_argument("--value", help="Value in wei (decimal)")
    add_parser.add_argument("--to")
    add_parser.add_argument("--from", dest="sender")
    add_parser.add_argument("--metadata", help="JSON object")

    list_parser = subparsers.add_parser("list", help="List tracked transactions")
    list_parser.add_argument("--chain-id", type=int)
    list_parser.add_argument("--status")
    list_parser.add_argument("--type")

    show_parser = subparsers.add_parser("show", help="Show one transaction")
    show_parser.add_argument("id")

    remove_parser = subparsers.add_parser("remove", help="Stop tracking a transaction")
    remove_parser.add_argument("id")

    clear_parser = subparsers.add_parser("clear", help="Remove all transactions")
    clear_parser.add_argument("--chain-id", type=int, help="Only this chain")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a pending transaction")
    cancel_parser.add_argument("id")
    cancel_parser.add_argument("--reason")

    stats_parser = subparsers.add_parser("stats", help="Queue statistics")
    stats_parser.add_argument("--chain-id", type=int)

    serve_parser = subparsers.add_parser("serve", help="Run the queue API server")
    serve_parser.add_argument("--host")
    serve_parser.add_argument("--port", type=int)
    serve_parser.add_argument("--log-level")
    serve_parser.add_argument("--reload", action="store_true")

    return parser


def serve(args: argparse.Namespace) -> int:
    """Start uvicorn with structured logging configured first"""
    import uvicorn

    from txqueue.config import settings
    from txqueue.logging_config import setup_logging

    log_level = (args.log_level or settings.log_level).upper()
    setup_logging(log_level)
    uvicorn.run(
        "txqueue.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
        log_level=log_level.lower(),
        log_config=None,
    )
    return 0


async def dispatch(args: argparse.Namespace, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    handler = COMMANDS[args.command]
    async with httpx.AsyncClient(base_url=args.url, timeout=30, transport=transport) as client:
        try:
            return await handler(client, args)
        except httpx.HTTPError as e:
            print(f"❌ Request failed: {e}")
            return 1


async def run(argv: Optional[List[str]] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0
    if args.command == "serve":
        print("❌ serve must be started from the command line, not an event loop")
        return 2
    return await dispatch(args, transport)


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)
    if args.command == "serve":
        sys.exit(serve(args))
    sys.exit(asyncio.run(dispatch(args)))


if __name__ == "__main__":
    main()
