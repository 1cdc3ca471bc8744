"""
Linevault CLI — Command-Line Interface
======================================

Command-line interface over ``linevault.service.Service``.

Usage:
    linevault cache refresh
    linevault nodes add node-1 --port 9200 --data-path /srv/es/n1/data
    linevault index create node-1 accounts
    linevault search-indices set node-1/accounts
    linevault parse-all --node node-1 --index accounts
    linevault search "example.com" --size 10
    linevault accounts --node node-1
    linevault clean --node node-1 --index accounts -f
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from .builder import PENDING, UNPARSED
from .exceptions import LinevaultError
from .models import NodeConfig, SearchTarget
from .service import Service
from .utils import format_bytes

logger = logging.getLogger("linevault.cli")


def parse_target(value: str) -> SearchTarget:
    """Parse "node/index" (or a bare "index") into a SearchTarget."""
    if "/" in value:
        node, index = value.split("/", 1)
        return SearchTarget(node or None, index)
    return SearchTarget(None, value)


async def wait_for_task(service: Service, task_id: str, interval: float = 1.0) -> Dict[str, Any]:
    """Poll a task, printing progress and ETA until it finishes."""
    while True:
        task = service.task(task_id)
        eta = f" ETA {task['eta']}" if task["eta"] else ""
        print(
            f"\r[{task['status']}] {task['progress']:,}/{task['total']:,}{eta} {task['message']}",
            end="",
            flush=True
        )
        if task["completed"]:
            break
        await asyncio.sleep(interval)
    print()

    if task["error"]:
        raise LinevaultError(f"Task {task['type']} failed: {task['error']}")
    return task


def print_results(page: Dict[str, Any], admin: bool = False):
    if page.get("message"):
        print(page["message"])
        return

    print(f"\nResults: {len(page['results'])} of {page['total']:,} (page {page['page']})\n")
    for r in page["results"]:
        if admin:
            print(f"{r['node']}/{r['index']} {r['id']}")
        else:
            print(r["id"])
        print(f"  url:      {r['url']}")
        print(f"  username: {r['username']}")
        print(f"  password: {r['password']}\n")


async def cmd_cache_show(service: Service, args):
    """Show the cached node/index picture."""
    cache = service.indices_cache(args.node)
    if not cache["nodes"]:
        print("Index cache is empty. Run 'linevault cache refresh'.")
        return

    status = service.cache.status()
    print(f"\nCache: {status['path']} ({status['nodes']} node(s))")
    print(f"\n{'Node':<16} {'Status':<8} {'Index':<30} {'Health':<8} {'Docs':>12} {'Size':>10}")
    print("-" * 89)
    for node, entry in cache["nodes"].items():
        if not entry["indices"]:
            print(f"{node:<16} {entry['status']:<8} {'-':<30}")
        for name, stats in entry["indices"].items():
            print(
                f"{node:<16} "
                f"{entry['status']:<8} "
                f"{name:<30} "
                f"{stats['health']:<8} "
                f"{stats['doc_count']:>12,} "
                f"{format_bytes(stats['store_size']):>10}"
            )


async def cmd_cache_refresh(service: Service, args):
    """Re-probe every node."""
    cache = await service.refresh_cache()
    running = sum(1 for e in cache["nodes"].values() if e["status"] == "running")
    print(f"Refreshed: {len(cache['nodes'])} node(s), {running} running")
    if cache["pruned"]:
        print(f"Removed {len(cache['pruned'])} stale search index(es): {', '.join(cache['pruned'])}")


async def cmd_cache_clear(service: Service, args):
    service.cache.clear()
    print("Index cache cleared.")


async def cmd_search(service: Service, args):
    page = await service.search(args.query, page=args.page, size=args.size, node=args.node, index=args.index)
    print_results(page)


async def cmd_accounts(service: Service, args):
    page = await service.accounts(args.query, page=args.page, size=args.size, node=args.node, index=args.index)
    print_results(page, admin=True)


async def cmd_total(service: Service, args):
    total = await service.total_accounts()
    print(f"Total accounts: {total['total']:,}")


async def cmd_parse(service: Service, args):
    task_id = service.parse_file(args.filename, node=args.node, index=args.index)
    task = await wait_for_task(service, task_id, args.interval)
    print(task["message"])


async def cmd_parse_all(service: Service, args):
    task_id = service.parse_all_unparsed(node=args.node, index=args.index)
    task = await wait_for_task(service, task_id, args.interval)
    print(task["message"])


async def cmd_bulk_delete(service: Service, args):
    ids = list(args.ids)
    if args.ids_file:
        with open(args.ids_file, encoding="utf-8") as f:
            ids.extend(line.strip() for line in f if line.strip())

    task_id = service.bulk_delete(ids, node=args.node, index=args.index)
    task = await wait_for_task(service, task_id, args.interval)
    print(task["message"])


async def cmd_clean(service: Service, args):
    """Delete every account and requeue parsed files."""
    if not args.force:
        confirm = input("Delete ALL accounts and move parsed files back to unparsed? [y/N] ")
        if confirm.lower() != 'y':
            print("Aborted.")
            return

    task_id = service.clean(node=args.node, index=args.index)
    task = await wait_for_task(service, task_id, args.interval)
    print(task["message"])


async def cmd_files_list(service: Service, args):
    for stage, names in service.list_files().items():
        print(f"{stage} ({len(names)})")
        for name in names:
            print(f"  {name}")


async def cmd_files_move(service: Service, args):
    if args.files_cmd == "to-unparsed":
        task_id = service.move_to_unparsed(args.filename)
    else:
        task_id = service.move_to_pending(args.filename)
    task = await wait_for_task(service, task_id, args.interval)
    print(task["message"])


async def cmd_files_delete(service: Service, args):
    task_id = service.delete_file(args.stage, args.filename)
    task = await wait_for_task(service, task_id, args.interval)
    print(task["message"])


async def cmd_nodes_list(service: Service, args):
    cache = service.indices_cache()["nodes"]
    print(f"\n{'Node':<16} {'URL':<30} {'Status':<10} {'Indices':>7}")
    print("-" * 66)
    for node in service.registry:
        entry = cache.get(node.name)
        status = entry["status"] if entry else "evicted"
        indices = len(entry["indices"]) if entry else 0
        print(f"{node.name:<16} {node.url:<30} {status:<10} {indices:>7}")


async def cmd_nodes_health(service: Service, args):
    """Show cluster health as seen from one node."""
    health = await service.cluster.health(args.name)
    print(f"\nCluster: {health['cluster_name']}")
    print(f"Status: {health['status']}")
    print(f"Nodes: {health.get('number_of_nodes', '-')}")
    print(f"Active shards: {health.get('active_shards', '-')}")
    print(f"Unassigned shards: {health.get('unassigned_shards', '-')}")


async def cmd_nodes_add(service: Service, args):
    node = NodeConfig(
        name=args.name,
        host=args.host,
        port=args.port,
        transport_port=args.transport_port,
        data_path=args.data_path,
        logs_path=args.logs_path,
        scheme=args.scheme
    )
    await service.cluster.add_node(node)
    print(f"Added node: {node.name} ({node.url})")


async def cmd_nodes_remove(service: Service, args):
    result = await service.remove_node(args.name)
    print(f"Removed node: {result['node']}")
    if result["pruned"]:
        print(f"Removed search index(es): {', '.join(result['pruned'])}")


async def cmd_index_create(service: Service, args):
    name = await service.cluster.create_index(
        args.node,
        args.index,
        shards=args.shards,
        replicas=args.replicas
    )
    print(f"Created index: {args.node}/{name}")
    print(f"  Shards: {args.shards}")
    print(f"  Replicas: {args.replicas}")


async def cmd_index_delete(service: Service, args):
    if not args.force:
        confirm = input(f"Delete index '{args.index}' on {args.node}? [y/N] ")
        if confirm.lower() != 'y':
            print("Aborted.")
            return

    await service.cluster.delete_index(args.node, args.index)
    print(f"Deleted index: {args.node}/{args.index}")


async def cmd_search_indices_show(service: Service, args):
    targets = service.settings.search_indices
    if not targets:
        print("No search indices configured.")
    for target in targets:
        print(target)


async def cmd_search_indices_set(service: Service, args):
    selected = service.set_search_indices(parse_target(t) for t in args.targets)
    print(f"Search indices: {', '.join(str(t) for t in selected) or '(none)'}")


async def cmd_account_update(service: Service, args):
    account = await service.update_account(args.id, args.raw_line, node=args.node, index=args.index)
    print(f"Updated {account['node']}/{account['index']} {account['id']}")


async def cmd_account_delete(service: Service, args):
    await service.delete_account(args.id, node=args.node, index=args.index)
    print(f"Deleted account: {args.id}")


async def cmd_tasks(service: Service, args):
    if args.tasks_cmd in ("clear", "clear-all"):
        removed = service.task_action(args.tasks_cmd)
        print(f"Removed {removed} task(s)")
        return

    for task in service.tasks(active_only=args.active):
        print(f"{task['task_id']} {task['type']:<28} {task['status']:<18} {task['progress']}/{task['total']}")


def add_target_options(parser: argparse.ArgumentParser):
    parser.add_argument("--node", help="Target node (default: write node)")
    parser.add_argument("--index", help="Target index (default: default_index)")


def add_task_options(parser: argparse.ArgumentParser):
    add_target_options(parser)
    parser.add_argument("--interval", type=float, default=1.0, help="Progress poll interval (seconds)")


def add_page_options(parser: argparse.ArgumentParser):
    parser.add_argument("--page", type=int, default=1, help="Page number")
    parser.add_argument("--size", type=int, default=20, help="Results per page")
    parser.add_argument("--node", help="Restrict to node")
    parser.add_argument("--index", help="Restrict to index")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="linevault",
        description="Linevault — credential line search over Elasticsearch nodes"
    )

    # Global options
    parser.add_argument(
        "--config",
        help="Config file (default: $LINEVAULT_CONFIG or ./config.json)",
        default=None
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # cache command
    cache_parser = subparsers.add_parser("cache", help="Index cache")
    cache_sub = cache_parser.add_subparsers(dest="cache_cmd")
    show_parser = cache_sub.add_parser("show", help="Show cached indices")
    show_parser.add_argument("--node", help="Only this node")
    cache_sub.add_parser("refresh", help="Probe nodes and rebuild the cache")
    cache_sub.add_parser("clear", help="Forget every cached node")

    # search commands
    search_parser = subparsers.add_parser("search", help="Public (masked) search")
    search_parser.add_argument("query", help="Search text")
    add_page_options(search_parser)

    accounts_parser = subparsers.add_parser("accounts", help="Admin account listing")
    accounts_parser.add_argument("query", nargs="?", help="Optional search text")
    add_page_options(accounts_parser)

    subparsers.add_parser("total", help="Total accounts in enabled search indices")

    # ingestion and bulk commands
    parse_parser = subparsers.add_parser("parse", help="Index one unparsed file")
    parse_parser.add_argument("filename", help="File name in data/unparsed")
    add_task_options(parse_parser)

    parse_all_parser = subparsers.add_parser("parse-all", help="Index every unparsed .txt file")
    add_task_options(parse_all_parser)

    bulk_parser = subparsers.add_parser("bulk-delete", help="Delete accounts by id")
    bulk_parser.add_argument("ids", nargs="*", help="Document ids")
    bulk_parser.add_argument("--ids-file", help="File with one id per line")
    add_task_options(bulk_parser)

    clean_parser = subparsers.add_parser("clean", help="Delete all accounts, requeue parsed files")
    clean_parser.add_argument("-f", "--force", action="store_true", help="Skip confirmation")
    add_task_options(clean_parser)

    # files command
    files_parser = subparsers.add_parser("files", help="Dump file management")
    files_sub = files_parser.add_subparsers(dest="files_cmd")
    files_sub.add_parser("list", help="List files per directory")
    for name, help_text in (("to-unparsed", "Queue a pending file"), ("to-pending", "Unqueue a file")):
        move_parser = files_sub.add_parser(name, help=help_text)
        move_parser.add_argument("filename")
        move_parser.add_argument("--interval", type=float, default=1.0)
    delete_file_parser = files_sub.add_parser("delete", help="Delete a pending or unparsed file")
    delete_file_parser.add_argument("stage", choices=[PENDING, UNPARSED])
    delete_file_parser.add_argument("filename")
    delete_file_parser.add_argument("--interval", type=float, default=1.0)

    # nodes command
    nodes_parser = subparsers.add_parser("nodes", help="Node registry")
    nodes_sub = nodes_parser.add_subparsers(dest="nodes_cmd")
    nodes_sub.add_parser("list", help="List registered nodes")
    health_parser = nodes_sub.add_parser("health", help="Cluster health seen from a node")
    health_parser.add_argument("name")
    add_node_parser = nodes_sub.add_parser("add", help="Register a node")
    add_node_parser.add_argument("name", help="Node name (must match Elasticsearch node.name)")
    add_node_parser.add_argument("--host", default="localhost")
    add_node_parser.add_argument("--port", type=int, default=9200)
    add_node_parser.add_argument("--transport-port", type=int, default=9300)
    add_node_parser.add_argument("--data-path", help="Local data directory")
    add_node_parser.add_argument("--logs-path", help="Local logs directory")
    add_node_parser.add_argument("--scheme", default="http", choices=["http", "https"])
    remove_node_parser = nodes_sub.add_parser("remove", help="Unregister a node")
    remove_node_parser.add_argument("name")

    # index command
    index_parser = subparsers.add_parser("index", help="Index management")
    index_sub = index_parser.add_subparsers(dest="index_cmd")
    create_parser = index_sub.add_parser("create", help="Create an index on a node")
    create_parser.add_argument("node", help="Node name")
    create_parser.add_argument("index", help="Index name")
    create_parser.add_argument("--shards", type=int, default=1, help="Primary shards")
    create_parser.add_argument("--replicas", type=int, default=0, help="Replica shards")
    delete_parser = index_sub.add_parser("delete", help="Delete an index on a node")
    delete_parser.add_argument("node", help="Node name")
    delete_parser.add_argument("index", help="Index name")
    delete_parser.add_argument("-f", "--force", action="store_true", help="Skip confirmation")

    # search-indices command
    si_parser = subparsers.add_parser("search-indices", help="Indices offered to public search")
    si_sub = si_parser.add_subparsers(dest="si_cmd")
    si_sub.add_parser("show", help="Show enabled search indices")
    si_set_parser = si_sub.add_parser("set", help="Replace enabled search indices")
    si_set_parser.add_argument("targets", nargs="*", help="node/index pairs")

    # account command
    account_parser = subparsers.add_parser("account", help="Single account")
    account_sub = account_parser.add_subparsers(dest="account_cmd")
    update_parser = account_sub.add_parser("update", help="Replace an account's raw line")
    update_parser.add_argument("id")
    update_parser.add_argument("raw_line")
    add_target_options(update_parser)
    account_delete_parser = account_sub.add_parser("delete", help="Delete one account")
    account_delete_parser.add_argument("id")
    add_target_options(account_delete_parser)

    # tasks command
    tasks_parser = subparsers.add_parser(
        "tasks",
        help="Task list of this process",
        description="Tasks live only as long as the process that started them. "
                    "Task commands such as parse or clean already wait for and report their own task, "
                    "so a fresh linevault process always lists none.",
    )
    tasks_parser.add_argument("tasks_cmd", nargs="?", default="list", choices=["list", "clear", "clear-all"])
    tasks_parser.add_argument("--active", action="store_true", help="Only list tasks still running")

    return parser


COMMANDS = {
    ("cache", "show"): cmd_cache_show,
    ("cache", "refresh"): cmd_cache_refresh,
    ("cache", "clear"): cmd_cache_clear,
    ("search", None): cmd_search,
    ("accounts", None): cmd_accounts,
    ("total", None): cmd_total,
    ("parse", None): cmd_parse,
    ("parse-all", None): cmd_parse_all,
    ("bulk-delete", None): cmd_bulk_delete,
    ("clean", None): cmd_clean,
    ("files", "list"): cmd_files_list,
    ("files", "to-unparsed"): cmd_files_move,
    ("files", "to-pending"): cmd_files_move,
    ("files", "delete"): cmd_files_delete,
    ("nodes", "list"): cmd_nodes_list,
    ("nodes", "health"): cmd_nodes_health,
    ("nodes", "add"): cmd_nodes_add,
    ("nodes", "remove"): cmd_nodes_remove,
    ("index", "create"): cmd_index_create,
    ("index", "delete"): cmd_index_delete,
    ("search-indices", "show"): cmd_search_indices_show,
    ("search-indices", "set"): cmd_search_indices_set,
    ("account", "update"): cmd_account_update,
    ("account", "delete"): cmd_account_delete,
    ("tasks", None): cmd_tasks,
}

SUBCOMMAND_DEST = {
    "cache": "cache_cmd",
    "files": "files_cmd",
    "nodes": "nodes_cmd",
    "index": "index_cmd",
    "search-indices": "si_cmd",
    "account": "account_cmd",
}


async def run(args) -> None:
    service = Service.from_config(args.config)
    logger.debug("Running command %s", args.command)
    try:
        sub = getattr(args, SUBCOMMAND_DEST[args.command]) if args.command in SUBCOMMAND_DEST else None
        await COMMANDS[(args.command, sub)](service, args)
    finally:
        await service.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    if args.command is None:
        parser.print_help()
        return 0

    dest = SUBCOMMAND_DEST.get(args.command)
    if dest and getattr(args, dest) is None:
        parser.parse_args([args.command, "--help"])

    try:
        asyncio.run(run(args))
    except LinevaultError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
