#!/usr/bin/env python3
"""
Service Registry CLI: run a registry node or inspect one.

Usage:
    python -m cli serve [--port PORT] [--peer URL ...] [--config PATH]
    python -m cli status [--url URL]
    python -m cli apps [--url URL] [--app NAME]

Examples:
    # Run a single node on the default port 8761
    python -m cli serve

    # Two-node cluster on one host
    python -m cli serve --port 8761 --peer http://localhost:8762
    python -m cli serve --port 8762 --peer http://localhost:8761

    # Show registered instances
    python -m cli apps --url http://localhost:8761
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import requests

# Add src to path
sys.path.insert(0, str(Path(__file__).parent))

from registry.client import DiscoveryClient
from registry.config import load_config
from registry.errors import RegistryError


DEFAULT_URL = "http://localhost:8761"


def setup_logging(verbose: bool = False, level: Optional[str] = None):
    """Configure logging."""
    if verbose:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )
    # Quiet down noisy loggers
    if not verbose:
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def serve(args) -> int:
    """Run a registry node until interrupted."""
    from registry.registry_service import RegistryService

    overrides = {
        "port": args.port,
        "host": args.host,
        "node_id": args.node_id,
        "peers": args.peer,
    }
    config = load_config(args.config, overrides)
    setup_logging(args.verbose, config.log_level)

    print(f"\n📋 Starting registry node {config.node_id} on {config.host}:{config.port}")
    if config.peers:
        print(f"   Peers: {', '.join(config.peers)}")
    print("   Press Ctrl+C to stop\n")

    RegistryService(config).serve()
    return 0


def show_status(args) -> int:
    """Show node status."""
    try:
        response = requests.get(f"{args.url.rstrip('/')}/status", timeout=10)
        response.raise_for_status()
    except requests.RequestException as e:
        print(f"\n❌ Registry not reachable at {args.url}: {e}")
        return 1

    status = response.json()
    registry = status["registry"]

    print(f"\n📊 Registry node {status['node_id']}:")
    print("=" * 50)
    print(f"  Applications: {registry['applications']}")
    print(f"  Instances: {registry['instances']}")
    for state, count in sorted(registry["instances_by_status"].items()):
        print(f"    - {state}: {count}")
    print(f"  Expected renews/min: {registry['expected_renews_per_minute']:.1f}")
    if status["partition_suspected"]:
        print("  ⚠️  Self-preservation ACTIVE (eviction suspended)")
    else:
        print("  Self-preservation: inactive")
    if status.get("replication"):
        for peer, stats in status["replication"]["peers"].items():
            print(f"  Peer {peer}: pending={stats['pending']} dropped={stats['dropped']}")
    return 0


def show_apps(args) -> int:
    """List applications and their instances."""
    client = DiscoveryClient(args.url)
    try:
        if args.app:
            apps = [client.get_application(args.app, consistent=True)]
        else:
            apps = list(client.get_applications().applications)
    except (RegistryError, requests.RequestException) as e:
        print(f"\n❌ Registry not reachable at {args.url}: {e}")
        return 1

    print("\n📋 Registered applications:")
    print("=" * 50)
    if not apps or all(not app.instances for app in apps):
        print("  (no instances registered)")
        return 0

    for app in apps:
        print(f"  {app.name}")
        for instance in app.instances:
            print(f"    - {instance.instance_id}  {instance.address}  {instance.status.value}")
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Service Registry CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve --port 8761
  %(prog)s status --url http://localhost:8761
  %(prog)s apps --app orders
        """
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run a registry node")
    serve_parser.add_argument("--config", "-c", help="Path to registry.yaml")
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", "-p", type=int, help="HTTP port")
    serve_parser.add_argument("--node-id", help="Node identifier")
    serve_parser.add_argument("--peer", action="append", help="Peer base URL (repeatable)")

    # status command
    status_parser = subparsers.add_parser("status", help="Show node status")
    status_parser.add_argument("--url", default=DEFAULT_URL, help="Registry base URL")

    # apps command
    apps_parser = subparsers.add_parser("apps", help="List registered instances")
    apps_parser.add_argument("--url", default=DEFAULT_URL, help="Registry base URL")
    apps_parser.add_argument("--app", help="Only this application")

    args = parser.parse_args()

    if args.command == "serve":
        return serve(args)

    setup_logging(args.verbose)

    if args.command == "status":
        return show_status(args)
    elif args.command == "apps":
        return show_apps(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
