#!/usr/bin/env python3
"""
Run a Registry Node.

Usage:
    python scripts/run_registry_server.py

Then test with:
    curl http://localhost:8761/actuator/health
    curl -X POST http://localhost:8761/apps/orders -H "Content-Type: application/json" \
         -d '{"instance_id": "i-1", "host_address": "10.0.0.5", "port": 8080, "status": "UP"}'
    curl http://localhost:8761/apps/orders?consistent=true
"""

import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from registry.config import load_config
from registry.registry_service import RegistryService


def main():
    """Run the registry node."""
    config = load_config()

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )

    print("\n" + "=" * 60)
    print("   📋 Service Registry")
    print("=" * 60)
    print(f"\n   Node {config.node_id} at http://{config.host}:{config.port}")
    print(f"   Peers: {', '.join(config.peers) or '(standalone)'}")
    print("\n   Endpoints:")
    print("   - POST   /apps/:app            - Register instance")
    print("   - PUT    /apps/:app/:id        - Heartbeat")
    print("   - DELETE /apps/:app/:id        - Cancel")
    print("   - PUT    /apps/:app/:id/status - Update status")
    print("   - GET    /apps                 - All applications")
    print("   - GET    /apps/delta?since=N   - Changes since version N")
    print("   - GET    /apps/:app            - One application")
    print("   - GET    /actuator/health      - Health probe")
    print("   - GET    /status               - Node status")
    print("\n" + "=" * 60)
    print("   Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    RegistryService(config).serve()


if __name__ == "__main__":
    main()
