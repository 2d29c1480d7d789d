"""
API Gateway for the service registry.

Provides HTTP endpoints for:
- Instance registration, heartbeat, cancellation and status updates
- Application lookups (full, per application, delta)
- Peer replication
- Node health and status
"""

from .gateway import create_app, RegistryGateway, RegisterRequest

__all__ = ["create_app", "RegistryGateway", "RegisterRequest"]
