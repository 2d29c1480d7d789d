"""
Registry error taxonomy.

Only InstanceNotFoundError ever reaches a client. Replication conflicts are
reported as ReplicationOutcome.CONFLICT and self-preservation is a status
flag, neither is an exception.
"""


class RegistryError(Exception):
    """Base class for registry errors."""


class InstanceNotFoundError(RegistryError):
    """Renew, cancel or status update on an instance the registry does not hold."""

    def __init__(self, app_name: str, instance_id: str):
        self.app_name = app_name
        self.instance_id = instance_id
        super().__init__(f"Instance not found: {app_name}/{instance_id}")


class PeerUnreachableError(RegistryError):
    """A replication peer could not be reached or rejected a batch."""

    def __init__(self, peer: str, reason: str = ""):
        self.peer = peer
        self.reason = reason
        message = f"Peer unreachable: {peer}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
