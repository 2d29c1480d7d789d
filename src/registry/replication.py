"""
Replication Channel: peer-to-peer propagation of registry mutations.

Every local mutation becomes a ReplicationMessage queued for each peer.
Senders run on their own threads, so a slow or dead peer never delays the
client call that caused the mutation. Delivery is best effort: a batch is
retried a bounded number of times and then dropped. Peers catch up through
their own eviction sweeps and through full resynchronisation on restart.

Messages received from peers are applied with is_replication=True and are
never forwarded again.
"""

import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import requests

from .errors import PeerUnreachableError
from .instance_registry import InstanceRegistry
from .models import (
    Applications,
    InstanceInfo,
    ReplicationAction,
    ReplicationMessage,
    ReplicationOutcome,
    utcnow,
)

logger = logging.getLogger(__name__)

REPLICATION_HEADER = "X-Discovery-Replication"


# =============================================================================
# Peer sinks
# =============================================================================

class PeerSink(ABC):
    """Opaque destination for replication messages."""

    name: str = "peer"

    @abstractmethod
    def send(self, batch: List[ReplicationMessage]) -> List[ReplicationOutcome]:
        """
        Deliver a batch.

        Raises:
            PeerUnreachableError: If the peer cannot take the batch.
        """

    @abstractmethod
    def fetch_snapshot(self) -> Applications:
        """
        Full registry of the peer, used when this node rejoins.

        Raises:
            PeerUnreachableError: If the peer cannot be reached.
        """


class HttpPeerSink(PeerSink):
    """Peer registry reached over its HTTP API."""

    def __init__(self, base_url: str, timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.name = self.base_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers[REPLICATION_HEADER] = "true"

    def send(self, batch: List[ReplicationMessage]) -> List[ReplicationOutcome]:
        payload = [m.model_dump(mode="json") for m in batch]
        try:
            response = self._session.post(
                f"{self.base_url}/peerreplication/batch",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError(f"unexpected replication response: {body!r}")
            return [ReplicationOutcome(o) for o in body.get("outcomes", [])]
        except (requests.RequestException, ValueError) as e:
            # ValueError also covers undecodable JSON and pydantic ValidationError
            raise PeerUnreachableError(self.name, str(e)) from e

    def fetch_snapshot(self) -> Applications:
        try:
            response = self._session.get(
                f"{self.base_url}/peerreplication/snapshot",
                timeout=self.timeout,
            )
            response.raise_for_status()
            return Applications.model_validate(response.json())
        except (requests.RequestException, ValueError) as e:
            raise PeerUnreachableError(self.name, str(e)) from e


class LocalPeerSink(PeerSink):
    """Peer channel living in the same process."""

    def __init__(self, channel: "ReplicationChannel"):
        self.channel = channel
        self.name = channel.node_id

    def send(self, batch: List[ReplicationMessage]) -> List[ReplicationOutcome]:
        return self.channel.receive(batch)

    def fetch_snapshot(self) -> Applications:
        return self.channel.registry.snapshot()


# =============================================================================
# Channel
# =============================================================================

class _Peer:
    """Outbound queue and sender thread of one peer."""

    def __init__(self, sink: PeerSink, maxsize: int):
        self.sink = sink
        self.queue: "queue.Queue[ReplicationMessage]" = queue.Queue(maxsize=maxsize)
        self.thread: Optional[threading.Thread] = None
        self.sent = 0
        self.dropped = 0


class ReplicationChannel:
    """
    Fans local registry mutations out to peers and applies theirs.

    Args:
        registry: Local registry. The channel subscribes to its callbacks.
        sinks: Initial peers.
        node_id: Stamped on outgoing messages as origin.
        retry_wait_seconds: Pause between delivery attempts of one batch.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        sinks: Optional[List[PeerSink]] = None,
        node_id: Optional[str] = None,
        retry_wait_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.config = registry.config
        self.node_id = node_id or self.config.node_id
        self.retry_wait_seconds = retry_wait_seconds
        self._sleep = sleep

        self._peers: Dict[str, _Peer] = {}
        self._peers_lock = threading.Lock()
        self._stop = threading.Event()
        self._running = False

        self.received = 0
        self.conflicts = 0
        self.synced = False

        for sink in sinks or []:
            self.add_peer(sink)

        registry.on_registered(self._forward(ReplicationAction.REGISTER))
        registry.on_renewed(self._forward(ReplicationAction.HEARTBEAT))
        registry.on_cancelled(self._forward(ReplicationAction.CANCEL))
        registry.on_status_changed(self._forward(ReplicationAction.STATUS_UPDATE))
        registry.on_evicted(self._forward(ReplicationAction.EVICT))

    # =========================================================================
    # Peers
    # =========================================================================

    def add_peer(self, sink: PeerSink) -> None:
        with self._peers_lock:
            if sink.name in self._peers:
                logger.warning(f"Peer already configured: {sink.name}")
                return
            peer = _Peer(sink, self.config.replication_queue_size)
            self._peers[sink.name] = peer
        logger.info(f"Replication peer added: {sink.name}")
        if self._running:
            self._start_sender(peer)

    def _peer_list(self) -> List[_Peer]:
        with self._peers_lock:
            return list(self._peers.values())

    @property
    def peer_names(self) -> List[str]:
        return [p.sink.name for p in self._peer_list()]

    # =========================================================================
    # Outbound
    # =========================================================================

    def _forward(self, action: ReplicationAction):
        def callback(instance: InstanceInfo, is_replication: bool) -> None:
            if is_replication:
                return
            self.enqueue(self._message(action, instance))
        return callback

    def _message(self, action: ReplicationAction, instance: InstanceInfo) -> ReplicationMessage:
        removal = action in (ReplicationAction.CANCEL, ReplicationAction.EVICT)
        return ReplicationMessage(
            action=action,
            app_name=instance.app_name,
            instance_id=instance.instance_id,
            instance=None if removal else instance,
            status=instance.status,
            last_dirty_timestamp=instance.last_dirty_timestamp or utcnow(),
            origin_node_id=self.node_id,
        )

    def enqueue(self, message: ReplicationMessage) -> None:
        """Queue a message for every peer without blocking."""
        for peer in self._peer_list():
            try:
                peer.queue.put_nowait(message)
            except queue.Full:
                peer.dropped += 1
                logger.warning(
                    f"Replication queue to {peer.sink.name} full, dropping "
                    f"{message.action.value} {message.app_name}/{message.instance_id}"
                )

    def _take_batch(self, peer: _Peer, first: Optional[ReplicationMessage] = None
                    ) -> List[ReplicationMessage]:
        batch = [first] if first is not None else []
        while len(batch) < self.config.replication_batch_size:
            try:
                batch.append(peer.queue.get_nowait())
            except queue.Empty:
                break
        return batch

    def _deliver(self, peer: _Peer, batch: List[ReplicationMessage]) -> bool:
        attempts = 1 + self.config.replication_max_retries
        for attempt in range(1, attempts + 1):
            try:
                peer.sink.send(batch)
                peer.sent += len(batch)
                logger.debug(f"Replicated {len(batch)} messages to {peer.sink.name}")
                return True
            except PeerUnreachableError as e:
                logger.warning(f"Replication to {peer.sink.name} failed "
                               f"(attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    self._sleep(self.retry_wait_seconds)

        peer.dropped += len(batch)
        logger.error(f"Dropping {len(batch)} replication messages for {peer.sink.name}")
        return False

    def process_pending(self) -> int:
        """
        Deliver everything queued, synchronously.

        Returns:
            Number of messages delivered.
        """
        delivered = 0
        for peer in self._peer_list():
            while True:
                batch = self._take_batch(peer)
                if not batch:
                    break
                if self._deliver(peer, batch):
                    delivered += len(batch)
        return delivered

    def pending(self) -> int:
        return sum(p.queue.qsize() for p in self._peer_list())

    # =========================================================================
    # Inbound
    # =========================================================================

    def receive(self, messages: List[ReplicationMessage]) -> List[ReplicationOutcome]:
        """Apply messages sent by a peer."""
        outcomes = []
        for message in messages:
            if message.origin_node_id == self.node_id:
                # Our own mutation echoed back
                outcomes.append(ReplicationOutcome.CONFLICT)
                continue
            outcome = self.registry.apply_replicated(message)
            self.received += 1
            if outcome == ReplicationOutcome.CONFLICT:
                self.conflicts += 1
            outcomes.append(outcome)
        return outcomes

    # =========================================================================
    # Resynchronisation
    # =========================================================================

    def sync_from_peers(self) -> bool:
        """
        Copy a full snapshot from the first reachable peer.

        Eviction stays suspended until the copy is installed, so a node that
        restarts empty cannot evict instances it has not learned about yet.

        Returns:
            True if a peer snapshot was installed.
        """
        peers = self._peer_list()
        if not peers:
            self.synced = True
            return True

        self.registry.suspend_eviction()
        try:
            for attempt in range(1, self.config.sync_retries + 1):
                for peer in peers:
                    try:
                        snapshot = peer.sink.fetch_snapshot()
                    except PeerUnreachableError as e:
                        logger.warning(f"Sync from {peer.sink.name} failed: {e}")
                        continue
                    installed = self._install(snapshot, peer.sink.name)
                    logger.info(f"Synced {installed} instances from {peer.sink.name}")
                    self.synced = True
                    return True
                if attempt < self.config.sync_retries:
                    self._sleep(self.config.sync_retry_wait_seconds)

            logger.warning("No peer reachable for sync, starting with local state only")
            return False
        finally:
            self.registry.resume_eviction()

    def _install(self, snapshot: Applications, origin: str) -> int:
        installed = 0
        for app in snapshot.applications:
            for instance in app.instances:
                outcome = self.registry.apply_replicated(ReplicationMessage(
                    action=ReplicationAction.REGISTER,
                    app_name=instance.app_name,
                    instance_id=instance.instance_id,
                    instance=instance,
                    status=instance.status,
                    last_dirty_timestamp=instance.last_dirty_timestamp or utcnow(),
                    origin_node_id=origin,
                ))
                if outcome == ReplicationOutcome.APPLIED:
                    installed += 1
        return installed

    # =========================================================================
    # Sender threads
    # =========================================================================

    def _start_sender(self, peer: _Peer) -> None:
        def sender_loop():
            logger.info(f"Replication sender started for {peer.sink.name}")
            while not self._stop.is_set():
                try:
                    first = peer.queue.get(timeout=0.5)
                except queue.Empty:
                    continue
                try:
                    self._deliver(peer, self._take_batch(peer, first))
                except Exception as e:
                    logger.error(f"Error in replication sender for {peer.sink.name}: {e}")
            logger.info(f"Replication sender stopped for {peer.sink.name}")

        peer.thread = threading.Thread(
            target=sender_loop, name=f"replication-{peer.sink.name}", daemon=True
        )
        peer.thread.start()

    def start(self) -> None:
        if self._running:
            return
        self._stop.clear()
        self._running = True
        for peer in self._peer_list():
            self._start_sender(peer)

    def stop(self, drain: bool = True) -> None:
        self._stop.set()
        for peer in self._peer_list():
            if peer.thread:
                peer.thread.join(timeout=5.0)
                peer.thread = None
        self._running = False
        if drain:
            self.process_pending()

    def get_stats(self) -> Dict[str, object]:
        return {
            "node_id": self.node_id,
            "synced": self.synced,
            "received": self.received,
            "conflicts": self.conflicts,
            "peers": {
                p.sink.name: {
                    "pending": p.queue.qsize(),
                    "sent": p.sent,
                    "dropped": p.dropped,
                }
                for p in self._peer_list()
            },
        }
