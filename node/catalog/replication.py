# best-effort fan-out of local writes + idempotent apply of peer writes
import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx
from fastapi import APIRouter, Header, HTTPException, Request

from .failure import describe_failure
from .models import EventKind, Node, ReplicationEvent
from .state import StoreError

logger = logging.getLogger(__name__)

router = APIRouter()

RECEIVE_PATH = "/sync/receive"


class ReplicatedStore(Protocol):
    def insert(self, record: Dict[str, Any]) -> bool: ...

    def update(self, record: Dict[str, Any]) -> bool: ...

    def delete(self, record: Dict[str, Any]) -> bool: ...


class ReplicationBroadcaster:
    """
    Queues local mutations and sends each one, in order, to every peer.

    Delivery is at-most-once: a peer that is down while an event is being
    broadcast misses it for good. There is no retry and no reconciliation.
    """

    def __init__(
        self,
        local_node_id: str,
        peers: Sequence[Node],
        stores: Mapping[str, ReplicatedStore],
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.local_node_id = local_node_id
        self.peers: List[Node] = [p for p in peers if p.id != local_node_id]
        self.stores = stores
        self.timeout = timeout
        self._transport = transport
        self._queue: Deque[ReplicationEvent] = deque()
        self._draining = False
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    def add_event(self, kind: EventKind, resource_type: str, payload: Dict[str, Any]) -> ReplicationEvent:
        """
        Enqueue a local mutation and return at once. Must be called from
        the event loop; the broadcast runs in a background task.
        """
        event = ReplicationEvent(
            kind=kind,
            resource_type=resource_type,
            payload=payload,
            origin_node_id=self.local_node_id,
        )
        self._queue.append(event)
        logger.info("Added event: %s on %s", event.kind.value, resource_type)

        if not self._draining:
            self._draining = True
            self._drain_task = asyncio.create_task(self._drain(), name="replication-drain")
        return event

    async def _drain(self) -> None:
        logger.debug("Processing %d events", len(self._queue))
        try:
            while self._queue:
                event = self._queue.popleft()
                try:
                    await self.broadcast(event)
                except Exception:
                    logger.exception("Broadcast of %s event failed", event.kind.value)
        finally:
            # nothing awaits between the empty check above and this reset,
            # so an event appended during the last broadcast is never stranded
            self._draining = False

    async def wait_idle(self) -> None:
        """Wait until the queue has been fully drained."""
        while self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    async def broadcast(self, event: ReplicationEvent) -> Dict[str, bool]:
        if not self.peers:
            return {}

        body = event.model_dump(mode="json", by_alias=True)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            results = await asyncio.gather(*(self._send(client, peer, body) for peer in self.peers))

        delivered = dict(zip((p.id for p in self.peers), results))
        logger.info(
            "Event %s broadcasted to %d/%d peers",
            event.kind.value,
            sum(delivered.values()),
            len(self.peers),
        )
        return delivered

    async def _send(self, client: httpx.AsyncClient, peer: Node, body: Dict[str, Any]) -> bool:
        try:
            resp = await asyncio.wait_for(
                client.post(
                    f"{peer.url}{RECEIVE_PATH}",
                    json=body,
                    headers={"X-Node-Id": self.local_node_id},
                ),
                self.timeout,
            )
            resp.raise_for_status()
        except Exception as exc:
            logger.warning("Failed to send event to %s: %s", peer.id, describe_failure(exc, self.timeout))
            return False

        logger.debug("Successfully sent event to %s", peer.id)
        return True

    def receive(self, event: ReplicationEvent) -> bool:
        """
        Apply an event received from a peer. Returns True if it changed
        local state. Store failures are logged and dropped.
        """
        if event.origin_node_id == self.local_node_id:
            logger.debug("Ignoring event from self")
            return False

        store = self.stores.get(event.resource_type)
        if store is None:
            logger.warning("No store for resource type %r, event dropped", event.resource_type)
            return False

        logger.info(
            "Received %s on %s from %s",
            event.kind.value,
            event.resource_type,
            event.origin_node_id,
        )
        try:
            if event.kind is EventKind.CREATE:
                return store.insert(event.payload)
            if event.kind is EventKind.UPDATE:
                return store.update(event.payload)
            return store.delete(event.payload)
        except StoreError:
            logger.exception("Error handling %s event on %s", event.kind.value, event.resource_type)
            return False


@router.post(RECEIVE_PATH)
async def sync_receive(
    event: ReplicationEvent,
    request: Request,
    x_node_id: Optional[str] = Header(default=None),
):
    broadcaster: ReplicationBroadcaster = request.app.state.broadcaster
    if x_node_id is not None and x_node_id != event.origin_node_id:
        logger.warning("X-Node-Id %s does not match event origin %s", x_node_id, event.origin_node_id)

    try:
        applied = broadcaster.receive(event)
    except Exception as exc:
        logger.exception("Unexpected failure applying %s event", event.kind.value)
        raise HTTPException(status_code=500, detail=f"Failed to apply event: {exc}")

    return {"ok": True, "applied": applied, "nodeId": broadcaster.local_node_id}
