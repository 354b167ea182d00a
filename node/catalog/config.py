# env vars + static cluster layout
import os
from typing import List

from pydantic import BaseModel

from .models import Node

DEFAULT_CLUSTER = [
    ("server-a", "Primary Server", "http://localhost:4000"),
    ("server-b", "Secondary Server", "http://localhost:4001"),
    ("server-c", "Tertiary Server", "http://localhost:4002"),
]


def parse_cluster_nodes(raw: str) -> List[Node]:
    """
    Parse CLUSTER_NODES, e.g. "server-a=http://a:4000,server-b=http://b:4000".
    Priority follows the order of the entries (first = 1).
    """
    nodes: List[Node] = []
    for position, entry in enumerate(p.strip() for p in raw.split(",") if p.strip()):
        node_id, sep, url = entry.partition("=")
        if not sep or not node_id.strip() or not url.strip():
            raise ValueError(f"Invalid CLUSTER_NODES entry: {entry!r}")
        nodes.append(
            Node(
                id=node_id.strip(),
                name=node_id.strip(),
                url=url.strip().rstrip("/"),
                priority=position + 1,
            )
        )

    ids = [n.id for n in nodes]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Duplicate node id in CLUSTER_NODES: {raw!r}")
    return nodes


def default_cluster_nodes() -> List[Node]:
    return [
        Node(id=node_id, name=name, url=url, priority=i + 1)
        for i, (node_id, name, url) in enumerate(DEFAULT_CLUSTER)
    ]


class Settings(BaseModel):
    node_id: str = "server-a"
    host: str = "0.0.0.0"
    port: int = 4000
    nodes: List[Node]
    health_check_interval: float = 30.0
    probe_timeout: float = 5.0
    broadcast_timeout: float = 5.0
    request_timeout: float = 10.0
    switch_debounce: float = 1.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        raw_nodes = os.getenv("CLUSTER_NODES", "")
        nodes = parse_cluster_nodes(raw_nodes) if raw_nodes.strip() else default_cluster_nodes()
        settings = cls(
            node_id=os.getenv("NODE_ID", "server-a"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "4000")),
            nodes=nodes,
            health_check_interval=float(os.getenv("HEALTH_CHECK_INTERVAL", "30.0")),
            probe_timeout=float(os.getenv("PROBE_TIMEOUT", "5.0")),
            broadcast_timeout=float(os.getenv("BROADCAST_TIMEOUT", "5.0")),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", "10.0")),
            switch_debounce=float(os.getenv("SWITCH_DEBOUNCE", "1.0")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
        settings.local_node()
        return settings

    def local_node(self) -> Node:
        for node in self.nodes:
            if node.id == self.node_id:
                return node
        raise ValueError(f"NODE_ID {self.node_id!r} is not part of the configured cluster")

    def peers(self) -> List[Node]:
        return [n for n in self.nodes if n.id != self.node_id]
