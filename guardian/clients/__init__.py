"""
Guardian -- External Clients

Durable store, chain RPC and the background scheduler.
"""

from guardian.clients.rpc import RpcClient
from guardian.clients.scheduler import DetectorScheduler
from guardian.clients.store import SecurityStore

__all__ = ["DetectorScheduler", "RpcClient", "SecurityStore"]
