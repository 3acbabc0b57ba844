"""
ReplGuard — Collaborator Adapters

Topology inventory, per-node HTTP agent, cache and history files,
report writers and webhook delivery.
"""

from replguard.clients.cache_store import JsonFileCacheStore
from replguard.clients.history import RunHistoryStore
from replguard.clients.http_agent import HttpRepairActuator, HttpReplicationDataSource
from replguard.clients.reporters import CsvReporter, JsonReporter
from replguard.clients.topology import InventoryTopologyResolver
from replguard.clients.webhook import WebhookNotifier

__all__ = [
    "CsvReporter",
    "HttpRepairActuator",
    "HttpReplicationDataSource",
    "InventoryTopologyResolver",
    "JsonFileCacheStore",
    "JsonReporter",
    "RunHistoryStore",
    "WebhookNotifier",
]
