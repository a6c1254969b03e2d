"""
Queue value types shared by every provider.

  QueueType   — closed set of logical channels
  BrokerNames — the Service Broker identities addressing one channel
  EMPTY       — "no message arrived within the wait window"
"""
from __future__ import annotations

import enum
from dataclasses import dataclass


class QueueType(str, enum.Enum):
    WORKFLOW = "workflow"
    EVENT = "event"
    INDEX = "index"


@dataclass(frozen=True)
class BrokerNames:
    """Service Broker objects for one logical queue."""
    msg_type: str
    initiator_service: str
    target_service: str
    contract_name: str
    queue_name: str


class Empty(enum.Enum):
    """
    Sentinel returned by dequeue when the wait window elapsed with nothing
    available. Kept apart from None and "" so a timed-out receive can never be
    confused with a body.
    """
    EMPTY = "empty"

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "EMPTY"


EMPTY = Empty.EMPTY


@dataclass(frozen=True)
class SqlServerQueueProviderOptions:
    connection_string: str
    can_create_db: bool = True
    can_migrate_db: bool = True
