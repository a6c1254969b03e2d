"""
Broker Names — Maps each QueueType to its Service Broker identities.

Naming scheme (host name segment omitted when empty):
  //workflow-core/{host}/{kind}                    message type
  //workflow-core/{host}/{kind}InitiatorService    sending service
  //workflow-core/{host}/{kind}TargetService       receiving service
  //workflow-core/{host}/{kind}Contract            contract
  //workflow-core/{host}/{kind}Queue               physical queue

Names are resolved once and never change for the life of a provider.
The queue name is the only value written into statement text, always
through quote_identifier().
"""
from __future__ import annotations

from typing import Iterator

from job_queue.errors import QueueConfigurationError
from job_queue.queue_types import BrokerNames, QueueType

NAME_PREFIX = "//workflow-core"


def quote_identifier(name: str) -> str:
    """Bracket-quote a SQL Server identifier, same rules as QUOTENAME()."""
    return "[" + name.replace("]", "]]") + "]"


def build_broker_names(kind: str, host_name: str = "") -> BrokerNames:
    base = f"{NAME_PREFIX}/{host_name}/{kind}" if host_name else f"{NAME_PREFIX}/{kind}"
    return BrokerNames(
        msg_type=base,
        initiator_service=f"{base}InitiatorService",
        target_service=f"{base}TargetService",
        contract_name=f"{base}Contract",
        queue_name=f"{base}Queue",
    )


class BrokerNamesProvider:
    """
    Lookup from QueueType to BrokerNames.

    Usage:
        names = BrokerNamesProvider(host_name="orders")
        par = names.get_by_queue(QueueType.WORKFLOW)
    """

    def __init__(self, host_name: str = "", names: dict[QueueType, BrokerNames] | None = None):
        self.host_name = host_name
        if names is None:
            names = {qt: build_broker_names(qt.value, host_name) for qt in QueueType}
        self._names: dict[QueueType, BrokerNames] = dict(names)

    def get_by_queue(self, queue_type: QueueType) -> BrokerNames:
        try:
            return self._names[queue_type]
        except KeyError:
            raise QueueConfigurationError(
                f"No broker names registered for queue type {queue_type!r}"
            ) from None

    def __iter__(self) -> Iterator[BrokerNames]:
        return iter(self._names.values())

    def queue_types(self) -> list[QueueType]:
        return list(self._names)
