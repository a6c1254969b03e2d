"""
Work Queue — Durable work-item id queues for a workflow engine.

- The engine ENQUEUES ids into a logical queue (workflow / event / index)
- Workers DEQUEUE ids, blocking up to one second per call
- Supports SQL Server Service Broker (production) and in-memory asyncio.Queue (dev)
"""
