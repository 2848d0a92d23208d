"""
Job Queue — Durable outbound message queue.

- OutboundQueue: producer API (enqueue, cancel_pending, stats)
- Dispatcher: ticking consumer that drains ready rows to the gateway
"""
from job_queue.dispatcher import CycleReport, Dispatcher
from job_queue.message_queue import OutboundQueue

__all__ = ["CycleReport", "Dispatcher", "OutboundQueue"]
