"""Drop categories of the ingest pipeline.

None of these is fatal: the message that raised it is logged, counted,
sent to the DLQ and dropped, and the next message is processed normally.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class DropReason(str, Enum):
    MALFORMED_TOPIC = "malformed_topic"
    UNPARSEABLE_PAYLOAD = "unparseable_payload"
    UNKNOWN_MACHINE = "unknown_machine"
    DOWNSTREAM_UNAVAILABLE = "downstream_unavailable"


class IngestError(Exception):
    reason: DropReason

    def __init__(self, detail: str, machine_id: Optional[int] = None):
        self.detail = detail
        self.machine_id = machine_id
        super().__init__(detail)


class MalformedTopic(IngestError):
    reason = DropReason.MALFORMED_TOPIC


class UnparseablePayload(IngestError):
    reason = DropReason.UNPARSEABLE_PAYLOAD


class UnknownMachine(IngestError):
    reason = DropReason.UNKNOWN_MACHINE


class DownstreamUnavailable(IngestError):
    """State or alert write failed, timed out, or the circuit is open."""

    reason = DropReason.DOWNSTREAM_UNAVAILABLE

    def __init__(self, operation: str, detail: str, machine_id: Optional[int] = None):
        self.operation = operation
        super().__init__(f"{operation}: {detail}", machine_id=machine_id)
