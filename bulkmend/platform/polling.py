import asyncio
import logging
import time

from bulkmend.domain.errors import BulkOperationError, BulkOperationTimeout
from bulkmend.domain.models import BulkOperationSnapshot
from bulkmend.platform.client import PlatformClient

logger = logging.getLogger(__name__)

BULK_OPERATION_STATUS_QUERY = """
query($id: ID!) {
  node(id: $id) {
    ... on BulkOperation {
      id
      status
      errorCode
      objectCount
      url
    }
  }
}
"""

FAILED_STATUSES = frozenset({"FAILED", "CANCELED", "CANCELING", "EXPIRED"})

async def fetch_bulk_operation(client: PlatformClient, operation_id: str) -> BulkOperationSnapshot:
    data = await client.execute(BULK_OPERATION_STATUS_QUERY, {"id": operation_id})
    node = data.get("node")
    if not node:
        raise BulkOperationError(f"Bulk operation {operation_id} not found", code="NOT_FOUND")

    object_count = node.get("objectCount")
    return BulkOperationSnapshot(
        id=node.get("id", operation_id),
        status=node.get("status", "UNKNOWN"),
        error_code=node.get("errorCode"),
        object_count=int(object_count) if object_count is not None else None,
        url=node.get("url"),
    )

async def poll_until_terminal(
    client: PlatformClient,
    operation_id: str,
    interval: float,
    timeout: float,
    timeout_message: str,
) -> BulkOperationSnapshot:
    """
    Polls a bulk operation every `interval` seconds until it completes.

    Returns the COMPLETED snapshot. A failed, canceled or expired operation
    raises BulkOperationError with the remote error code; exceeding `timeout`
    raises BulkOperationTimeout with `timeout_message`.
    """
    deadline = time.monotonic() + timeout
    polls = 0

    while True:
        snapshot = await fetch_bulk_operation(client, operation_id)
        polls += 1

        if snapshot.status == "COMPLETED":
            logger.info(
                "Bulk operation %s completed after %s polls (objects=%s)",
                operation_id, polls, snapshot.object_count,
            )
            return snapshot

        if snapshot.status in FAILED_STATUSES:
            code = snapshot.error_code or "UNKNOWN"
            logger.error("Bulk operation %s ended %s (code=%s)", operation_id, snapshot.status, code)
            raise BulkOperationError(f"Bulk operation failed: {code}", code=code)

        if time.monotonic() >= deadline:
            logger.error("Bulk operation %s still %s after %.0fs", operation_id, snapshot.status, timeout)
            raise BulkOperationTimeout(timeout_message)

        logger.debug("Bulk operation %s is %s; next poll in %.1fs", operation_id, snapshot.status, interval)
        await asyncio.sleep(interval)
