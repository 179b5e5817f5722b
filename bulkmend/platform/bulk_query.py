import logging
from typing import Optional

from bulkmend.domain.errors import BulkOperationError
from bulkmend.platform.client import PlatformClient, raise_for_user_errors
from bulkmend.platform.polling import poll_until_terminal
from bulkmend.platform.streaming import stream_product_ids
from bulkmend.settings import settings

logger = logging.getLogger(__name__)

RUN_QUERY_MUTATION = """
mutation($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation {
      id
      status
    }
    userErrors {
      field
      message
    }
  }
}
"""

QUERY_TIMEOUT_MESSAGE = (
    "TIMEOUT: Bulk query did not finish within {minutes} minutes. "
    "Narrow the query string or lower max_items and retry."
)

def escape_search_query(query_string: str) -> str:
    return query_string.replace("\\", "\\\\").replace('"', '\\"')

def build_products_query(query_string: str) -> str:
    return (
        "{\n"
        f'  products(query: "{escape_search_query(query_string)}") {{\n'
        "    edges {\n"
        "      node {\n"
        "        id\n"
        "      }\n"
        "    }\n"
        "  }\n"
        "}\n"
    )

async def submit_bulk_query(client: PlatformClient, query_string: str) -> str:
    data = await client.execute(RUN_QUERY_MUTATION, {"query": build_products_query(query_string)})
    payload = data.get("bulkOperationRunQuery") or {}
    raise_for_user_errors(payload, "Bulk query")

    operation = payload.get("bulkOperation") or {}
    if not operation.get("id"):
        raise BulkOperationError("Bulk query was not started: no operation id returned")
    return operation["id"]

async def run_bulk_query(
    client: PlatformClient,
    query_string: str,
    max_items: int,
    poll_interval: Optional[float] = None,
    poll_timeout: Optional[float] = None,
) -> list[str]:
    """
    Runs the query stage and returns the matching record ids (at most
    `max_items`). A completed operation without a result file means no match.
    """
    interval = settings.QUERY_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
    timeout = settings.QUERY_POLL_TIMEOUT_SECONDS if poll_timeout is None else poll_timeout

    operation_id = await submit_bulk_query(client, query_string)
    logger.info("Bulk query %s started for %s", operation_id, client.shop_domain)

    snapshot = await poll_until_terminal(
        client,
        operation_id,
        interval=interval,
        timeout=timeout,
        timeout_message=QUERY_TIMEOUT_MESSAGE.format(minutes=int(timeout // 60)),
    )

    if not snapshot.url:
        logger.warning("Bulk query %s completed with no results", operation_id)
        return []

    product_ids = await stream_product_ids(client.http, snapshot.url, max_items)
    logger.info("Bulk query %s matched %s records", operation_id, len(product_ids))
    return product_ids
