import logging
from typing import Optional

import httpx

from bulkmend.domain.errors import BulkOperationError, StagedUploadError
from bulkmend.domain.models import FieldSpec, MutationResult, StreamCounts
from bulkmend.platform.client import PlatformClient, raise_for_user_errors
from bulkmend.platform.jsonl_builder import CHUNK_SIZE_BYTES, build_mutation_chunks
from bulkmend.platform.polling import poll_until_terminal
from bulkmend.platform.streaming import DEFAULT_MAX_PREVIEW_BYTES, TRUNCATION_MARKER, stream_result_counts
from bulkmend.settings import settings

logger = logging.getLogger(__name__)

UPLOAD_FILENAME = "bulk-mutation-vars.jsonl"

STAGED_UPLOAD_MUTATION = """
mutation($input: [StagedUploadInput!]!) {
  stagedUploadsCreate(input: $input) {
    stagedTargets {
      url
      resourceUrl
      parameters {
        name
        value
      }
    }
    userErrors {
      field
      message
    }
  }
}
"""

METAFIELDS_SET_MUTATION = """
mutation metafieldsSet($ownerId: ID!, $namespace: String!, $key: String!, $type: String!, $value: String!) {
  metafieldsSet(metafields: [{ownerId: $ownerId, namespace: $namespace, key: $key, type: $type, value: $value}]) {
    metafields {
      id
    }
    userErrors {
      field
      message
      code
    }
  }
}
"""

RUN_MUTATION_MUTATION = """
mutation($mutation: String!, $stagedUploadPath: String!) {
  bulkOperationRunMutation(mutation: $mutation, stagedUploadPath: $stagedUploadPath) {
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

MUTATION_TIMEOUT_MESSAGE = (
    "TIMEOUT: Bulk mutation did not finish within {hours} hours. "
    "Split the work into smaller batches with max_items and retry."
)

async def upload_chunk(client: PlatformClient, content: str) -> str:
    """Uploads one JSONL chunk to a staged target and returns its staged path."""
    data = await client.execute(STAGED_UPLOAD_MUTATION, {
        "input": [{
            "resource": "BULK_MUTATION_VARIABLES",
            "filename": UPLOAD_FILENAME,
            "mimeType": "text/jsonl",
            "httpMethod": "POST",
        }]
    })
    payload = data.get("stagedUploadsCreate") or {}
    user_errors = payload.get("userErrors") or []
    if user_errors:
        raise StagedUploadError(f"Staged upload creation failed: {user_errors[0].get('message')}")

    targets = payload.get("stagedTargets") or []
    if not targets:
        raise StagedUploadError("Staged upload creation returned no targets")
    target = targets[0]
    parameters = {p["name"]: p["value"] for p in target.get("parameters") or []}

    # The staged path is the "key" form parameter, not the resourceUrl.
    staged_path = parameters.get("key")
    if not staged_path:
        raise StagedUploadError(
            "Staged upload path not found: no \"key\" parameter in staged upload response. "
            f"Available parameters: {', '.join(parameters) or 'none'}"
        )

    try:
        resp = await client.http.post(
            target["url"],
            data=parameters,
            files={"file": (UPLOAD_FILENAME, content.encode("utf-8"), "text/jsonl")},
        )
    except httpx.TransportError as e:
        raise StagedUploadError(f"JSONL upload failed: {e}") from e

    if not resp.is_success:
        raise StagedUploadError(f"JSONL upload failed: {resp.status_code} {resp.reason_phrase}")

    logger.info("Uploaded %s bytes of mutation variables to staged path", len(content))
    return staged_path

async def submit_bulk_mutation(client: PlatformClient, staged_path: str) -> str:
    data = await client.execute(RUN_MUTATION_MUTATION, {
        "mutation": METAFIELDS_SET_MUTATION,
        "stagedUploadPath": staged_path,
    })
    payload = data.get("bulkOperationRunMutation") or {}
    raise_for_user_errors(payload, "Bulk mutation")

    operation = payload.get("bulkOperation") or {}
    if not operation.get("id"):
        raise BulkOperationError("Bulk mutation was not started: no operation id returned")
    return operation["id"]

def merge_error_previews(previews: list[str], max_bytes: int = DEFAULT_MAX_PREVIEW_BYTES) -> Optional[str]:
    previews = [p for p in previews if p]
    if not previews:
        return None
    merged = "\n".join(previews)
    encoded = merged.encode("utf-8")
    if len(encoded) > max_bytes:
        merged = encoded[:max_bytes].decode("utf-8", errors="ignore")
        if not merged.endswith(TRUNCATION_MARKER):
            merged += TRUNCATION_MARKER
    return merged

async def run_bulk_mutation(
    client: PlatformClient,
    owner_ids: list[str],
    field: FieldSpec,
    poll_interval: Optional[float] = None,
    poll_timeout: Optional[float] = None,
    chunk_size_bytes: int = CHUNK_SIZE_BYTES,
) -> MutationResult:
    """
    Runs the mutation stage for `owner_ids`, one bulk operation per chunk.

    Chunks run sequentially since the tenant may only have one bulk operation
    in flight. Counts and previews from every chunk are combined; the last
    operation id is reported as the job's bulk operation id.
    """
    interval = settings.MUTATION_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
    timeout = settings.MUTATION_POLL_TIMEOUT_SECONDS if poll_timeout is None else poll_timeout

    chunks = build_mutation_chunks(owner_ids, field, chunk_size_bytes)
    result = MutationResult()
    previews: list[str] = []

    for index, chunk in enumerate(chunks, start=1):
        staged_path = await upload_chunk(client, "".join(chunk))
        operation_id = await submit_bulk_mutation(client, staged_path)
        result.operation_ids.append(operation_id)
        result.bulk_operation_id = operation_id
        logger.info(
            "Bulk mutation %s started for %s (chunk %s/%s, %s records)",
            operation_id, client.shop_domain, index, len(chunks), len(chunk),
        )

        snapshot = await poll_until_terminal(
            client,
            operation_id,
            interval=interval,
            timeout=timeout,
            timeout_message=MUTATION_TIMEOUT_MESSAGE.format(hours=f"{timeout / 3600:g}"),
        )

        if snapshot.url:
            counts = await stream_result_counts(client.http, snapshot.url)
        else:
            counts = StreamCounts()

        logger.info(
            "Bulk mutation %s finished: updated=%s failed=%s parse_errors=%s",
            operation_id, counts.success_count, counts.failed_count, counts.parse_errors,
        )
        result.updated_count += counts.success_count
        result.failed_count += counts.failed_count
        if counts.error_preview:
            previews.append(counts.error_preview)

    result.error_preview = merge_error_previews(previews)
    return result
