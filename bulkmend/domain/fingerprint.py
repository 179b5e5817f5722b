import hashlib
import json

from bulkmend.domain.models import JobSpec

def compute_fingerprint(tenant_id: str, spec: JobSpec) -> str:
    """
    SHA-256 hex digest over the tenant and every field of the requested
    update, in a fixed order. Used as the admission idempotency key.

    Fields are encoded as a JSON array, so separators inside a field value
    cannot make two different updates encode the same.
    """
    parts = [
        tenant_id,
        spec.query_string,
        spec.namespace,
        spec.key,
        spec.type,
        spec.value,
        spec.dry_run,
        spec.max_items,
    ]
    encoded = json.dumps(parts, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
