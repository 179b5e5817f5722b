#!/usr/bin/env python3
"""
Fires identical triggers concurrently at a running API and checks that they
all resolve to one job. Registers the tenant directly in the database, since
tenants are provisioned by the platform install flow.
"""
import asyncio
import json
import uuid

import httpx

from bulkmend.auth.security import SIGNATURE_HEADER, compute_signature
from bulkmend.db.models import Tenant
from bulkmend.db.session import AsyncSessionLocal
from bulkmend.settings import settings

API_URL = "http://localhost:8000"
CONCURRENCY = 20

async def ensure_tenant(tenant_id: str):
    async with AsyncSessionLocal() as session:
        if not await session.get(Tenant, tenant_id):
            session.add(Tenant(id=tenant_id, name="Admission Check", access_token="shpat_dummy"))
            await session.commit()

async def fire(client: httpx.AsyncClient, body: bytes):
    headers = {"Content-Type": "application/json"}
    if settings.TRIGGER_SHARED_SECRET:
        headers[SIGNATURE_HEADER] = compute_signature(settings.TRIGGER_SHARED_SECRET, body)
    try:
        resp = await client.post("/api/v1/triggers/bulk-update", content=body, headers=headers, timeout=10.0)
        return resp.status_code, resp.json()
    except Exception as e:
        return None, str(e)

async def verify_admission():
    tenant_id = f"admission-{uuid.uuid4().hex[:8]}.myshopify.com"
    await ensure_tenant(tenant_id)

    body = json.dumps({
        "tenant": tenant_id,
        "input": {
            "query_string": "tag:summer",
            "namespace": "custom",
            "key": "season",
            "type": "single_line_text_field",
            "value": "summer",
            "dry_run": True,
        },
    }).encode("utf-8")

    print(f"1. Firing {CONCURRENCY} identical triggers for {tenant_id}...")
    async with httpx.AsyncClient(base_url=API_URL) as client:
        results = await asyncio.gather(*(fire(client, body) for _ in range(CONCURRENCY)))

    ok = [r for code, r in results if code == 200]
    errors = [(code, r) for code, r in results if code != 200]
    job_ids = {r["job_id"] for r in ok}
    created = [r for r in ok if not r["deduped"]]

    print(f"2. Results: {len(ok)} accepted, {len(errors)} errors, {len(job_ids)} distinct job(s), {len(created)} created")
    for code, r in errors:
        print(f"   - {code}: {r}")

    if len(job_ids) == 1 and len(created) == 1:
        print(f"SUCCESS: Exactly one job admitted: {job_ids.pop()}")
    else:
        print("FAILURE: Duplicate admission detected.")

if __name__ == "__main__":
    asyncio.run(verify_admission())
