"""Scripted stand-in for the remote platform, served through httpx.MockTransport."""

import json
from collections import defaultdict
from typing import Optional

import httpx

from bulkmend.platform.client import PlatformClient

SHOP = "acme.myshopify.com"
UPLOAD_URL = "https://uploads.example.com/bulk"
RESULTS_URL = "https://storage.example.com/"


class FakePlatform:
    """
    Answers the GraphQL documents the bulk stages send. Operations complete
    after `polls_before_complete` status reads; result files are registered
    per operation id.
    """

    def __init__(self, polls_before_complete: int = 1):
        self.polls_before_complete = polls_before_complete
        self.query_results: Optional[str] = None
        self.mutation_results: dict[int, str] = {}
        self.operation_status: dict[str, str] = {}
        self.error_codes: dict[str, str] = {}
        self.uploads: list[bytes] = []
        self.submitted_queries: list[str] = []
        self.submitted_mutations: list[str] = []
        self._polls = defaultdict(int)
        self._urls: dict[str, Optional[str]] = {}
        self._next_id = 1

    def client(self, **kwargs) -> PlatformClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return PlatformClient(SHOP, "shpat_test", http=http, backoff_base=0, **kwargs)

    def _new_operation(self, url: Optional[str]) -> str:
        op_id = f"gid://shopify/BulkOperation/{self._next_id}"
        self._next_id += 1
        self._urls[op_id] = url
        return op_id

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == SHOP:
            return self._graphql(json.loads(request.content))

        if str(request.url) == UPLOAD_URL:
            self.uploads.append(request.content)
            return httpx.Response(201)

        path = request.url.path.lstrip("/")
        if path == "query.jsonl" and self.query_results is not None:
            return httpx.Response(200, content=self.query_results.encode("utf-8"))
        if path.startswith("mutation-"):
            index = int(path[len("mutation-"):-len(".jsonl")])
            return httpx.Response(200, content=self.mutation_results[index].encode("utf-8"))
        return httpx.Response(404)

    def _graphql(self, payload: dict) -> httpx.Response:
        query = payload["query"]
        variables = payload.get("variables") or {}

        if "bulkOperationRunQuery" in query:
            self.submitted_queries.append(variables["query"])
            url = RESULTS_URL + "query.jsonl" if self.query_results is not None else None
            op_id = self._new_operation(url)
            return self._data({"bulkOperationRunQuery": {"bulkOperation": {"id": op_id, "status": "CREATED"}, "userErrors": []}})

        if "stagedUploadsCreate" in query:
            return self._data({"stagedUploadsCreate": {
                "stagedTargets": [{
                    "url": UPLOAD_URL,
                    "resourceUrl": None,
                    "parameters": [
                        {"name": "key", "value": f"tmp/staged/{len(self.uploads)}/bulk-mutation-vars.jsonl"},
                        {"name": "policy", "value": "abc"},
                    ],
                }],
                "userErrors": [],
            }})

        if "bulkOperationRunMutation" in query:
            self.submitted_mutations.append(variables["stagedUploadPath"])
            index = len(self.submitted_mutations) - 1
            url = RESULTS_URL + f"mutation-{index}.jsonl" if index in self.mutation_results else None
            op_id = self._new_operation(url)
            return self._data({"bulkOperationRunMutation": {"bulkOperation": {"id": op_id, "status": "CREATED"}, "userErrors": []}})

        if "node(id:" in query:
            op_id = variables["id"]
            self._polls[op_id] += 1
            status = self.operation_status.get(op_id)
            if status is None:
                status = "COMPLETED" if self._polls[op_id] >= self.polls_before_complete else "RUNNING"
            node = {
                "id": op_id,
                "status": status,
                "errorCode": self.error_codes.get(op_id),
                "objectCount": "0",
                "url": self._urls.get(op_id) if status == "COMPLETED" else None,
            }
            return self._data({"node": node})

        return httpx.Response(400, json={"errors": [{"message": "unexpected document"}]})

    @staticmethod
    def _data(data: dict) -> httpx.Response:
        return httpx.Response(200, json={"data": data})


def jsonl(objects) -> str:
    return "".join(json.dumps(obj) + "\n" for obj in objects)


def product_lines(count: int) -> str:
    return jsonl({"id": f"gid://shopify/Product/{i}"} for i in range(1, count + 1))


def mutation_lines(ok: int, failed: int = 0) -> str:
    lines = [{"data": {"metafieldsSet": {"metafields": [{"id": "gid://shopify/Metafield/1"}], "userErrors": []}}} for _ in range(ok)]
    lines += [{"data": {"metafieldsSet": {"metafields": [], "userErrors": [{"field": ["value"], "message": "invalid"}]}}} for _ in range(failed)]
    return jsonl(lines)
