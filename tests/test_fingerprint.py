"""Tests for the admission fingerprint."""

from dataclasses import replace

import pytest

from bulkmend.domain.fingerprint import compute_fingerprint
from bulkmend.domain.models import JobSpec

BASE = JobSpec(
    query_string="tag:summer",
    namespace="custom",
    key="season",
    type="single_line_text_field",
    value="summer",
    dry_run=True,
    max_items=10_000,
)


class TestComputeFingerprint:
    def test_is_sha256_hex(self):
        fp = compute_fingerprint("acme.myshopify.com", BASE)
        assert len(fp) == 64
        assert all(c in "0123456789abcdef" for c in fp)

    def test_is_deterministic(self):
        assert compute_fingerprint("acme.myshopify.com", BASE) == compute_fingerprint("acme.myshopify.com", BASE)

    def test_equal_specs_built_separately_match(self):
        other = JobSpec(**{f: getattr(BASE, f) for f in BASE.__dataclass_fields__})
        assert compute_fingerprint("acme.myshopify.com", other) == compute_fingerprint("acme.myshopify.com", BASE)

    def test_tenant_changes_digest(self):
        assert compute_fingerprint("acme.myshopify.com", BASE) != compute_fingerprint("other.myshopify.com", BASE)

    @pytest.mark.parametrize("changes", [
        {"query_string": "tag:winter"},
        {"namespace": "custom2"},
        {"key": "season2"},
        {"type": "boolean"},
        {"value": "winter"},
        {"dry_run": False},
        {"max_items": 9_999},
    ])
    def test_every_field_changes_digest(self, changes):
        changed = replace(BASE, **changes)
        assert compute_fingerprint("acme.myshopify.com", changed) != compute_fingerprint("acme.myshopify.com", BASE)

    @pytest.mark.parametrize("left, right", [
        (
            dict(query_string="q", namespace="ns", key="k", type="boolean", value="json|1"),
            dict(query_string="q|ns", namespace="k", key="boolean", type="json", value="1"),
        ),
        (
            dict(query_string='a","b', namespace="ns"),
            dict(query_string="a", namespace='b","ns'),
        ),
    ])
    def test_separators_inside_fields_do_not_collide(self, left, right):
        assert compute_fingerprint("t", replace(BASE, **left)) != compute_fingerprint("t", replace(BASE, **right))

    def test_separator_in_tenant_does_not_collide(self):
        one = compute_fingerprint("acme|tag", replace(BASE, query_string="x"))
        other = compute_fingerprint("acme", replace(BASE, query_string="tag|x"))
        assert one != other
