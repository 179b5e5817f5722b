"""
Inbound trigger schema.

A trigger names a tenant and the bulk update to run. Payloads arrive either
nested (``{"tenant": ..., "input": {...}}``) or flat (the input fields beside
``tenant``); both are normalized into one strict model before anything else
sees them.
"""
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from bulkmend.domain.errors import MetafieldValueError
from bulkmend.domain.models import JobSpec
from bulkmend.domain.values import MetafieldType, parse_metafield_value

IDENTIFIER_PATTERN = r"^[a-z0-9_]+$"
DEFAULT_DRY_RUN = True
DEFAULT_MAX_ITEMS = 10_000
MAX_ITEMS_CEILING = 100_000

class TriggerInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query_string: str = Field(min_length=1, max_length=500)
    namespace: str = Field(min_length=1, max_length=50, pattern=IDENTIFIER_PATTERN)
    key: str = Field(min_length=1, max_length=50, pattern=IDENTIFIER_PATTERN)
    type: MetafieldType
    value: str = Field(max_length=1024)
    dry_run: Optional[bool] = None
    max_items: Optional[int] = Field(default=None, ge=1, le=MAX_ITEMS_CEILING)

    @field_validator("query_string")
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query_string must not be blank")
        return value

    @model_validator(mode="after")
    def value_matches_type(self) -> "TriggerInput":
        try:
            parse_metafield_value(self.value, self.type)
        except MetafieldValueError as e:
            raise ValueError(str(e)) from None
        return self

class TriggerPayload(BaseModel):
    tenant: str = Field(min_length=1, max_length=255)
    input: TriggerInput

    def to_spec(self) -> JobSpec:
        data = self.input
        return JobSpec(
            query_string=data.query_string,
            namespace=data.namespace,
            key=data.key,
            type=str(data.type),
            value=data.value,
            dry_run=DEFAULT_DRY_RUN if data.dry_run is None else data.dry_run,
            max_items=DEFAULT_MAX_ITEMS if data.max_items is None else data.max_items,
        )

@dataclass(frozen=True)
class TriggerAccepted:
    tenant_id: str
    spec: JobSpec

@dataclass(frozen=True)
class TriggerRejected:
    errors: list[dict[str, str]]

TriggerResult = Union[TriggerAccepted, TriggerRejected]

def parse_trigger(raw: Any) -> TriggerResult:
    """Validates a decoded trigger body. Never raises for bad input."""
    if not isinstance(raw, dict):
        return TriggerRejected([{"field": "", "message": "payload must be a JSON object"}])

    if "input" not in raw:
        raw = {"tenant": raw.get("tenant"), "input": {k: v for k, v in raw.items() if k != "tenant"}}

    try:
        payload = TriggerPayload.model_validate(raw)
    except ValidationError as e:
        return TriggerRejected([
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ])

    return TriggerAccepted(tenant_id=payload.tenant, spec=payload.to_spec())
