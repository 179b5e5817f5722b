import json
import re
from enum import StrEnum

from bulkmend.domain.errors import MetafieldValueError

class MetafieldType(StrEnum):
    SINGLE_LINE_TEXT_FIELD = "single_line_text_field"
    BOOLEAN = "boolean"
    NUMBER_INTEGER = "number_integer"
    JSON = "json"

TRUTHY_VALUES = frozenset({"true", "1", "yes"})

# ASCII digits only; int() alone would also take "1_000" and other scripts' digits.
INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")

def parse_metafield_value(value: str, value_type: str) -> str:
    """
    Normalizes a raw value for its declared type and returns the string the
    remote API expects.

    Raises MetafieldValueError for integers and JSON that do not parse;
    booleans are never rejected, anything outside TRUTHY_VALUES is "false".
    """
    if value_type == MetafieldType.BOOLEAN:
        return "true" if value.strip().lower() in TRUTHY_VALUES else "false"

    if value_type == MetafieldType.NUMBER_INTEGER:
        text = value.strip()
        if not INTEGER_PATTERN.fullmatch(text):
            raise MetafieldValueError(value_type, value)
        return str(int(text, 10))

    if value_type == MetafieldType.JSON:
        def reject_constant(_name: str):
            # NaN and Infinity are not JSON, even though json.loads takes them.
            raise MetafieldValueError(value_type, value)

        try:
            parsed = json.loads(value, parse_constant=reject_constant)
        except json.JSONDecodeError:
            raise MetafieldValueError(value_type, value) from None
        try:
            return json.dumps(parsed, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        except ValueError:
            # Literals like 1e999 overflow to inf
            raise MetafieldValueError(value_type, value) from None

    return value
