import json
from typing import Iterable, Iterator

from bulkmend.domain.models import FieldSpec
from bulkmend.domain.values import parse_metafield_value

# Staged uploads accept at most 100 MB per file; stay under it.
CHUNK_SIZE_BYTES = 95 * 1024 * 1024

def build_mutation_lines(owner_ids: Iterable[str], field: FieldSpec) -> Iterator[str]:
    """
    Yields one JSONL record (newline-terminated) per owner id, carrying the
    variables of the metafieldsSet mutation.

    The value is parsed once up front, so a malformed value fails before any
    line is produced.
    """
    value = parse_metafield_value(field.value, field.type)

    for owner_id in owner_ids:
        record = {
            "ownerId": owner_id,
            "namespace": field.namespace,
            "key": field.key,
            "type": field.type,
            "value": value,
        }
        yield json.dumps(record, ensure_ascii=False) + "\n"

def build_result_chunks(lines: Iterable[str], max_bytes: int = CHUNK_SIZE_BYTES) -> list[list[str]]:
    """
    Groups lines into chunks whose UTF-8 size stays within max_bytes.

    A line is never split. A single line larger than max_bytes gets a chunk
    of its own.
    """
    chunks: list[list[str]] = []
    current: list[str] = []
    current_size = 0

    for line in lines:
        line_size = len(line.encode("utf-8"))

        if current and current_size + line_size > max_bytes:
            chunks.append(current)
            current = []
            current_size = 0

        current.append(line)
        current_size += line_size

    if current:
        chunks.append(current)

    return chunks

def build_mutation_chunks(
    owner_ids: Iterable[str],
    field: FieldSpec,
    max_bytes: int = CHUNK_SIZE_BYTES
) -> list[list[str]]:
    return build_result_chunks(build_mutation_lines(owner_ids, field), max_bytes)
