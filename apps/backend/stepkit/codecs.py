from __future__ import annotations

import codecs
import csv
import io
import json
from typing import Any

import yaml

JSON_EXTENSIONS = {".json"}
YAML_EXTENSIONS = {".yaml", ".yml"}
CSV_EXTENSIONS = {".csv"}


class CodecError(ValueError):
    """Raised when content cannot be parsed or serialised."""


def format_for(extension: str) -> str:
    ext = extension.lower()
    if ext in JSON_EXTENSIONS:
        return "json"
    if ext in YAML_EXTENSIONS:
        return "yaml"
    if ext in CSV_EXTENSIONS:
        return "csv"
    return "text"


def decode_text(data: bytes) -> str:
    """Decode *data*, dropping a leading UTF-8 or UTF-16 byte order mark."""
    if data.startswith(codecs.BOM_UTF8):
        return data[len(codecs.BOM_UTF8) :].decode("utf-8")
    if data.startswith(codecs.BOM_UTF16_LE):
        return data[len(codecs.BOM_UTF16_LE) :].decode("utf-16-le")
    if data.startswith(codecs.BOM_UTF16_BE):
        return data[len(codecs.BOM_UTF16_BE) :].decode("utf-16-be")
    return data.decode("utf-8")


def parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise CodecError(f"invalid JSON at line {exc.lineno} column {exc.colno}: {exc.msg}") from exc


def parse_yaml(text: str) -> Any:
    """Parse YAML; a stream with several documents yields a list of them."""
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as exc:
        raise CodecError(f"invalid YAML: {exc}") from exc
    if not documents:
        return None
    if len(documents) == 1:
        return documents[0]
    return documents


def dedupe_headers(headers: list[str]) -> list[str]:
    """Suffix repeated headers with _2, _3, ... skipping names already taken."""
    original = set(headers)
    seen: set[str] = set()
    counts: dict[str, int] = {}
    out: list[str] = []
    for header in headers:
        name = header
        if name in seen:
            count = counts.get(header, 1)
            while name in seen or name in original:
                count += 1
                name = f"{header}_{count}"
            counts[header] = count
        seen.add(name)
        out.append(name)
    return out


def parse_csv(text: str) -> list[dict[str, str]]:
    try:
        rows = list(csv.reader(io.StringIO(text, newline="")))
    except csv.Error as exc:
        raise CodecError(f"invalid CSV: {exc}") from exc
    if not rows:
        return []
    headers = dedupe_headers(rows[0])
    records: list[dict[str, str]] = []
    for row in rows[1:]:
        if not row:
            continue
        records.append({header: (row[idx] if idx < len(row) else "") for idx, header in enumerate(headers)})
    return records


def dump_json(data: Any) -> str:
    try:
        return json.dumps(data, ensure_ascii=False, indent=2) + "\n"
    except (TypeError, ValueError) as exc:
        raise CodecError(f"content is not JSON serialisable: {exc}") from exc


def dump_yaml(data: Any) -> str:
    try:
        return yaml.safe_dump(data, allow_unicode=True, sort_keys=False)
    except yaml.YAMLError as exc:
        raise CodecError(f"content is not YAML serialisable: {exc}") from exc


def extract_path(document: Any, expression: str) -> Any:
    """Follow a dotted ``$.a.b.0`` expression through *document*.

    Raises ``KeyError`` naming the first segment that does not exist.
    """
    expr = expression.strip()
    if expr in ("$", ""):
        return document
    if expr.startswith("$."):
        expr = expr[2:]
    elif expr.startswith("$"):
        expr = expr[1:]
    current = document
    for segment in expr.split("."):
        if not segment:
            raise KeyError(expression)
        if isinstance(current, dict):
            if segment not in current:
                raise KeyError(segment)
            current = current[segment]
        elif isinstance(current, list) and segment.lstrip("-").isdigit():
            index = int(segment)
            if not -len(current) <= index < len(current):
                raise KeyError(segment)
            current = current[index]
        else:
            raise KeyError(segment)
    return current
