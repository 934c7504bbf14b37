"""
Normalization of runtime CLI output into JSON values.

Runtimes differ in how they emit `--format json`: some print a single JSON
array, others print one object per line. Both shapes are accepted; anything
else is wrapped as {"raw": stdout} so callers always get a value back.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedOutput:
    """Result of parsing CLI output: either decoded JSON or the raw fallback."""
    value: Any
    is_raw: bool = False


def parse_output(stdout: str) -> ParsedOutput:
    lines = [line for line in (stdout or "").split("\n") if line.strip()]
    if not lines:
        return ParsedOutput([])

    try:
        if len(lines) == 1:
            return ParsedOutput(json.loads(lines[0]))
        return ParsedOutput([json.loads(line) for line in lines])
    except ValueError as e:
        log.debug("output_parser.raw_fallback lines=%d error=%s", len(lines), str(e))
        return ParsedOutput({"raw": stdout}, is_raw=True)


def parse_json_output(stdout: str) -> Any:
    """Parse JSON or newline-delimited JSON; never raises."""
    return parse_output(stdout).value
