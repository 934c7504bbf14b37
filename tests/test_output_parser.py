"""Tests for JSON / newline-delimited JSON normalization."""
from __future__ import annotations

import pathlib
import sys

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from container_mcp.output_parser import parse_json_output, parse_output  # noqa: E402


def test_empty_output_is_empty_list() -> None:
    assert parse_json_output("") == []
    assert parse_json_output("\n  \n") == []
    assert parse_json_output(None) == []


def test_single_line_array() -> None:
    assert parse_json_output('[{"Id":"a"},{"Id":"b"}]') == [{"Id": "a"}, {"Id": "b"}]


def test_single_line_object_is_not_wrapped() -> None:
    assert parse_json_output('{"Version":"4.9.0"}\n') == {"Version": "4.9.0"}


def test_newline_delimited_objects() -> None:
    stdout = '{"ID":"1","Names":"web"}\n\n{"ID":"2","Names":"db"}\n'
    assert parse_json_output(stdout) == [
        {"ID": "1", "Names": "web"},
        {"ID": "2", "Names": "db"},
    ]


def test_invalid_json_falls_back_to_raw() -> None:
    stdout = "CONTAINER ID   IMAGE\nabc123         nginx\n"
    parsed = parse_output(stdout)

    assert parsed.is_raw
    assert parsed.value == {"raw": stdout}


def test_one_bad_line_makes_the_whole_output_raw() -> None:
    stdout = '{"ID":"1"}\nnot json\n'
    assert parse_json_output(stdout) == {"raw": stdout}


def test_scalar_json_line() -> None:
    parsed = parse_output("42")
    assert parsed.value == 42
    assert not parsed.is_raw
