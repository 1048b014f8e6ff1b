from __future__ import annotations

from typing import Any

import jsonschema

EVENT_TYPES = ("spawn", "output", "input", "resize", "key", "screenshot", "expect", "exit")


def _event_variant(kind: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "if": {"properties": {"type": {"const": kind}}},
        "then": {"properties": {"data": data}},
    }


REPLAY_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["version", "timestamp", "duration", "events", "metadata"],
    "properties": {
        "version": {"type": "string", "minLength": 1},
        "timestamp": {"type": "string"},
        "duration": {"type": "integer", "minimum": 0},
        "events": {"type": "array", "items": {"$ref": "#/definitions/event"}},
        "metadata": {
            "type": "object",
            "required": ["cols", "rows", "command", "args", "env"],
            "properties": {
                "cols": {"type": "integer", "minimum": 1},
                "rows": {"type": "integer", "minimum": 1},
                "command": {"type": "string"},
                "args": {"type": "array", "items": {"type": "string"}},
                "env": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
            },
        },
    },
    "definitions": {
        "event": {
            "type": "object",
            "required": ["type", "timestamp"],
            "properties": {
                "type": {"enum": list(EVENT_TYPES)},
                "timestamp": {"type": "integer", "minimum": 0},
                "data": {},
            },
            "allOf": [
                _event_variant(
                    "spawn",
                    {
                        "type": "object",
                        "required": ["command", "args"],
                        "properties": {
                            "command": {"type": "string"},
                            "args": {"type": "array", "items": {"type": "string"}},
                        },
                    },
                ),
                _event_variant("output", {"type": "string"}),
                _event_variant("input", {"type": "string"}),
                _event_variant("key", {"type": "string"}),
                _event_variant(
                    "resize",
                    {
                        "type": "object",
                        "required": ["cols", "rows"],
                        "properties": {
                            "cols": {"type": "integer", "minimum": 1},
                            "rows": {"type": "integer", "minimum": 1},
                        },
                    },
                ),
                _event_variant(
                    "screenshot",
                    {
                        "type": "object",
                        "required": ["name"],
                        "properties": {"name": {"type": "string"}},
                    },
                ),
                _event_variant(
                    "expect",
                    {
                        "type": "object",
                        "required": ["pattern"],
                        "properties": {
                            "pattern": {"type": "string"},
                            "matched": {"type": "boolean"},
                        },
                    },
                ),
                _event_variant("exit", {"type": ["integer", "null"]}),
            ],
        }
    },
}


def validate_replay(payload: dict[str, Any]) -> None:
    jsonschema.validate(instance=payload, schema=REPLAY_SCHEMA)
