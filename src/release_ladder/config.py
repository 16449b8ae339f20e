"""YAML loaders for policy config and simulation run profiles."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import re
from typing import Any

from jsonschema import Draft202012Validator
import yaml

from .clock import ElapsedTickClock, SimulatedClock, TickSource
from .errors import InvalidConfig
from .policy import PolicyConfig


_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")

_LIMIT_SCHEMA: dict[str, Any] = {"type": ["integer", "null"], "minimum": 1}

POLICY_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "max_units_per_allocation": _LIMIT_SCHEMA,
        "max_concurrent_allocations": _LIMIT_SCHEMA,
        "max_units_per_tick": _LIMIT_SCHEMA,
        "allocation_overrides": {
            "type": "object",
            "additionalProperties": {"type": "integer", "minimum": 1},
        },
    },
}

RUN_PROFILE_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "required": ["allocations"],
    "properties": {
        "policy": POLICY_SCHEMA,
        "clock": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "kind": {"enum": ["simulated", "elapsed"]},
                "start": {"type": "integer", "minimum": 0},
                "interval_seconds": {"type": "number", "exclusiveMinimum": 0},
            },
        },
        "allocations": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["cap", "base_units"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "cap": {"type": "integer", "minimum": 1},
                    "base_units": {"type": "integer", "minimum": 1},
                    "activate": {"type": "boolean"},
                },
            },
        },
    },
}


class PolicyConfigError(ValueError):
    """Raised when a policy or run profile file is invalid."""


@dataclass(frozen=True)
class AllocationSeed:
    allocation_id: str | None
    cap: int
    base_units: int
    activate: bool = True


@dataclass(frozen=True)
class RunProfile:
    policy: PolicyConfig
    allocations: tuple[AllocationSeed, ...]
    clock_kind: str = "simulated"
    clock_start: int = 0
    interval_seconds: float | None = None

    def build_clock(self) -> TickSource:
        if self.clock_kind == "elapsed":
            return ElapsedTickClock(interval_seconds=float(self.interval_seconds or 1.0))
        return SimulatedClock(start=self.clock_start)


def load_policy_config(path: Path) -> PolicyConfig:
    payload = _load_yaml_mapping(path)
    return policy_config_from_mapping(payload)


def policy_config_from_mapping(payload: dict[str, Any]) -> PolicyConfig:
    resolved = _resolve_tree(payload)
    _validate(POLICY_SCHEMA, resolved, label="policy")
    try:
        return PolicyConfig(
            max_units_per_allocation=resolved.get("max_units_per_allocation"),
            max_concurrent_allocations=resolved.get("max_concurrent_allocations"),
            max_units_per_tick=resolved.get("max_units_per_tick"),
            allocation_overrides={
                str(key): value for key, value in (resolved.get("allocation_overrides") or {}).items()
            },
        )
    except InvalidConfig as exc:
        raise PolicyConfigError(str(exc)) from exc


def load_run_profile(path: Path) -> RunProfile:
    payload = _resolve_tree(_load_yaml_mapping(path))
    _validate(RUN_PROFILE_SCHEMA, payload, label="run profile")

    policy = policy_config_from_mapping(payload.get("policy") or {})
    seeds = tuple(
        AllocationSeed(
            allocation_id=item.get("id"),
            cap=int(item["cap"]),
            base_units=int(item["base_units"]),
            activate=bool(item.get("activate", True)),
        )
        for item in payload["allocations"]
    )
    clock_payload = payload.get("clock") or {}
    clock_kind = str(clock_payload.get("kind") or "simulated")
    interval = clock_payload.get("interval_seconds")
    if clock_kind == "elapsed" and interval is None:
        raise PolicyConfigError("clock.interval_seconds is required when clock.kind is 'elapsed'")
    return RunProfile(
        policy=policy,
        allocations=seeds,
        clock_kind=clock_kind,
        clock_start=int(clock_payload.get("start") or 0),
        interval_seconds=None if interval is None else float(interval),
    )


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise PolicyConfigError(f"{path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise PolicyConfigError(f"{path} must contain a mapping")
    return data


def _validate(schema: dict[str, Any], payload: Any, *, label: str) -> None:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        messages = "; ".join(
            f"{'.'.join(str(part) for part in error.path) or '<root>'}: {error.message}" for error in errors
        )
        raise PolicyConfigError(f"{label} validation failed: {messages}")


def _resolve_tree(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _resolve_tree(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_tree(item) for item in value]
    resolved = _resolve_env_token(value)
    if resolved is value:
        return value
    return _coerce_env_value(resolved)


def _resolve_env_token(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    key = match.group(1)
    default = match.group(2) or ""
    return os.getenv(key, default)


def _coerce_env_value(value: str) -> Any:
    # Substituted values arrive as strings; numbers and blanks are restored so
    # the schema sees the intended type.
    text = value.strip()
    if not text:
        return None
    if re.fullmatch(r"-?[0-9]+", text):
        return int(text)
    if re.fullmatch(r"-?[0-9]*\.[0-9]+", text):
        return float(text)
    if text.lower() in {"true", "false"}:
        return text.lower() == "true"
    return text
