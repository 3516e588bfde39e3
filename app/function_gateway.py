"""Named procedures reachable through configs with the ``function`` operation.

The registry is closed: a config can only name a procedure registered here,
and ``params`` must satisfy the procedure's JSON schema before it runs.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from jsonschema import ValidationError, validate

from app.access import authorize_read, authorize_write, require_operation
from app.config_registry import ConfigResolver, SchemaDescriptor
from app.errors import ApiError, MalformedRequest
from app.security import CredentialContext
from app.upsert_engine import UPSERT_MODES, BulkUpsertEngine

logger = logging.getLogger(__name__)

FunctionHandler = Callable[[SchemaDescriptor, dict[str, Any], CredentialContext], dict[str, Any]]


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    description: str
    input_schema: dict[str, Any]
    output_schema: dict[str, Any]
    side_effect_level: str
    handler: FunctionHandler


@dataclass(frozen=True)
class FunctionCallPolicy:
    disabled_functions: frozenset[str]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "FunctionCallPolicy":
        env = os.environ if environ is None else environ
        disabled = {x.strip() for x in env.get("FUNCTION_DISABLED", "").split(",") if x.strip()}
        return cls(disabled_functions=frozenset(disabled))


def _option(descriptor: SchemaDescriptor, name: str) -> str:
    value = descriptor.function_options.get(name)
    if not isinstance(value, str) or not value:
        raise ApiError(
            code="FUNCTION_MISCONFIGURED",
            message=f"config {descriptor.config_id} is missing function option {name}",
            error_class="business_rule",
            retryable=False,
            http_status=500,
        )
    return value


class FunctionGateway:
    def __init__(
        self,
        *,
        resolver: ConfigResolver,
        upsert_engine: BulkUpsertEngine,
        policy: FunctionCallPolicy | None = None,
    ) -> None:
        self._resolver = resolver
        self._upsert_engine = upsert_engine
        self._policy = policy or FunctionCallPolicy(disabled_functions=frozenset())
        self._registry: dict[str, FunctionSpec] = {}
        self._register_builtins()

    def register(self, spec: FunctionSpec) -> FunctionSpec:
        self._registry[spec.name] = spec
        return spec

    def list_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "name": spec.name,
                "description": spec.description,
                "input_schema": spec.input_schema,
                "side_effect_level": spec.side_effect_level,
            }
            for spec in sorted(self._registry.values(), key=lambda s: s.name)
        ]

    def call(self, config_id: str, params: Any, credential: CredentialContext) -> dict[str, Any]:
        descriptor = self._resolver.resolve(config_id)
        authorize_write(descriptor, credential)
        require_operation(descriptor, "function")
        spec = self._registry.get(descriptor.function or "")
        if spec is None:
            raise ApiError(
                code="FUNCTION_NOT_FOUND",
                message=f"unknown function for config: {config_id}",
                error_class="business_rule",
                retryable=False,
                http_status=404,
            )
        if spec.name in self._policy.disabled_functions:
            raise ApiError(
                code="FUNCTION_DISABLED",
                message=f"function disabled: {spec.name}",
                error_class="security_sensitive",
                retryable=False,
                http_status=403,
            )
        payload = {} if params is None else params
        try:
            validate(instance=payload, schema=spec.input_schema)
        except ValidationError as exc:
            raise MalformedRequest(f"function params invalid: {exc.message}", code="FUNCTION_PARAMS_INVALID") from exc

        result = spec.handler(descriptor, dict(payload), credential)
        try:
            validate(instance=result, schema=spec.output_schema)
        except ValidationError as exc:
            raise ApiError(
                code="FUNCTION_OUTPUT_INVALID",
                message=f"function output invalid: {exc.message}",
                error_class="validation",
                retryable=False,
                http_status=500,
            ) from exc
        logger.info("function executed config_id=%s function=%s", config_id, spec.name)
        return result

    def _column_template(
        self,
        descriptor: SchemaDescriptor,
        params: dict[str, Any],
        credential: CredentialContext,
    ) -> dict[str, Any]:
        target = self._resolver.resolve(_option(descriptor, "target_config_id"))
        authorize_read(target, credential)
        return {
            "config_id": target.config_id,
            "headers": list(target.column_names),
            "key_columns": list(target.key_columns),
            "columns": [
                {
                    "name": col.name,
                    "type": col.type,
                    "nullable": col.nullable,
                    "key": col.name in target.key_columns,
                }
                for col in target.columns
            ],
        }

    def _upsert_from_params(
        self,
        descriptor: SchemaDescriptor,
        params: dict[str, Any],
        credential: CredentialContext,
    ) -> dict[str, Any]:
        result = self._upsert_engine.upsert(
            _option(descriptor, "upsert_config_id"),
            params["rows"],
            credential,
            mode=params.get("mode", "atomic"),
        )
        return result.to_dict()

    def _register_builtins(self) -> None:
        self.register(
            FunctionSpec(
                name="column_template",
                description="Header template (names, types, keys) for the target config.",
                input_schema={"type": "object"},
                output_schema={
                    "type": "object",
                    "properties": {
                        "config_id": {"type": "string"},
                        "headers": {"type": "array", "items": {"type": "string"}},
                        "key_columns": {"type": "array", "items": {"type": "string"}},
                        "columns": {"type": "array"},
                    },
                    "required": ["config_id", "headers", "key_columns", "columns"],
                },
                side_effect_level="read_only",
                handler=self._column_template,
            )
        )
        self.register(
            FunctionSpec(
                name="upsert_from_params",
                description="Upsert params.rows into the config named by upsert_config_id.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "rows": {"type": "array", "items": {"type": "object"}, "minItems": 1},
                        "mode": {"type": "string", "enum": sorted(UPSERT_MODES)},
                    },
                    "required": ["rows"],
                },
                output_schema={
                    "type": "object",
                    "properties": {
                        "success": {"type": "boolean"},
                        "inserted": {"type": "integer"},
                        "updated": {"type": "integer"},
                    },
                    "required": ["success", "inserted", "updated"],
                },
                side_effect_level="state_write",
                handler=self._upsert_from_params,
            )
        )
