# src/simchain/runtime/codec.py
from __future__ import annotations

import json
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from simchain.runtime.errors import GenesisDecodeError

Json = Dict[str, Any]

M = TypeVar("M", bound=BaseModel)


def canon_json(obj: Any) -> str:
    """Canonical JSON encoding.

    Keep this stable across nodes. Unknown types are not coerced: if a
    non-JSON value leaks into persisted state we fail fast rather than
    produce node-specific output.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class StrictModel(BaseModel):
    """Strict model: reject unknown keys."""

    model_config = ConfigDict(extra="forbid")


class JsonCodec:
    """Decodes raw genesis/app-state payloads into pydantic schemas and back."""

    def decode(self, schema: Type[M], raw: Any, *, module: str = "") -> M:
        if isinstance(raw, schema):
            return raw
        obj = raw
        if isinstance(raw, (bytes, bytearray, str)):
            try:
                obj = json.loads(raw)
            except (ValueError, UnicodeDecodeError) as e:
                raise GenesisDecodeError("genesis_decode_failed", "invalid_json", {"module": module, "error": str(e)}) from e
        try:
            return schema.model_validate(obj)
        except ValidationError as e:
            raise GenesisDecodeError(
                "genesis_decode_failed",
                "schema_validation_failed",
                {"module": module, "errors": e.errors(include_url=False)},
            ) from e

    def encode(self, model: BaseModel) -> Json:
        return model.model_dump(mode="json")

    def encode_bytes(self, obj: Any) -> bytes:
        if isinstance(obj, BaseModel):
            obj = self.encode(obj)
        return canon_json(obj).encode("utf-8")

    def decode_app_state(self, raw: Any) -> Json:
        """Decode the top-level genesis app state: a JSON object keyed by module name."""
        obj = raw
        if isinstance(raw, (bytes, bytearray, str)):
            try:
                obj = json.loads(raw) if raw else {}
            except (ValueError, UnicodeDecodeError) as e:
                raise GenesisDecodeError("genesis_decode_failed", "invalid_app_state_json", {"error": str(e)}) from e
        if not isinstance(obj, dict):
            raise GenesisDecodeError("genesis_decode_failed", "app_state_not_object", {"type": type(obj).__name__})
        return obj
