"""Resume token lifecycle: create on pause, validate on resume.

The context is serialized to JSON. Values that are not JSON-native must
implement ``SerializableArtifact`` and their type must be registered with
``ResumeTokenManager.register_artifact_type``; decoding only ever
instantiates registered types.
"""

from __future__ import annotations

import base64
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol, runtime_checkable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from execution.token_store import ResumeTokenStore
from shared.errors import ResumeError, WorkflowError
from shared.workflow_contracts import ExecutionContext, ResumeToken

logger = logging.getLogger(__name__)

_ARTIFACT_KEY = "__artifact__"


@runtime_checkable
class SerializableArtifact(Protocol):
    """Side-channel artifact (e.g. a dice roll) that survives a pause."""

    def to_bytes(self) -> bytes:
        ...

    @classmethod
    def from_bytes(cls, data: bytes) -> Any:
        ...


@dataclass(frozen=True)
class ResumeState:
    graph_name: str
    node_id: str
    context: ExecutionContext


def _artifact_type_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


class ResumeTokenManager:
    """Creates and validates TTL-bound resume tokens in a ResumeTokenStore."""

    def __init__(
        self,
        store: ResumeTokenStore,
        ttl_seconds: float = 24 * 60 * 60,
        single_use: bool = True,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.single_use = single_use
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._artifact_types: dict[str, type] = {}

    def register_artifact_type(self, cls: type, name: str | None = None) -> None:
        if not (callable(getattr(cls, "to_bytes", None)) and callable(getattr(cls, "from_bytes", None))):
            raise WorkflowError(f"{cls.__name__} must implement to_bytes() and from_bytes()")
        self._artifact_types[name or _artifact_type_name(cls)] = cls

    # ─── Lifecycle ─────────────────────────────────────────────

    def create(self, graph_name: str, node_id: str, context: ExecutionContext) -> str:
        """Persist a paused run and return its opaque handle."""
        now = self._clock()
        token = ResumeToken(
            graph_name=graph_name,
            node_id=node_id,
            serialized_context=self.serialize_context(context),
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        handle = f"rt-{uuid.uuid4().hex}"
        self.store.put(handle, token.model_dump(mode="json"), self.ttl_seconds)
        logger.debug("Resume token created: workflow=%s node=%s", graph_name, node_id)
        return handle

    def validate(self, handle: str, graph_name: str | None = None) -> ResumeState:
        """Load a token; raises ResumeError when missing, expired, malformed or mismatched."""
        key = str(handle or "").strip()
        if not key:
            raise ResumeError("Resume token is empty")

        try:
            payload = self.store.get(key)
        except Exception as exc:
            raise ResumeError(f"Token validation failed: {exc}") from exc
        if payload is None:
            raise ResumeError("Invalid or expired resume token")

        try:
            token = ResumeToken.model_validate(payload)
        except PydanticValidationError as exc:
            raise ResumeError("Malformed resume token") from exc

        if token.is_expired(self._clock()):
            self.store.delete(key)
            raise ResumeError("Resume token has expired")

        if graph_name is not None and token.graph_name != graph_name:
            raise ResumeError(f"Resume token was issued for workflow '{token.graph_name}', not '{graph_name}'")

        context = self.deserialize_context(token.serialized_context)
        if self.single_use:
            self.store.delete(key)
        return ResumeState(graph_name=token.graph_name, node_id=token.node_id, context=context)

    def revoke(self, handle: str) -> None:
        self.store.delete(handle)

    # ─── Serialization ─────────────────────────────────────────

    def serialize_context(self, context: ExecutionContext) -> str:
        return json.dumps(self._encode(context.model_dump()), ensure_ascii=False)

    def deserialize_context(self, serialized: str) -> ExecutionContext:
        try:
            data = json.loads(serialized)
        except (TypeError, ValueError) as exc:
            raise ResumeError("Resume token context is not valid JSON") from exc
        if not isinstance(data, dict):
            raise ResumeError("Resume token context must be an object")
        try:
            return ExecutionContext.model_validate(self._decode(data))
        except PydanticValidationError as exc:
            raise ResumeError(f"Resume token context is invalid: {exc.error_count()} error(s)") from exc

    def _encode(self, value: Any) -> Any:
        if value is None or isinstance(value, (bool, int, float, str)):
            return value
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, dict):
            return {str(key): self._encode(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._encode(item) for item in value]
        if isinstance(value, BaseModel):
            return self._encode(value.model_dump())
        if isinstance(value, SerializableArtifact):
            type_name = self._registered_name(type(value))
            if type_name is None:
                raise WorkflowError(
                    f"Artifact type {type(value).__name__} is not registered for resume tokens"
                )
            return {
                _ARTIFACT_KEY: type_name,
                "data": base64.b64encode(value.to_bytes()).decode("ascii"),
            }
        raise WorkflowError(f"Context value of type {type(value).__name__} cannot be stored in a resume token")

    def _decode(self, value: Any) -> Any:
        if isinstance(value, list):
            return [self._decode(item) for item in value]
        if not isinstance(value, dict):
            return value
        if _ARTIFACT_KEY in value:
            type_name = str(value[_ARTIFACT_KEY])
            cls = self._artifact_types.get(type_name)
            if cls is None:
                raise ResumeError(f"Unknown artifact type in resume token: {type_name}")
            try:
                return cls.from_bytes(base64.b64decode(value.get("data", "")))
            except Exception as exc:
                raise ResumeError(f"Artifact {type_name} could not be restored: {exc}") from exc
        return {key: self._decode(item) for key, item in value.items()}

    def _registered_name(self, cls: type) -> str | None:
        for name, registered in self._artifact_types.items():
            if registered is cls:
                return name
        return None
