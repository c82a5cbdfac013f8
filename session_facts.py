# session_facts.py
"""
Per-session store of what the bot knows about the passenger.

Provides:
- SessionFacts (the merge-on-write fact set for one conversation session)
- ContextFactStore (facts carried in the Dialogflow "storage_context")
- DynamoFactStore (facts kept in a DynamoDB item that expires with the session)
- build_fact_store (backend selection from configuration)

Writes always merge into the existing facts. A value that is missing, empty
or "X" reads back as the unset marker "X".
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

try:
    import boto3
except Exception:
    boto3 = None

from variables import STORAGE_KEYS, UNSET, storage_key_of

logger = logging.getLogger("session_facts")

STORAGE_CONTEXT = "storage_context"
DEFAULT_LIFESPAN = 100
_UNKNOWN_VALUES = (None, "", UNSET)


def now_ts() -> float:
    return time.time()


def context_name(session_id: str, name: str) -> str:
    return f"{session_id}/contexts/{name}"


def short_context_name(full_name: str) -> str:
    return full_name.rsplit("/", 1)[-1]


@dataclass
class SessionFacts:
    session_id: str
    values: Dict[str, str] = field(default_factory=dict)
    lifespan: int = 0
    max_lifespan: int = DEFAULT_LIFESPAN
    changed: bool = False
    persisted: bool = False

    @property
    def expired(self) -> bool:
        return self.lifespan <= 0

    def get(self, key: str) -> str:
        if self.expired:
            return UNSET
        value = self.values.get(storage_key_of(key))
        if value in _UNKNOWN_VALUES:
            return UNSET
        return value

    def is_known(self, key: str) -> bool:
        return self.get(key) != UNSET

    def set_one(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, mapping: Mapping[str, Any]) -> None:
        # facts from an expired session must not come back with the next write
        if self.expired:
            self.values = {}
        for key, value in mapping.items():
            self.values[storage_key_of(key)] = UNSET if value is None else str(value)
        self.lifespan = self.max_lifespan
        self.changed = True

    def clear(self, key: str) -> None:
        self.set_one(key, UNSET)

    def reset(self) -> None:
        self.values = {}
        self.lifespan = 0
        self.changed = True

    def snapshot(self) -> Dict[str, str]:
        return {key: self.get(key) for key in STORAGE_KEYS}


class FactStore:
    """Loads the fact set at the start of a turn and commits it at the end."""

    def __init__(self, max_lifespan: int = DEFAULT_LIFESPAN):
        self.max_lifespan = max_lifespan

    def load(self, session_id: str, contexts: Optional[Iterable[Dict[str, Any]]] = None) -> SessionFacts:
        raise NotImplementedError

    def commit(self, facts: SessionFacts) -> Optional[Dict[str, Any]]:
        """Persist the facts. Returns an output context to send back, if any."""
        raise NotImplementedError

    @property
    def backend(self) -> str:
        raise NotImplementedError


class ContextFactStore(FactStore):
    """Keeps facts in the platform's own expiring context, round-tripped per turn."""

    def __init__(self, context: str = STORAGE_CONTEXT, max_lifespan: int = DEFAULT_LIFESPAN):
        super().__init__(max_lifespan)
        self.context = context

    @property
    def backend(self) -> str:
        return "context"

    def load(self, session_id: str, contexts: Optional[Iterable[Dict[str, Any]]] = None) -> SessionFacts:
        facts = SessionFacts(session_id=session_id, max_lifespan=self.max_lifespan)
        for ctx in contexts or []:
            if short_context_name(ctx.get("name") or "") != self.context:
                continue
            lifespan = ctx.get("lifespanCount")
            facts.lifespan = self.max_lifespan if lifespan is None else int(lifespan)
            parameters = ctx.get("parameters") or {}
            facts.values = {key: str(parameters[key]) for key in STORAGE_KEYS if parameters.get(key) is not None}
            facts.persisted = True
            break
        return facts

    def commit(self, facts: SessionFacts) -> Optional[Dict[str, Any]]:
        if not facts.changed:
            return None
        return {
            "name": context_name(facts.session_id, self.context),
            "lifespanCount": max(facts.lifespan, 0),
            "parameters": dict(facts.values) if not facts.expired else {},
        }


class DynamoFactStore(FactStore):
    """Persist facts to DynamoDB using table name from env or default 'chat_sessions'."""

    def __init__(
        self,
        table_name: Optional[str],
        region: str,
        ttl_seconds: int = 86400,
        max_lifespan: int = DEFAULT_LIFESPAN,
        table: Any = None,
    ):
        super().__init__(max_lifespan)
        self.table_name = table_name or "chat_sessions"
        self.region = region
        self.ttl_seconds = ttl_seconds
        if table is None:
            if not boto3:
                raise RuntimeError("boto3 is required to access DynamoDB.")
            resource = boto3.resource("dynamodb", region_name=region)
            table = resource.Table(self.table_name)
        self._table = table

    @property
    def backend(self) -> str:
        return "dynamodb"

    def load(self, session_id: str, contexts: Optional[Iterable[Dict[str, Any]]] = None) -> SessionFacts:
        facts = SessionFacts(session_id=session_id, max_lifespan=self.max_lifespan)
        try:
            response = self._table.get_item(Key={"session_id": session_id})
        except Exception:
            logger.exception("Dynamo get failed")
            raise
        item = response.get("Item")
        if not item:
            return facts
        facts.persisted = True
        if float(item.get("expires_at", 0)) <= now_ts():
            return facts
        # one turn has passed since the item was written
        facts.lifespan = int(item.get("lifespan", 0)) - 1
        stored = item.get("facts") or {}
        facts.values = {key: str(stored[key]) for key in STORAGE_KEYS if key in stored}
        return facts

    def commit(self, facts: SessionFacts) -> Optional[Dict[str, Any]]:
        if not (facts.changed or facts.persisted):
            return None
        try:
            if facts.expired:
                self._table.delete_item(Key={"session_id": facts.session_id})
            else:
                self._table.put_item(Item=self._to_item(facts))
        except Exception:
            logger.exception("Dynamo fact write failed")
            raise
        return None

    def _to_item(self, facts: SessionFacts) -> Dict[str, Any]:
        return {
            "session_id": facts.session_id,
            "facts": dict(facts.values),
            "lifespan": facts.lifespan,
            "expires_at": int(now_ts()) + self.ttl_seconds,
        }


def build_fact_store(
    backend: str,
    max_lifespan: int = DEFAULT_LIFESPAN,
    table_name: Optional[str] = None,
    region: str = "eu-west-1",
    ttl_seconds: int = 86400,
) -> FactStore:
    if backend == "dynamodb":
        return DynamoFactStore(table_name, region, ttl_seconds=ttl_seconds, max_lifespan=max_lifespan)
    if backend != "context":
        logger.warning("Unknown fact store backend %r, using the session context", backend)
    return ContextFactStore(max_lifespan=max_lifespan)
