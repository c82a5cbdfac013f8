# query_assembler.py
"""
Builds the query string sent to the prediction service.

The string always carries one ``key=value&`` pair per registered feature, in
registry order, using storage keys. Overrides win over stored facts and the
last override for a key wins. The trailing ``&`` is kept because the
ceteris paribus URL appends ``variable=...`` straight after it.
"""
from __future__ import annotations

from typing import Dict, Iterable, Tuple

from session_facts import SessionFacts
from variables import FEATURES, UNSET, storage_key_of

Override = Tuple[str, object]


def merge_overrides(facts: SessionFacts, overrides: Iterable[Override] = ()) -> Dict[str, str]:
    latest: Dict[str, str] = {}
    for key, value in overrides:
        latest[storage_key_of(key)] = UNSET if value is None else str(value)
    merged: Dict[str, str] = {}
    for feature in FEATURES:
        key = feature.storage_key
        merged[key] = latest[key] if key in latest else facts.get(key)
    return merged


def assemble(facts: SessionFacts, overrides: Iterable[Override] = ()) -> str:
    return "".join(f"{key}={value}&" for key, value in merge_overrides(facts, overrides).items())
