from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

import chatbot
from prediction_client import PredictionClient, PredictionError

SESSION = "projects/titanic-bot/agent/sessions/test-session"


class FakePredictionClient(PredictionClient):
    """Records every query and answers with a fixed probability."""

    def __init__(self, probability: float = 0.5, fail: bool = False):
        super().__init__("http://model.test")
        self.answer = probability
        self.fail = fail
        self.queries: List[str] = []

    def probability(self, query: str) -> float:
        self.queries.append(query)
        if self.fail:
            raise PredictionError("prediction service unreachable")
        return self.answer


@pytest.fixture
def fake_client(monkeypatch) -> FakePredictionClient:
    client = FakePredictionClient()
    monkeypatch.setattr(chatbot, "prediction_client", client)
    return client


@pytest.fixture
def session_id() -> str:
    return SESSION


@pytest.fixture
def storage_context_name(session_id) -> str:
    return f"{session_id}/contexts/storage_context"


@pytest.fixture
def stored_facts(storage_context_name):
    """Build the storage_context a previous turn would have left behind."""

    def _make(**facts) -> List[Dict[str, Any]]:
        return [{"name": storage_context_name, "lifespanCount": 50, "parameters": facts}]

    return _make


@pytest.fixture
def make_payload():
    def _make(
        intent: str,
        parameters: Optional[Dict[str, Any]] = None,
        query_text: str = "",
        contexts: Optional[List[Dict[str, Any]]] = None,
        session: str = SESSION,
    ) -> Dict[str, Any]:
        return {
            "responseId": "response-1",
            "session": session,
            "queryResult": {
                "queryText": query_text,
                "parameters": parameters or {},
                "intent": {"displayName": intent},
                "outputContexts": contexts or [],
            },
        }

    return _make
