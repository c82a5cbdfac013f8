from __future__ import annotations

from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

import chatbot
import prediction_client


@pytest.fixture
def client() -> TestClient:
    return TestClient(chatbot.app)


def _texts(body: Dict[str, Any]) -> List[str]:
    return [m["text"]["text"][0] for m in body["fulfillmentMessages"] if "text" in m]


def _suggestions(body: Dict[str, Any]) -> List[str]:
    replies: List[str] = []
    for m in body["fulfillmentMessages"]:
        if "quickReplies" in m:
            replies.extend(m["quickReplies"]["quickReplies"])
    return replies


def _cards(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [m["card"] for m in body["fulfillmentMessages"] if "card" in m]


def _context(body: Dict[str, Any], name: str):
    for ctx in body.get("outputContexts", []):
        if ctx["name"].endswith(f"/contexts/{name}"):
            return ctx
    return None


def test_age_is_stored_and_predicted(client, fake_client, make_payload):
    fake_client.answer = 0.31
    response = client.post("/webhook", json=make_payload("telling_age", {"number": 30.0}))
    assert response.status_code == 200
    body = response.json()

    assert fake_client.queries == ["age=30&gender_value=X&fare=X&class_value=X&parch=X&sibsp=X&embarked=X&"]
    assert "would've died" in _texts(body)[-1]
    storage = _context(body, "storage_context")
    assert storage["lifespanCount"] == chatbot.STORAGE_CONTEXT_LIFESPAN
    assert storage["parameters"] == {"age": "30"}


def test_facts_accumulate_across_turns(client, fake_client, make_payload):
    first = client.post("/webhook", json=make_payload("telling_age", {"number": 30})).json()
    contexts = first["outputContexts"]

    second = client.post("/webhook", json=make_payload("telling_gender", {"gender": "male"}, contexts=contexts)).json()

    assert "age=30&gender_value=male&" in fake_client.queries[-1]
    assert _context(second, "storage_context")["parameters"] == {"age": "30", "gender_value": "male"}


def test_negative_age_reprompts_without_prediction(client, fake_client, make_payload, stored_facts):
    body = client.post("/webhook", json=make_payload("telling_age", {"number": -4}, contexts=stored_facts(fare="9"))).json()
    assert _texts(body) == ["I don't really think you are -4 years old. Tell me your real age."]
    assert fake_client.queries == []
    assert _context(body, "storage_context") is None


def test_missing_sibsp_asks_with_followup_context(client, fake_client, make_payload):
    body = client.post("/webhook", json=make_payload("setting_sibsp", {"number": ""})).json()
    assert "How many siblings and spouse" in _texts(body)[0]
    followup = _context(body, "specify_sibsp")
    assert followup["lifespanCount"] == 1
    assert fake_client.queries == []


def test_sibsp_confirmation_then_prediction(client, fake_client, make_payload, stored_facts):
    body = client.post("/webhook", json=make_payload("setting_sibsp", {"number": 2}, contexts=stored_facts(age="40"))).json()
    assert _texts(body)[0] == "I understood you travelled with 2 siblings and spouse altogether"
    assert "age=40&" in fake_client.queries[0]
    assert "sibsp=2&" in fake_client.queries[0]


def test_travelling_alone_sets_both_counts(client, fake_client, make_payload):
    body = client.post("/webhook", json=make_payload("travelling_alone")).json()
    assert "parch=0&sibsp=0&" in fake_client.queries[0]
    assert _context(body, "storage_context")["parameters"] == {"parch": "0", "sibsp": "0"}


def test_multi_slot_filling_writes_all_values(client, fake_client, make_payload, stored_facts):
    parameters = {"number": 25, "gender": "female", "embarkment_place": "Cherbourg", "class": "2nd"}
    body = client.post("/webhook", json=make_payload("multi_slot_filling", parameters, contexts=stored_facts(fare="30"))).json()
    assert fake_client.queries == [
        "age=25&gender_value=female&fare=30&class_value=2nd&parch=X&sibsp=X&embarked=Cherbourg&"
    ]
    assert _context(body, "storage_context")["parameters"]["fare"] == "30"


def test_class_prompts_follow_query_text(client, fake_client, make_payload):
    body = client.post("/webhook", json=make_payload("setting_class", {"class": ""}, query_text="crew")).json()
    assert _suggestions(body) == ["deck crew", "engineering crew", "restaurant staff", "victualling crew"]

    body = client.post("/webhook", json=make_payload("setting_class", {}, query_text="I worked there")).json()
    assert _texts(body) == ["Were you travelling as a passenger or part of the crew?"]
    assert _suggestions(body) == ["passenger", "crew"]
    assert fake_client.queries == []


def test_missing_embarkment_lists_places(client, fake_client, make_payload):
    body = client.post("/webhook", json=make_payload("setting_embarked")).json()
    assert _suggestions(body) == ["Belfast", "Cherbourg", "Queenstown", "Southampton"]


def test_current_knowledge_lists_every_variable(client, fake_client, make_payload, stored_facts):
    body = client.post("/webhook", json=make_payload("current_knowledge", contexts=stored_facts(age="30", gender_value="X"))).json()
    assert _texts(body) == [
        "Age: 30",
        "Gender is not defined",
        "Fare is not defined",
        "Class is not defined",
        "Number of parents/children is not defined",
        "Number of siblings/spouse is not defined",
        "Place of embarkment is not defined",
    ]


def test_current_prediction_uses_stored_facts(client, fake_client, make_payload, stored_facts):
    client.post("/webhook", json=make_payload("current_prediction", contexts=stored_facts(age="17", class_value="1st")))
    assert fake_client.queries == ["age=17&gender_value=X&fare=X&class_value=1st&parch=X&sibsp=X&embarked=X&"]


def test_clear_variable_keeps_the_others(client, fake_client, make_payload, stored_facts):
    body = client.post(
        "/webhook", json=make_payload("clear_variable", {"variable": "class"}, contexts=stored_facts(age="30", class_value="3rd"))
    ).json()
    assert _texts(body) == ["Variable class was cleared"]
    assert _context(body, "storage_context")["parameters"] == {"age": "30", "class_value": "X"}


def test_clear_unknown_variable_degrades_gracefully(client, fake_client, make_payload, stored_facts):
    body = client.post("/webhook", json=make_payload("clear_variable", {"variable": "cabin"}, contexts=stored_facts(age="30"))).json()
    assert _texts(body) == ["I don't know the variable cabin"]
    assert _context(body, "storage_context") is None


def test_restart_expires_storage(client, fake_client, make_payload, stored_facts, storage_context_name):
    body = client.post("/webhook", json=make_payload("reset_jack", contexts=stored_facts(age="20"))).json()
    assert _texts(body) == ["Let's start from the beginning!"]
    assert _context(body, "storage_context") == {"name": storage_context_name, "lifespanCount": 0, "parameters": {}}


def test_persona_sets_all_facts(client, fake_client, make_payload, stored_facts):
    body = client.post("/webhook", json=make_payload("rose_dewitt", contexts=stored_facts(fare="500"))).json()
    assert _cards(body)[0]["title"] == "Rose DeWitt Bukater"
    assert _context(body, "storage_context")["parameters"] == {
        "fare": "500",
        "age": "17",
        "gender_value": "female",
        "embarked": "Southampton",
        "sibsp": "1",
        "parch": "1",
        "class_value": "1st",
    }
    assert fake_client.queries == []


def test_prediction_failure_gives_recoverable_message(client, fake_client, make_payload):
    fake_client.fail = True
    body = client.post("/webhook", json=make_payload("setting_fare", {"number": 7.25})).json()
    assert _texts(body) == [chatbot.MESSAGES["prediction_unavailable"]]
    assert _context(body, "storage_context")["parameters"] == {"fare": "7.25"}


def test_explain_feature_sets_specify_context(client, fake_client, make_payload):
    body = client.post("/webhook", json=make_payload("explain_feature", {"variable": "fare"})).json()
    assert _texts(body) == ["Ticket fare in pounds."]
    assert _context(body, "specify_fare")["lifespanCount"] == 1

    body = client.post("/webhook", json=make_payload("explain_feature", {"variable": "gender"})).json()
    assert _context(body, "specify_gender") is None


def test_list_variables_pages(client, fake_client, make_payload):
    body = client.post("/webhook", json=make_payload("list_variables")).json()
    assert _suggestions(body) == ["age", "gender", "fare", "class", "More..."]
    body = client.post("/webhook", json=make_payload("list_variables", query_text="More...")).json()
    assert _suggestions(body) == ["parch", "sibsp", "embarked"]


def test_ceteris_paribus_card_points_at_model_service(client, fake_client, make_payload, stored_facts):
    body = client.post("/webhook", json=make_payload("ceteris_paribus", {"variable": ["fare"]}, contexts=stored_facts(age="30"))).json()
    card = _cards(body)[0]
    assert card["imageUri"] == (
        "http://model.test/ceteris_paribus?age=30&gender_value=X&fare=X&class_value=X&parch=X&sibsp=X&embarked=X&variable=fare"
    )
    assert card["buttons"][0]["postback"] == card["imageUri"]
    assert fake_client.queries == []


def test_how_to_survive_plots_class(client, fake_client, make_payload):
    body = client.post("/webhook", json=make_payload("how_to_survive")).json()
    assert _cards(body)[0]["imageUri"].endswith("variable=class")


def test_break_down_card(client, fake_client, make_payload):
    body = client.post("/webhook", json=make_payload("break_down")).json()
    assert _cards(body)[0]["imageUri"].startswith("http://model.test/break_down?age=X&")


def test_unknown_intent_falls_back(client, fake_client, make_payload):
    body = client.post("/webhook", json=make_payload("order_pizza")).json()
    assert _suggestions(body) == ["help"]


def test_missing_query_fields_are_tolerated(client, fake_client, session_id):
    body = client.post("/webhook", json={"session": session_id, "queryResult": {"parameters": None}}).json()
    assert _suggestions(body) == ["help"]


def test_healthcheck(client):
    body = client.get("/healthz").json()
    assert body["status"] == "ok"
    assert body["fact_store"] == "context"


# ---------------------------------------------------------------------------
# Rejected numbers and followup intents
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "intent, number, expected, followup",
    [
        ("setting_fare", -5, "Fare can't be -5. Please give me a number of zero or more.", "specify_fare"),
        ("specify_fare", "cheap", "Fare can't be cheap. Please give me a number of zero or more.", "specify_fare"),
        (
            "specify_sibsp",
            -1,
            "Number of siblings/spouse can't be -1. Please give me a whole number of zero or more.",
            "specify_sibsp",
        ),
        (
            "specify_parch",
            -2,
            "Number of parents/children can't be -2. Please give me a whole number of zero or more.",
            "specify_parch",
        ),
        (
            "setting_sibsp",
            2.5,
            "Number of siblings/spouse can't be 2.5. Please give me a whole number of zero or more.",
            "specify_sibsp",
        ),
        (
            "setting_parch",
            "inf",
            "Number of parents/children can't be inf. Please give me a whole number of zero or more.",
            "specify_parch",
        ),
    ],
)
def test_rejected_count_reprompts_and_rearms_followup(
    client, fake_client, make_payload, stored_facts, intent, number, expected, followup
):
    body = client.post("/webhook", json=make_payload(intent, {"number": number}, contexts=stored_facts(age="30"))).json()
    assert _texts(body) == [expected]
    assert _context(body, followup)["lifespanCount"] == 1
    assert fake_client.queries == []
    assert _context(body, "storage_context") is None


@pytest.mark.parametrize("intent", ["telling_age", "specify_age"])
@pytest.mark.parametrize("number", ["abc", "inf", -4])
def test_unusable_age_reprompts_with_followup(client, fake_client, make_payload, intent, number):
    body = client.post("/webhook", json=make_payload(intent, {"number": number})).json()
    assert _texts(body) == [f"I don't really think you are {number} years old. Tell me your real age."]
    assert _context(body, "specify_age")["lifespanCount"] == 1
    assert fake_client.queries == []
    assert _context(body, "storage_context") is None


def test_multi_slot_invalid_age_writes_nothing(client, fake_client, make_payload, stored_facts):
    parameters = {"number": -3, "gender": "female", "embarkment_place": "Cherbourg"}
    body = client.post("/webhook", json=make_payload("multi_slot_filling", parameters, contexts=stored_facts(fare="30"))).json()
    assert _texts(body) == ["I don't really think you are -3 years old. Tell me your real age."]
    assert _context(body, "specify_age")["lifespanCount"] == 1
    assert fake_client.queries == []
    assert _context(body, "storage_context") is None


@pytest.mark.parametrize(
    "intent, number, stored",
    [
        ("specify_age", 42, ("age", "42")),
        ("specify_fare", 7.25, ("fare", "7.25")),
        ("specify_sibsp", 3, ("sibsp", "3")),
        ("specify_parch", 0, ("parch", "0")),
    ],
)
def test_specify_intents_store_and_predict(client, fake_client, make_payload, intent, number, stored):
    key, value = stored
    body = client.post("/webhook", json=make_payload(intent, {"number": number})).json()
    assert f"{key}={value}&" in fake_client.queries[0]
    assert _context(body, "storage_context")["parameters"] == {key: value}


@pytest.mark.parametrize(
    "intent, prompt, followup",
    [
        ("specify_age", "How old are you?", "specify_age"),
        ("specify_fare", "How much did you pay for the ticket, in pounds?", "specify_fare"),
        ("specify_sibsp", "How many siblings and spouse altogether you travelled with?", "specify_sibsp"),
        ("specify_parch", "How many parents and children altogether you travelled with?", "specify_parch"),
    ],
)
def test_specify_intents_ask_again_without_a_number(client, fake_client, make_payload, intent, prompt, followup):
    body = client.post("/webhook", json=make_payload(intent, {"number": ""})).json()
    assert prompt in _texts(body)[0]
    assert _context(body, followup)["lifespanCount"] == 1
    assert fake_client.queries == []


def test_fractional_fare_is_accepted(client, fake_client, make_payload):
    body = client.post("/webhook", json=make_payload("specify_fare", {"number": "12.5"})).json()
    assert "fare=12.5&" in fake_client.queries[0]
    assert _context(body, "storage_context")["parameters"] == {"fare": "12.5"}


def test_context_without_lifespan_or_parameters_is_read(client, fake_client, make_payload, storage_context_name):
    contexts = [
        {"name": storage_context_name, "parameters": {"age": "55"}},
        {"name": "projects/titanic-bot/agent/sessions/test-session/contexts/other", "parameters": None},
    ]
    body = client.post("/webhook", json=make_payload("current_knowledge", contexts=contexts)).json()
    assert _texts(body)[0] == "Age: 55"


def test_out_of_range_probability_gives_recoverable_message(client, make_payload, monkeypatch):
    class NanResponse:
        ok = True
        status_code = 200
        text = '{"result": [NaN]}'

        def json(self):
            return {"result": [float("nan")]}

    monkeypatch.setattr(prediction_client.requests, "get", lambda url, timeout=None: NanResponse())
    body = client.post("/webhook", json=make_payload("setting_fare", {"number": 10})).json()
    assert _texts(body) == [chatbot.MESSAGES["prediction_unavailable"]]
    assert _context(body, "storage_context")["parameters"] == {"fare": "10"}
