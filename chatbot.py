# chatbot.py
"""
Titanic survival chatbot fulfillment webhook (Dialogflow ES).

- One handler per Dialogflow intent, dispatched from INTENT_HANDLERS.
- Passenger details are remembered per session in SessionFacts; every write
  merges into what is already known.
- Each new detail triggers a survival prediction from the model service,
  built from all known details.
- Explanation plots (ceteris paribus, break down) are returned as cards whose
  image URL points straight at the model service.
- Integrates with:
    - session_facts (ContextFactStore / DynamoFactStore)
    - query_assembler.assemble
    - prediction_client.PredictionClient
    - dialogflow_messages.WebhookReply
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, validator

from dialogflow_messages import WebhookReply
from prediction_client import PredictionClient, PredictionError
from query_assembler import assemble
from session_facts import DEFAULT_LIFESPAN, SessionFacts, build_fact_store
from variables import (
    CREW_CLASSES,
    EMBARKMENT_PLACES,
    FEATURE_NAMES,
    FEATURES,
    PASSENGER_CLASSES,
    description,
    get_feature,
)

try:
    from mangum import Mangum
except ImportError:  # pragma: no cover - mangum optional for local runs
    Mangum = None

# --- Configuration & logging ---
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger("titanic.chatbot")

app = FastAPI(title="Titanic Survival Chatbot", version="1.0.0")
_lambda_adapter = Mangum(app) if Mangum else None

# Environment / defaults
PREDICTION_SERVER_URL = os.getenv("PREDICTION_SERVER_URL", "http://127.0.0.1:8787")
PREDICTION_TIMEOUT = float(os.environ["PREDICTION_TIMEOUT"]) if os.getenv("PREDICTION_TIMEOUT") else None
STORAGE_CONTEXT_LIFESPAN = int(os.getenv("STORAGE_CONTEXT_LIFESPAN", str(DEFAULT_LIFESPAN)))
FACT_STORE_BACKEND = os.getenv("FACT_STORE_BACKEND", "context")
SESSION_TABLE_NAME = os.getenv("SESSION_TABLE_NAME", "chat_sessions")
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "86400"))
AWS_REGION = os.getenv("AWS_REGION", "eu-west-1")
FOLLOWUP_LIFESPAN = 1
LIST_FIRST = 4

# --- Message pack ---
MESSAGES: Dict[str, str] = {
    "welcome": "Hello! I'm DrAnt, a Titanic survival bot. Let's see whether you would've survived on Titanic and discuss the model predictions.",
    "welcome_start": "You might start by telling some details about you",
    "welcome_list": "List variables and ask about their meaning at any time:",
    "welcome_personas": "You might also start as Jack or Rose from the movie :)",
    "fallback": "Sorry, I don't understand yet. But I'll learn from this conversation and improve in the future!",
    "fallback_help": "Click below if you need help",
    "prediction_unavailable": "I couldn't reach the prediction service right now. Please try again in a moment.",
    "invalid_age": "I don't really think you are {value} years old. Tell me your real age.",
    "ask_age": "How old are you?",
    "ask_fare": "How much did you pay for the ticket, in pounds?",
    "ask_gender": "Are you male or female?",
    "ask_sibsp": "I'm sorry. I'm not sure. How many siblings and spouse altogether you travelled with?",
    "ask_parch": "I'm sorry. I'm not sure. How many parents and children altogether you travelled with?",
    "invalid_count": "{label} can't be {value}. Please give me a number of zero or more.",
    "invalid_whole_count": "{label} can't be {value}. Please give me a whole number of zero or more.",
    "confirm_sibsp": "I understood you travelled with {value} siblings and spouse altogether",
    "confirm_parch": "I understood you travelled with {value} parents and children altogether",
    "travelling_alone": "I understand you travelled alone. I'm setting sibsp and parch to zero.",
    "ask_embarked": "Where have you embarked on the Titanic? Possible places were:",
    "ask_class": "Were you travelling as a passenger or part of the crew?",
    "unknown_variable": "I don't know the variable {name}",
    "ask_variable": "Which variable do you mean?",
    "variable_cleared": "Variable {name} was cleared",
    "not_defined": "{label} is not defined",
    "known_value": "{label}: {value}",
    "list_variables": "Click on the variable to see a detailed description",
    "restart": "Let's start from the beginning!",
    "goodbye": "Bye :( Great talking to you! Come back later, as I will improve!",
    "plot_wait": "Creating a plot. It may take a few seconds...",
    "break_down_text": "This chart illustrates the contribution of variables to the final prediction",
    "how_to_survive_class": "Travelling in a different class might increase your survival chance",
    "how_to_survive_more": "You might also ask what-if questions for other variables",
}

WELCOME_IMAGE = "https://upload.wikimedia.org/wikipedia/en/b/bb/Titanic_breaks_in_half.jpg"
PERSONAS_IMAGE = "https://vignette.wikia.nocookie.net/jamescameronstitanic/images/b/b9/Roseandjack.jpg/revision/latest?cb=20110213201351"
GOODBYE_IMAGE = "https://vignette.wikia.nocookie.net/jamescameronstitanic/images/5/55/Jack_and_Rose-2.jpg/revision/latest?cb=20120405074438"
PROBLEM_WIKI_URL = "https://en.wikipedia.org/wiki/Passengers_of_the_RMS_Titanic"
PROBLEM_IMAGE = "https://natgeo.imgix.net/factsheets/thumbnails/RMSTitanic_TimelineofDisaster_Titanic.jpg?auto=compress,format&w=1024&h=560&fit=crop"

PERSONAS: Dict[str, Dict[str, Any]] = {
    "jack": {
        "title": "Jack Dawson",
        "image": "https://vignette.wikia.nocookie.net/jamescameronstitanic/images/e/ef/Untitledhgkjljlklk.png",
        "text": "Jack has died from hypothermia",
        "facts": {"age": "20", "gender_value": "male", "embarked": "Southampton", "sibsp": "0", "parch": "0", "class_value": "3rd"},
    },
    "rose": {
        "title": "Rose DeWitt Bukater",
        "image": "https://vignette.wikia.nocookie.net/jamescameronstitanic/images/d/d3/Rosedewittbukater.jpg/revision/latest?cb=20120518041253",
        "text": "Rose survived the catastrophe",
        "facts": {"age": "17", "gender_value": "female", "embarked": "Southampton", "sibsp": "1", "parch": "1", "class_value": "1st"},
    },
}

# counted in people, so only whole numbers are accepted
WHOLE_NUMBER_SLOTS = {"sibsp", "parch"}

# variables whose explanation is followed by a "specify_<name>" intent
SPECIFY_FOLLOWUPS = {"age", "fare", "parch", "sibsp", "class"}

# ---------------------------------------------------------------------------
# Stores & clients
# ---------------------------------------------------------------------------

fact_store = build_fact_store(
    FACT_STORE_BACKEND,
    max_lifespan=STORAGE_CONTEXT_LIFESPAN,
    table_name=SESSION_TABLE_NAME,
    region=AWS_REGION,
    ttl_seconds=SESSION_TTL_SECONDS,
)

prediction_client = PredictionClient(PREDICTION_SERVER_URL, timeout=PREDICTION_TIMEOUT)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Intent(BaseModel):
    display_name: str = Field(default="", alias="displayName")


class OutputContext(BaseModel):
    name: str = ""
    lifespan_count: Optional[int] = Field(default=None, alias="lifespanCount")
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @validator("parameters", pre=True)
    def default_parameters(cls, v):
        return v or {}


class QueryResult(BaseModel):
    query_text: Optional[str] = Field(default="", alias="queryText")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    intent: Optional[Intent] = None
    output_contexts: List[OutputContext] = Field(default_factory=list, alias="outputContexts")

    @validator("parameters", pre=True)
    def default_parameters(cls, v):
        return v or {}

    @validator("output_contexts", pre=True)
    def default_contexts(cls, v):
        return v or []


class WebhookRequest(BaseModel):
    session: str = "default"
    response_id: Optional[str] = Field(default=None, alias="responseId")
    query_result: QueryResult = Field(default_factory=QueryResult, alias="queryResult")


@dataclass
class Turn:
    """Everything one handler needs for one request/response cycle."""

    facts: SessionFacts
    reply: WebhookReply
    parameters: Dict[str, Any]
    query_text: str = ""

# ---------------------------------------------------------------------------
# Slot helpers
# ---------------------------------------------------------------------------

def slot_value(parameters: Dict[str, Any], name: str) -> Optional[str]:
    """Return a parameter as a non-empty string, or None when it was not given."""
    value = parameters.get(name)
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def parse_numeric(value: str, value_type=float):
    try:
        cleaned = value.replace(",", "").strip()
        return value_type(cleaned)
    except (TypeError, ValueError):
        raise ValueError("invalid_number")


def is_valid_count(value: str, whole: bool = False) -> bool:
    try:
        number = parse_numeric(value)
    except ValueError:
        return False
    if not math.isfinite(number) or number < 0:
        return False
    return number.is_integer() if whole else True


def ask_with_followup(turn: Turn, prompt: str, followup: str) -> None:
    turn.reply.add_text(prompt)
    turn.reply.set_context(followup, FOLLOWUP_LIFESPAN)

# ---------------------------------------------------------------------------
# Prediction helpers
# ---------------------------------------------------------------------------

def reply_with_prediction(turn: Turn, query: str) -> None:
    try:
        message = prediction_client.predict(query)
    except PredictionError:
        logger.exception("Prediction failed for session %s", turn.facts.session_id)
        turn.reply.add_text(MESSAGES["prediction_unavailable"])
        return
    turn.reply.add_text(message)


def update_and_predict(turn: Turn, updates: Dict[str, str]) -> None:
    turn.facts.set_many(updates)
    query = assemble(turn.facts, list(updates.items()))
    logger.debug("Assembled query %s", query)
    reply_with_prediction(turn, query)


def predict_number_slot(turn: Turn, key: str, ask: str, followup: str) -> None:
    value = slot_value(turn.parameters, "number")
    if value is None:
        ask_with_followup(turn, MESSAGES[ask], followup)
        return
    whole = key in WHOLE_NUMBER_SLOTS
    if not is_valid_count(value, whole=whole):
        feature = get_feature(key)
        template = MESSAGES["invalid_whole_count" if whole else "invalid_count"]
        turn.reply.add_text(template.format(label=feature.display_label, value=value))
        turn.reply.set_context(followup, FOLLOWUP_LIFESPAN)
        return
    update_and_predict(turn, {key: value})

# ---------------------------------------------------------------------------
# General flow
# ---------------------------------------------------------------------------

def handle_welcome(turn: Turn) -> None:
    reply = turn.reply
    reply.add_text(MESSAGES["welcome"])
    reply.add_image(WELCOME_IMAGE)
    reply.add_text(MESSAGES["welcome_start"])
    reply.add_text(MESSAGES["welcome_list"])
    reply.add_suggestions(["list variables", "describe the problem"])
    reply.add_text(MESSAGES["welcome_personas"])
    reply.add_image(PERSONAS_IMAGE)
    reply.add_suggestions(["Jack", "Rose"])


def handle_fallback(turn: Turn) -> None:
    turn.reply.add_text(MESSAGES["fallback"])
    turn.reply.add_text(MESSAGES["fallback_help"])
    turn.reply.add_suggestion("help")


def handle_problem_setting(turn: Turn) -> None:
    turn.reply.add_card("Titanic disaster", image_url=PROBLEM_IMAGE, button_text="Read more...", button_url=PROBLEM_WIKI_URL)


def handle_explain_feature(turn: Turn) -> None:
    name = slot_value(turn.parameters, "variable")
    if name is None:
        turn.reply.add_text(MESSAGES["ask_variable"])
        turn.reply.add_suggestions(FEATURE_NAMES)
        return
    feature = get_feature(name)
    if feature is None:
        turn.reply.add_text(MESSAGES["unknown_variable"].format(name=name))
        return
    if feature.canonical_name in SPECIFY_FOLLOWUPS:
        turn.reply.set_context(f"specify_{feature.canonical_name}", FOLLOWUP_LIFESPAN)
    turn.reply.add_text(description(feature.canonical_name))


def handle_list_variables(turn: Turn) -> None:
    if turn.query_text == "More...":
        turn.reply.add_suggestions(FEATURE_NAMES[LIST_FIRST:])
        return
    turn.reply.add_text(MESSAGES["list_variables"])
    turn.reply.add_suggestions(FEATURE_NAMES[:LIST_FIRST])
    turn.reply.add_suggestion("More...")


def handle_help(turn: Turn) -> None:
    turn.reply.add_suggestions(["list all variables", "describe the problem", "what do you know about me?"])


def handle_restart(turn: Turn) -> None:
    turn.facts.reset()
    turn.reply.add_text(MESSAGES["restart"])


def handle_end_conversation(turn: Turn) -> None:
    turn.reply.add_text(MESSAGES["goodbye"])
    turn.reply.add_image(GOODBYE_IMAGE)
    turn.facts.reset()


def handle_current_knowledge(turn: Turn) -> None:
    for feature in FEATURES:
        if turn.facts.is_known(feature.storage_key):
            turn.reply.add_text(MESSAGES["known_value"].format(label=feature.display_label, value=turn.facts.get(feature.storage_key)))
        else:
            turn.reply.add_text(MESSAGES["not_defined"].format(label=feature.display_label))


def handle_current_prediction(turn: Turn) -> None:
    reply_with_prediction(turn, assemble(turn.facts))


def handle_clear_variable(turn: Turn) -> None:
    name = slot_value(turn.parameters, "variable")
    if name is None:
        turn.reply.add_text(MESSAGES["ask_variable"])
        turn.reply.add_suggestions(FEATURE_NAMES)
        return
    feature = get_feature(name)
    if feature is None:
        turn.reply.add_text(MESSAGES["unknown_variable"].format(name=name))
        return
    turn.facts.clear(feature.storage_key)
    turn.reply.add_text(MESSAGES["variable_cleared"].format(name=feature.canonical_name))
    turn.reply.add_suggestions(["passenger details", "survival chance"])

# ---------------------------------------------------------------------------
# Telling passenger details
# ---------------------------------------------------------------------------

def handle_telling_age(turn: Turn) -> None:
    value = slot_value(turn.parameters, "number")
    if value is None:
        ask_with_followup(turn, MESSAGES["ask_age"], "specify_age")
        return
    if not is_valid_count(value):
        turn.reply.add_text(MESSAGES["invalid_age"].format(value=value))
        turn.reply.set_context("specify_age", FOLLOWUP_LIFESPAN)
        return
    update_and_predict(turn, {"age": value})


def handle_fare(turn: Turn) -> None:
    predict_number_slot(turn, "fare", "ask_fare", "specify_fare")


def handle_telling_gender(turn: Turn) -> None:
    value = slot_value(turn.parameters, "gender")
    if value is None:
        turn.reply.add_text(MESSAGES["ask_gender"])
        turn.reply.add_suggestions(["male", "female"])
        return
    update_and_predict(turn, {"gender_value": value})


def _setting_count(turn: Turn, key: str) -> None:
    value = slot_value(turn.parameters, "number")
    if value is None:
        ask_with_followup(turn, MESSAGES[f"ask_{key}"], f"specify_{key}")
        return
    if is_valid_count(value, whole=True):
        turn.reply.add_text(MESSAGES[f"confirm_{key}"].format(value=value))
    predict_number_slot(turn, key, f"ask_{key}", f"specify_{key}")


def handle_setting_sibsp(turn: Turn) -> None:
    _setting_count(turn, "sibsp")


def handle_setting_parch(turn: Turn) -> None:
    _setting_count(turn, "parch")


def handle_specify_sibsp(turn: Turn) -> None:
    predict_number_slot(turn, "sibsp", "ask_sibsp", "specify_sibsp")


def handle_specify_parch(turn: Turn) -> None:
    predict_number_slot(turn, "parch", "ask_parch", "specify_parch")


def handle_travelling_alone(turn: Turn) -> None:
    turn.reply.add_text(MESSAGES["travelling_alone"])
    update_and_predict(turn, {"parch": "0", "sibsp": "0"})


def handle_setting_embarked(turn: Turn) -> None:
    value = slot_value(turn.parameters, "embarkment_place")
    if value is None:
        turn.reply.add_text(MESSAGES["ask_embarked"])
        turn.reply.add_suggestions(EMBARKMENT_PLACES)
        return
    update_and_predict(turn, {"embarked": value})


def handle_setting_class(turn: Turn) -> None:
    value = slot_value(turn.parameters, "class")
    if value is not None:
        update_and_predict(turn, {"class_value": value})
        return
    asked = turn.query_text.strip().lower()
    if asked == "passenger":
        turn.reply.add_suggestions(PASSENGER_CLASSES)
    elif asked == "crew":
        turn.reply.add_suggestions(CREW_CLASSES)
    else:
        turn.reply.add_text(MESSAGES["ask_class"])
        turn.reply.add_suggestions(["passenger", "crew"])


def handle_multi_slot_filling(turn: Turn) -> None:
    updates: Dict[str, str] = {}
    age = slot_value(turn.parameters, "number")
    if age is not None:
        if not is_valid_count(age):
            turn.reply.add_text(MESSAGES["invalid_age"].format(value=age))
            turn.reply.set_context("specify_age", FOLLOWUP_LIFESPAN)
            return
        updates["age"] = age
    for parameter, key in (("gender", "gender_value"), ("embarkment_place", "embarked"), ("class", "class_value")):
        value = slot_value(turn.parameters, parameter)
        if value is not None:
            updates[key] = value
    logger.debug("Multi slot updates %s", updates)
    if not updates:
        handle_current_prediction(turn)
        return
    update_and_predict(turn, updates)

# ---------------------------------------------------------------------------
# Known passengers
# ---------------------------------------------------------------------------

def _start_as_persona(turn: Turn, persona: str) -> None:
    data = PERSONAS[persona]
    turn.facts.set_many(data["facts"])
    turn.reply.add_card(data["title"], image_url=data["image"], text=data["text"])
    turn.reply.add_suggestions(["survival prediction", "passenger information"])


def handle_jack_dawson(turn: Turn) -> None:
    _start_as_persona(turn, "jack")


def handle_rose_dewitt(turn: Turn) -> None:
    _start_as_persona(turn, "rose")

# ---------------------------------------------------------------------------
# Explanations
# ---------------------------------------------------------------------------

def _ceteris_paribus_card(turn: Turn, variable: str) -> None:
    image_url = prediction_client.ceteris_paribus_url(assemble(turn.facts), variable)
    logger.info("Ceteris paribus plot %s", image_url)
    turn.reply.add_text(MESSAGES["plot_wait"])
    turn.reply.add_card("Ceteris Paribus plot", image_url=image_url, button_text="See larger plot", button_url=image_url)


def handle_ceteris_paribus(turn: Turn) -> None:
    _ceteris_paribus_card(turn, slot_value(turn.parameters, "variable") or "age")


def handle_how_to_survive(turn: Turn) -> None:
    _ceteris_paribus_card(turn, "class")
    turn.reply.add_text(MESSAGES["how_to_survive_class"])
    turn.reply.add_text(MESSAGES["how_to_survive_more"])


def handle_break_down(turn: Turn) -> None:
    image_url = prediction_client.break_down_url(assemble(turn.facts))
    logger.info("Break down plot %s", image_url)
    turn.reply.add_text(MESSAGES["plot_wait"])
    turn.reply.add_card(
        "Break down plot",
        image_url=image_url,
        text=MESSAGES["break_down_text"],
        button_text="See larger plot",
        button_url=image_url,
    )

# ---------------------------------------------------------------------------
# Intent router
# ---------------------------------------------------------------------------

FALLBACK_INTENT = "Default Fallback Intent"

INTENT_HANDLERS: Dict[str, Callable[[Turn], None]] = {
    "Default Welcome Intent": handle_welcome,
    FALLBACK_INTENT: handle_fallback,
    # general flow
    "problem_setting": handle_problem_setting,
    "explain_feature": handle_explain_feature,
    "list_variables": handle_list_variables,
    "end_conversation": handle_end_conversation,
    "restart": handle_restart,
    "help_needed": handle_help,
    "current_knowledge": handle_current_knowledge,
    "current_prediction": handle_current_prediction,
    # telling info
    "specify_parch": handle_specify_parch,
    "specify_sibsp": handle_specify_sibsp,
    "specify_age": handle_telling_age,
    "specify_fare": handle_fare,
    "clear_variable": handle_clear_variable,
    "multi_slot_filling": handle_multi_slot_filling,
    "telling_age": handle_telling_age,
    "telling_gender": handle_telling_gender,
    "setting_embarked": handle_setting_embarked,
    "setting_class": handle_setting_class,
    "setting_fare": handle_fare,
    "setting_sibsp": handle_setting_sibsp,
    "setting_parch": handle_setting_parch,
    "travelling_alone": handle_travelling_alone,
    # known passengers
    "jack_dawson": handle_jack_dawson,
    "rose_dewitt": handle_rose_dewitt,
    "reset_rose": handle_restart,
    "reset_jack": handle_restart,
    # explanations
    "ceteris_paribus": handle_ceteris_paribus,
    "how_to_survive": handle_how_to_survive,
    "break_down": handle_break_down,
}


def handle_turn(request: WebhookRequest) -> Dict[str, Any]:
    result = request.query_result
    intent = result.intent.display_name if result.intent else ""
    handler = INTENT_HANDLERS.get(intent)
    if handler is None:
        logger.warning("No handler for intent %r, using fallback", intent)
        handler = handle_fallback

    contexts = [ctx.dict(by_alias=True) for ctx in result.output_contexts]
    facts = fact_store.load(request.session, contexts)
    reply = WebhookReply(request.session)
    turn = Turn(facts=facts, reply=reply, parameters=result.parameters, query_text=result.query_text or "")
    logger.info("Intent %r for session %s", intent, request.session)
    handler(turn)

    context = fact_store.commit(facts)
    if context:
        reply.set_context(context["name"], context["lifespanCount"], context["parameters"])
    return reply.to_payload()

# ---------------------------------------------------------------------------
# Webhook endpoints
# ---------------------------------------------------------------------------

@app.post("/webhook")
def receive_webhook(payload: WebhookRequest):
    logger.debug("Dialogflow request %s", payload)
    return JSONResponse(handle_turn(payload))


@app.get("/healthz")
def healthcheck():
    return {"status": "ok", "prediction_server": PREDICTION_SERVER_URL, "fact_store": fact_store.backend}

# ---------------------------------------------------------------------------
# Local runner
# ---------------------------------------------------------------------------

def run():
    import uvicorn
    uvicorn.run("chatbot:app", host="0.0.0.0", port=int(os.environ.get("PORT", 8000)), reload=bool(int(os.environ.get("RELOAD", "0"))))


def lambda_handler(event, context):
    if not _lambda_adapter:
        raise RuntimeError("Mangum is not installed. Cannot handle Lambda events.")
    return _lambda_adapter(event, context)


if __name__ == "__main__":
    run()
