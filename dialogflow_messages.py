# dialogflow_messages.py
"""
Dialogflow ES webhook response builder.

Provides:
- add_text
- add_card
- add_image
- add_suggestion / add_suggestions
- set_context
- to_payload

Messages are collected in order during a turn and rendered as the
``fulfillmentMessages`` of a WebhookResponse. Consecutive suggestions are
grouped into one quick-replies message.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("dialogflow_messages")


class WebhookReply:
    def __init__(self, session_id: str):
        self.session_id = session_id
        self.messages: List[Dict[str, Any]] = []
        self.contexts: List[Dict[str, Any]] = []

    @property
    def texts(self) -> List[str]:
        return [m["text"]["text"][0] for m in self.messages if "text" in m]

    @property
    def suggestions(self) -> List[str]:
        replies: List[str] = []
        for m in self.messages:
            if "quickReplies" in m:
                replies.extend(m["quickReplies"]["quickReplies"])
        return replies

    def add_text(self, body: str) -> None:
        self.messages.append({"text": {"text": [body]}})

    def add_image(self, url: str, accessibility_text: Optional[str] = None) -> None:
        image: Dict[str, Any] = {"imageUri": url}
        if accessibility_text:
            image["accessibilityText"] = accessibility_text
        self.messages.append({"image": image})

    def add_card(
        self,
        title: str,
        image_url: Optional[str] = None,
        text: Optional[str] = None,
        button_text: Optional[str] = None,
        button_url: Optional[str] = None,
    ) -> None:
        card: Dict[str, Any] = {"title": title}
        if text:
            card["subtitle"] = text
        if image_url:
            card["imageUri"] = image_url
        if button_text:
            card["buttons"] = [{"text": button_text, "postback": button_url or ""}]
        self.messages.append({"card": card})

    def add_suggestion(self, title: str) -> None:
        # quick replies only render as a group, so extend the previous one
        if self.messages and "quickReplies" in self.messages[-1]:
            self.messages[-1]["quickReplies"]["quickReplies"].append(title)
            return
        self.messages.append({"quickReplies": {"quickReplies": [title]}})

    def add_suggestions(self, titles: Iterable[str]) -> None:
        for title in titles:
            self.add_suggestion(title)

    def set_context(self, name: str, lifespan: int, parameters: Optional[Dict[str, Any]] = None) -> None:
        full_name = name if "/contexts/" in name else f"{self.session_id}/contexts/{name}"
        context: Dict[str, Any] = {"name": full_name, "lifespanCount": lifespan}
        if parameters is not None:
            context["parameters"] = parameters
        self.contexts = [c for c in self.contexts if c["name"] != full_name]
        self.contexts.append(context)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"fulfillmentMessages": self.messages}
        texts = self.texts
        if texts:
            payload["fulfillmentText"] = "\n".join(texts)
        if self.contexts:
            payload["outputContexts"] = self.contexts
        logger.debug("Webhook reply %s", payload)
        return payload
