"""
Intent classification for chat turns.

A classifier turns the shopper's message (plus a short transcript of the
conversation so far) into one of the supported intents and the entities
mentioned in it. ``LLMIntentClassifier`` asks Claude; ``KeywordIntentClassifier``
uses fixed rules and needs no network, which makes it the default without an
API key and the one used in tests.
"""
import json
import logging
import re
from abc import ABC, abstractmethod

from chatcommerce.models.catalog import CATEGORIES, CATEGORY_SYNONYMS
from chatcommerce.models.schemas import INTENTS, ChatEntities, IntentResult
from chatcommerce.services.llm import LLMClient

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.0
DEFAULT_CONFIDENCE = 0.5
MAX_QUANTITY = 10

CLASSIFIER_SYSTEM_PROMPT = (
    "You classify messages sent to the shopping assistant of an online shoe store. "
    "Reply with a single JSON object and nothing else."
)

CLASSIFIER_PROMPT = """Decide what the shopper wants and pull out the details they mention.

Intents:
- "browse_products": look at or search for shoes ("show me running shoes", "any boots?")
- "add_to_cart": put a specific shoe in the cart ("add red sneakers size 9", "I'll take the Nike Air Max")
- "remove_from_cart": take something out of the cart ("remove the boots", "delete the size 8 sneakers")
- "view_cart": see the cart ("show my cart", "what's in my cart")
- "checkout": place the order ("checkout", "I'm ready to buy")
- "general_inquiry": questions about shipping, returns, sizing, store policies
- "greeting": hello / starting the conversation
- "unknown": none of the above

Entities (use null when not mentioned):
- productName: any shoe name, brand or model, even partial ("Arizona", "Air Max", "Converse")
- category: sneakers, boots, sandals, formal, sports, casual or running
- size: the shoe size as written in the catalog ("9", "10.5")
- color: the color ("black", "red")
- quantity: how many pairs, as a number

Conversation so far:
{context}

Shopper's message: "{message}"

Answer with:
{{"intent": "<intent>", "entities": {{"productName": null, "category": null, "size": null, "color": null, "quantity": null}}, "confidence": <0 to 1>}}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_EMPTY_VALUES = {"", "null", "none", "undefined", "n/a"}


def fallback_result() -> IntentResult:
    return IntentResult(intent="unknown", entities=ChatEntities(), confidence=FALLBACK_CONFIDENCE)


def build_context(messages: list[dict]) -> str:
    """Flatten past turns (oldest first) into a transcript for the classifier."""
    return "\n\n".join(
        f"User: {msg['message']}\nAssistant: {msg['response']}" for msg in messages
    )


def _clean_text(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return None if text.lower() in _EMPTY_VALUES else text


def _clean_size(value) -> str | None:
    text = _clean_text(value)
    if text is None:
        return None
    text = re.sub(r"^(?:us\s*)?size\s*", "", text, flags=re.IGNORECASE).strip()
    return text or None


def _clean_quantity(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        quantity = int(float(value))
    except (TypeError, ValueError):
        return None
    return quantity if 1 <= quantity <= MAX_QUANTITY else None


def sanitize_entities(raw) -> ChatEntities:
    """Coerce whatever the model produced into the fixed entity schema."""
    if not isinstance(raw, dict):
        return ChatEntities()
    return ChatEntities(
        product_name=_clean_text(raw.get("productName", raw.get("product_name"))),
        category=_clean_text(raw.get("category")),
        size=_clean_size(raw.get("size")),
        color=_clean_text(raw.get("color")),
        quantity=_clean_quantity(raw.get("quantity")),
    )


def parse_intent_payload(text: str) -> IntentResult:
    """Turn the model's JSON answer into an IntentResult.

    Raises ValueError when there is no JSON object to read. Fields that are
    missing fall back to: intent -> unknown, entities -> {}, confidence -> 0.5.
    """
    cleaned = _FENCE_RE.sub("", text.strip())
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object in classifier response")
    data = json.loads(cleaned[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("Classifier response is not a JSON object")

    intent = data.get("intent") or "unknown"
    if intent not in INTENTS:
        logger.info("Classifier returned unsupported intent %r", intent)
        intent = "unknown"

    confidence = data.get("confidence")
    try:
        confidence = DEFAULT_CONFIDENCE if confidence is None else float(confidence)
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE
    confidence = min(max(confidence, 0.0), 1.0)

    return IntentResult(
        intent=intent,
        entities=sanitize_entities(data.get("entities") or {}),
        confidence=confidence,
    )


class IntentClassifier(ABC):
    @abstractmethod
    async def classify(self, message: str, context: str = "") -> IntentResult:
        """Classify one message. Implementations never raise."""


class LLMIntentClassifier(IntentClassifier):
    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def classify(self, message: str, context: str = "") -> IntentResult:
        try:
            answer = await self.llm.complete(
                system=CLASSIFIER_SYSTEM_PROMPT,
                prompt=CLASSIFIER_PROMPT.format(context=context or "(none)", message=message),
                temperature=0.1,
                max_tokens=300,
            )
            if not answer.strip():
                raise ValueError("Empty classifier response")
            return parse_intent_payload(answer)
        except Exception as e:
            logger.warning("Intent classification failed, falling back to unknown: %s", e)
            return fallback_result()


# --- Rule-based classifier ---

COLORS = (
    "black", "white", "red", "blue", "navy", "green", "brown", "tan", "beige",
    "grey", "gray", "pink", "yellow", "orange", "purple", "silver", "gold",
)
NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}
CATEGORY_WORDS = {
    **{category: category for category in CATEGORIES},
    **{f"{category[:-1]}": category for category in ("sneakers", "boots", "sandals")},
    **{word: word for word in CATEGORY_SYNONYMS},
}

_INTENT_RULES: tuple[tuple[str, re.Pattern], ...] = (
    ("remove_from_cart", re.compile(r"\b(remove|delete|take out|take off|drop)\b")),
    ("checkout", re.compile(r"\b(check ?out|place (my |the |an )?order|ready to (buy|order|pay)|buy now)\b")),
    ("view_cart", re.compile(r"\b(show|view|see|what'?s in|what is in|open)\b.*\b(cart|basket|bag)\b|^(my )?(cart|basket)\??$")),
    ("add_to_cart", re.compile(r"\b(add|put|i'?ll take|i will take|i'?d like to buy|buy)\b")),
    ("browse_products", re.compile(r"\b(show|find|search|browse|looking for|look for|need|have any|got any|do you have|recommend|see)\b")),
    ("general_inquiry", re.compile(r"\b(shipping|deliver|delivery|return|refund|exchange|policy|warranty|how long|size guide|sizing|payment options?)\b|\?$")),
    ("greeting", re.compile(r"^(hi|hello|hey|hiya|howdy|good (morning|afternoon|evening))\b")),
)

_FILLER_RE = re.compile(
    r"\b(add|put|remove|delete|take out|take off|drop|show|find|search|browse|looking for|look for|"
    r"i'?ll take|i will take|i'?d like to buy|i'?d like|i want|i need|need|buy|please|can you|could you|"
    r"me|my|the|a|an|some|in|of|to|from|into|cart|basket|pairs?|shoes?|size|color|colour|any|do you have|"
    r"have|got|for|and|with|it|them|ones?|those|these|that|this|items?)\b"
)


class KeywordIntentClassifier(IntentClassifier):
    """Deterministic rules covering the same intents and entity slots."""

    async def classify(self, message: str, context: str = "") -> IntentResult:
        text = message.strip().lower()
        for intent, pattern in _INTENT_RULES:
            if pattern.search(text):
                return IntentResult(intent=intent, entities=self.extract_entities(text), confidence=0.7)
        return IntentResult(intent="unknown", entities=self.extract_entities(text), confidence=0.3)

    def extract_entities(self, text: str) -> ChatEntities:
        remainder = text

        size = None
        match = re.search(r"\bsize\s*(\d{1,2}(?:\.5)?)\b", remainder)
        if match:
            size = match.group(1)
            remainder = remainder.replace(match.group(0), " ")

        quantity = None
        number = r"\b(\d{1,2}|" + "|".join(NUMBER_WORDS) + r")"
        match = re.search(number + r"\s+(?:pairs?\b|x\b)", remainder) or re.search(
            r"\b(?:add|buy|take|want)\s+" + number + r"\b", remainder
        )
        if match:
            word = match.group(1)
            quantity = _clean_quantity(NUMBER_WORDS.get(word, word))
            remainder = remainder[:match.start(1)] + " " + remainder[match.end(1):]

        color = next((c for c in COLORS if re.search(rf"\b{c}\b", remainder)), None)
        if color:
            remainder = re.sub(rf"\b{color}\b", " ", remainder)

        category = None
        for word, mapped in CATEGORY_WORDS.items():
            if re.search(rf"\b{word}\b", remainder):
                category = mapped
                remainder = re.sub(rf"\b{word}\b", " ", remainder)
                break

        remainder = _FILLER_RE.sub(" ", remainder)
        product_name = " ".join(re.sub(r"[^\w.'-]+", " ", remainder).split()) or None

        return ChatEntities(
            product_name=product_name,
            category=category,
            size=size,
            color=color,
            quantity=quantity,
        )
