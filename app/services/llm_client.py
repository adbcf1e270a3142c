"""
Client for the OpenAI-compatible chat-completions gateway.

Three calls are made:
- build_memory: one-off analysis of an imported chat (forced tool call)
- generate_reply: the partner's next message, kept to one short bubble
- suggest_replies: quick replies for the user; never raises
"""
import json
import logging
import os
import re
from datetime import datetime, timezone as dt_timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

logger = logging.getLogger(__name__)

LLM_API_URL = os.getenv("LLM_API_URL", "https://ai.gateway.lovable.dev/v1/chat/completions")
LLM_API_KEY = os.getenv("LLM_API_KEY", "").strip()
LLM_MODEL = os.getenv("LLM_MODEL", "google/gemini-3-flash-preview")
LLM_TIMEOUT = 30.0
REPLY_MAX_TOKENS = 60


class LLMError(Exception):
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


TIME_OF_DAY = {
    "morning": ("good morning", "fresh, gentle, waking-up energy"),
    "afternoon": ("good afternoon", "casual, active, mid-day energy"),
    "evening": ("good evening", "relaxed, winding down, warm"),
    "night": ("goodnight", "sleepy, soft, intimate, late-night vibes"),
}

# First match wins
EMOTION_PATTERNS = [
    (re.compile(r"😢|😭|😞|😔|💔|😿|🥺"), "sad, needs comfort"),
    (re.compile(r"😡|😤|🤬|💢"), "angry, frustrated"),
    (re.compile(r"😂|🤣|😆|😹|haha|lol|lmao"), "playful, laughing"),
    (re.compile(r"❤|💕|💗|💖|🥰|😍|😘|love|miss you|jaanu|jaan"), "loving, romantic"),
    (re.compile(r"😊|🥳|🎉|yay|happy"), "happy, excited"),
    (re.compile(r"😰|😥|😟|worried|scared"), "anxious, worried"),
    (re.compile(r"🙄|😒|bore|ugh"), "bored, annoyed"),
    (re.compile(r"\?{2,}|wtf|what|why|how"), "curious, questioning"),
    (re.compile(r"!{2,}|omg|wow"), "excited, surprised"),
]


def time_of_day_context(now: datetime, timezone: Optional[str] = None) -> Dict[str, str]:
    """
    Bucket the user's local hour into morning/afternoon/evening/night.

    `now` is naive UTC. Unknown timezones fall back to UTC.
    """
    local = now.replace(tzinfo=dt_timezone.utc)
    if timezone:
        try:
            local = local.astimezone(ZoneInfo(timezone))
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("[LLM] unknown timezone %r, using UTC", timezone)

    hour = local.hour
    if 5 <= hour < 12:
        period = "morning"
    elif 12 <= hour < 17:
        period = "afternoon"
    elif 17 <= hour < 21:
        period = "evening"
    else:
        period = "night"

    greeting, mood = TIME_OF_DAY[period]
    return {"time_of_day": period, "greeting": greeting, "mood": mood}


def detect_emotion(message: str) -> str:
    lower = (message or "").lower()
    for pattern, emotion in EMOTION_PATTERNS:
        if pattern.search(lower):
            return emotion
    return "neutral"


async def _complete(payload: dict) -> dict:
    if not LLM_API_KEY:
        raise LLMError("LLM_API_KEY not configured", status_code=503)

    body = {"model": LLM_MODEL, **payload}
    try:
        async with httpx.AsyncClient(timeout=LLM_TIMEOUT) as client:
            r = await client.post(
                LLM_API_URL,
                json=body,
                headers={"Authorization": f"Bearer {LLM_API_KEY}"},
            )
    except httpx.TimeoutException as e:
        logger.error("[LLM] Timeout: %s", e)
        raise LLMError("AI gateway timeout", status_code=504) from e
    except httpx.RequestError as e:
        logger.error("[LLM] Request error: %s", e)
        raise LLMError("AI gateway unreachable") from e

    if r.status_code != 200:
        logger.error("[LLM] Gateway error [%s]: %s", r.status_code, r.text[:500] if r.text else "NO_BODY")
        if r.status_code == 429:
            raise LLMError("Rate limited, try again shortly", status_code=429)
        if r.status_code == 402:
            raise LLMError("AI credits exhausted", status_code=402)
        raise LLMError("AI gateway error")

    return r.json()


def _tool_arguments(data: dict) -> Optional[dict]:
    """Arguments of the first tool call, or None if the model didn't make one."""
    try:
        call = data["choices"][0]["message"]["tool_calls"][0]
        return json.loads(call["function"]["arguments"])
    except (KeyError, IndexError, TypeError, json.JSONDecodeError):
        return None


def _forced_tool(name: str, description: str, properties: dict) -> dict:
    return {
        "tools": [{
            "type": "function",
            "function": {
                "name": name,
                "description": description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": list(properties),
                    "additionalProperties": False,
                },
            },
        }],
        "tool_choice": {"type": "function", "function": {"name": name}},
    }


async def build_memory(
    sample: str,
    my_texts: str,
    partner_texts: str,
    me_name: str,
    other_name: str,
) -> Dict[str, str]:
    """Summarize the relationship and both writing styles from an imported chat."""
    system = (
        "Analyze this WhatsApp chat and produce THREE sections as JSON:\n\n"
        '1. "summary": Key relationship dynamics, recurring topics, inside jokes, '
        "important dates, how they talk to each other. Max 500 words.\n\n"
        f'2. "partnerStyle": Detailed analysis of how "{other_name}" writes messages. '
        "Include: typical message length, emoji/emoticon usage, pet names they use, "
        "how they express love/anger/humor, common phrases, greeting style, texting "
        "quirks, language mixing patterns. Max 400 words.\n\n"
        f'3. "styleProfile": How "{me_name}" writes. Same analysis. Max 200 words.\n\n'
        "Return valid JSON with keys: summary, partnerStyle, styleProfile"
    )
    user = (
        f"Full chat:\n{sample}\n\n"
        f"{other_name}'s messages:\n{partner_texts}\n\n"
        f"{me_name}'s messages:\n{my_texts}"
    )
    data = await _complete({
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        **_forced_tool(
            "return_analysis",
            "Return the chat analysis",
            {
                "summary": {"type": "string"},
                "partnerStyle": {"type": "string"},
                "styleProfile": {"type": "string"},
            },
        ),
    })

    args = _tool_arguments(data) or {}
    logger.info("[LLM] memory built for %s/%s (tool call: %s)", me_name, other_name, bool(args))
    return {
        "summary": args.get("summary") or "",
        "partner_style": args.get("partnerStyle") or "",
        "style_profile": args.get("styleProfile") or "",
    }


def build_reply_prompt(
    memory_summary: str,
    partner_style: str,
    me_name: str,
    other_name: str,
    time_ctx: Dict[str, str],
    emotion: str,
) -> str:
    return f"""You ARE {other_name}. You are texting {me_name} on WhatsApp right now.

CURRENT TIME CONTEXT:
- It's {time_ctx['time_of_day']} right now
- The mood/energy should be: {time_ctx['mood']}
- If greeting, use "{time_ctx['greeting']}" style naturally (in their language/style)

DETECTED EMOTION FROM {me_name}'s MESSAGE: {emotion}
- Match your emotional response accordingly. If they're sad, be comforting. If playful, be fun. If loving, be warm.

RELATIONSHIP CONTEXT:
{memory_summary}

{other_name}'s EXACT TEXTING STYLE (mimic this perfectly):
{partner_style}

RULES:
- Send EXACTLY ONE short message, like ONE single WhatsApp bubble.
- Keep it 3-12 words. One line.
- Match {other_name}'s exact emoji style, pet names and language mixing.
- NEVER send multiple sentences or use newlines to send multiple messages.
- Max 1 question per reply.
- No markdown. Plain text only.
- Be natural, warm, in-character.
- Time-appropriate: don't say "good morning" at night."""


async def generate_reply(
    message: str,
    chat_history: List[Dict[str, str]],
    recent_context: str,
    memory_summary: str,
    partner_style: str,
    me_name: str,
    other_name: str,
    timezone: Optional[str],
    now: datetime,
) -> str:
    time_ctx = time_of_day_context(now, timezone)
    emotion = detect_emotion(message)

    messages = [{
        "role": "system",
        "content": build_reply_prompt(memory_summary, partner_style, me_name, other_name, time_ctx, emotion),
    }]
    if recent_context:
        messages.append({"role": "system", "content": f"Recent real conversation for context:\n{recent_context}"})
    for item in chat_history or []:
        role = "user" if item.get("role") == "user" else "assistant"
        messages.append({"role": role, "content": item.get("content", "")})
    messages.append({"role": "user", "content": message})

    data = await _complete({"messages": messages, "max_tokens": REPLY_MAX_TOKENS})
    try:
        reply = data["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError) as e:
        raise LLMError("Malformed AI gateway response") from e

    logger.info("[LLM] reply generated (time=%s, emotion=%s)", time_ctx["time_of_day"], emotion)
    return reply.strip()


async def suggest_replies(
    last_message: str,
    memory_summary: str,
    partner_style: str,
    me_name: str,
    other_name: str,
) -> List[str]:
    """Up to three quick replies for the user. Any failure yields []."""
    system = (
        f"You help {me_name} reply to {other_name}. Based on their texting style and "
        f"relationship, suggest 3 short quick replies that {me_name} would naturally send. "
        f"Each reply should be 3-10 words, casual, matching {me_name}'s style.\n\n"
        f"Context: {memory_summary}\n"
        f"{me_name}'s style: {partner_style}"
    )
    user = f'{other_name} just said: "{last_message}"\n\nGive 3 quick reply options for {me_name}.'

    try:
        data = await _complete({
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            **_forced_tool(
                "return_suggestions",
                "Return reply suggestions",
                {"replies": {"type": "array", "items": {"type": "string"}}},
            ),
        })
    except LLMError as e:
        logger.warning("[LLM] suggestions unavailable: %s", e)
        return []

    replies = (_tool_arguments(data) or {}).get("replies") or []
    return [str(r) for r in replies if r][:3]
