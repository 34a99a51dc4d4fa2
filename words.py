from __future__ import annotations

import logging
import os
import random
import re
from dataclasses import dataclass
from typing import List, Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WordPair:
    word_a: str
    word_b: str


# word_a goes to the civilians, word_b to the undercover players.
KEYWORD_PAIRS: List[WordPair] = [
    WordPair("Champion", "Winner"),
    WordPair("Granite", "Marble"),
    WordPair("Bread", "Cake"),
    WordPair("Eyebrows", "Beard"),
    WordPair("Doctor", "Nurse"),
    WordPair("Phone", "Tablet"),
    WordPair("Coke", "Sprite"),
    WordPair("Swimming", "Surfing"),
    WordPair("Forest", "Woods"),
    WordPair("Moon", "Star"),
    WordPair("Umbrella", "Raincoat"),
    WordPair("Train", "Bullet train"),
    WordPair("Rose", "Tulip"),
    WordPair("Butterfly", "Dragonfly"),
    WordPair("Washbasin", "Bucket"),
    WordPair("Thanksgiving", "Christmas"),
    WordPair("Library", "Study hall"),
    WordPair("Cinema", "Theater"),
    WordPair("Hot pot", "Barbecue"),
    WordPair("Hamburger", "Sandwich"),
]

WORD_PAIR_PROMPT = (
    "You write word pairs for the party game Undercover. Reply with exactly two "
    "words or short phrases that are related but clearly different, with a strong "
    "contrast, a joke, or a topical twist that works for friends at a dinner party "
    "(for example: Ex, Current partner). Return only the two words separated by a "
    "comma, with no greeting or explanation."
)

# Comma variants a model may answer with, including the CJK ones.
_SEPARATORS = re.compile(r"[,，、\n]")


def random_pair(rng: Optional[random.Random] = None) -> WordPair:
    return (rng or random).choice(KEYWORD_PAIRS)


def parse_pair(text: str) -> Optional[WordPair]:
    words = [w.strip().strip("\"'.") for w in _SEPARATORS.split(text or "")]
    words = [w for w in words if w]
    if len(words) < 2:
        return None
    return WordPair(words[0], words[1])


class StaticWordPairProvider:
    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng

    async def get_pair(self, theme_hint: Optional[str] = None) -> WordPair:
        return random_pair(self.rng)


class LLMWordPairProvider:
    """Asks an OpenAI-compatible chat endpoint for a fresh pair.

    Any failure (network error, timeout, empty or malformed reply) falls back
    to the static table, so ``get_pair`` never raises.
    """

    DEFAULT_BASE_URL = "https://api.deepseek.com"
    DEFAULT_MODEL = "deepseek-chat"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 8.0,
        client: Optional[AsyncOpenAI] = None,
        fallback: Optional[StaticWordPairProvider] = None,
    ) -> None:
        self.model = model or os.getenv("DEEPSEEK_MODEL", self.DEFAULT_MODEL)
        self.fallback = fallback or StaticWordPairProvider()
        if client is None:
            api_key = api_key or os.getenv("DEEPSEEK_API_KEY")
            if not api_key:
                raise ValueError(
                    "LLM API key required. Set DEEPSEEK_API_KEY environment variable "
                    "or pass api_key parameter."
                )
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url or os.getenv("DEEPSEEK_BASE_URL", self.DEFAULT_BASE_URL),
                timeout=timeout,
                max_retries=0,
            )
        self.client = client

    async def get_pair(self, theme_hint: Optional[str] = None) -> WordPair:
        messages = [{"role": "system", "content": WORD_PAIR_PROMPT}]
        if theme_hint:
            messages.append({"role": "user", "content": f"Theme: {theme_hint}"})
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=1.0,
                max_tokens=20,
            )
            content = response.choices[0].message.content or ""
        except Exception as e:
            logger.warning("word pair generation failed, using static table: %s", e)
            return await self.fallback.get_pair(theme_hint)

        pair = parse_pair(content)
        if pair is None:
            logger.warning("word pair reply unusable (%r), using static table", content)
            return await self.fallback.get_pair(theme_hint)
        return pair
