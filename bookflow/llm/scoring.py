from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

from pydantic import ValidationError

from bookflow.config.load_config import ScoringConfig
from bookflow.flow.errors import ScoringError
from bookflow.models import Book, ScoreEntry
from bookflow.utils.json_extract import JSONExtractionError, extract_json_list
from bookflow.utils.template import render_template

from .openai_compat import LLMConfigError, OpenAICompatibleChatClient


logger = logging.getLogger(__name__)


class ChatClient(Protocol):
    def chat(self, *, system: str, user: str, temperature: float, json_mode: bool = False) -> Any: ...


def _book_prompt_item(book: Book) -> dict[str, Any]:
    return {
        "id": book.book_id,
        "title": book.title,
        "description": book.description or "",
        "currentPrice": book.current_price,
        "originalPrice": book.original_price,
        "url": book.url,
    }


def parse_score_entries(content: str) -> list[ScoreEntry]:
    try:
        raw_entries = extract_json_list(content, "books")
    except JSONExtractionError as e:
        raise ScoringError(f"Unparseable scorer response: {e}") from e

    entries: list[ScoreEntry] = []
    for i, raw in enumerate(raw_entries):
        if not isinstance(raw, dict):
            raise ScoringError(f"Scorer entry #{i} is not an object")
        if raw.get("id") is not None:
            raw = {**raw, "id": str(raw["id"])}
        try:
            entries.append(ScoreEntry.model_validate(raw))
        except ValidationError as e:
            raise ScoringError(f"Invalid scorer entry #{i}: {e}") from e
    return entries


class BookScorer:
    """Batch scorer: one chat completion for a whole list of books.

    Blocking; callers on an event loop should run `score` in a thread.
    """

    def __init__(self, cfg: ScoringConfig, *, llm: ChatClient | None = None) -> None:
        self._cfg = cfg
        self._llm = llm

    def _client(self) -> ChatClient:
        if self._llm is None:
            try:
                self._llm = OpenAICompatibleChatClient()
            except LLMConfigError as e:
                raise ScoringError(str(e)) from e
        return self._llm

    def score(self, books: Sequence[Book], *, topic: str = "") -> list[ScoreEntry]:
        if not books:
            return []
        user = render_template(
            self._cfg.user_prompt_template,
            {"topic": topic, "books": [_book_prompt_item(b) for b in books]},
        )
        logger.info("scoring_request books=%d topic=%r", len(books), topic)
        try:
            result = self._client().chat(
                system=self._cfg.system_prompt.strip(),
                user=user.strip(),
                temperature=self._cfg.temperature,
                json_mode=True,
            )
        except ScoringError:
            raise
        except Exception as e:
            raise ScoringError(f"Scorer call failed: {type(e).__name__}: {e}") from e

        entries = parse_score_entries(result.content)
        logger.info("scoring_response entries=%d", len(entries))
        return entries
