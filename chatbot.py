"""
Shopping assistant proxy to a generative-language API, capped per user per
day. The cap lives in the database so every API instance sees the same
count.
"""
import logging
from datetime import date
from typing import Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from errors import GatewayError, RateLimitError
from models import QueryCounter

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I couldn't generate a response."


class DailyQueryCounter:
    """Atomic increment-and-check keyed by (user, day)."""

    def __init__(self, db: Session, limit: int):
        self.db = db
        self.limit = limit

    def _bump(self, user_id: int, day: date) -> bool:
        result = self.db.execute(
            update(QueryCounter)
            .where(
                QueryCounter.user_id == user_id,
                QueryCounter.day == day,
                QueryCounter.count < self.limit,
            )
            .values(count=QueryCounter.count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def hit(self, user_id: int, today: Optional[date] = None) -> int:
        """Count one query; raise RateLimitError once the daily cap is used up."""
        day = today or date.today()
        if self.limit <= 0:
            raise RateLimitError("Daily chatbot limit reached", limit=self.limit)

        if not self._bump(user_id, day):
            exists = self.db.scalar(
                select(QueryCounter.count).where(QueryCounter.user_id == user_id, QueryCounter.day == day)
            )
            if exists is not None:
                self.db.rollback()
                raise RateLimitError("Daily chatbot limit reached", limit=self.limit)
            try:
                self.db.add(QueryCounter(user_id=user_id, day=day, count=1))
                self.db.flush()
            except IntegrityError:
                # another request created today's row first
                self.db.rollback()
                if not self._bump(user_id, day):
                    self.db.rollback()
                    raise RateLimitError("Daily chatbot limit reached", limit=self.limit)
        self.db.commit()
        return self.used(user_id, day)

    def used(self, user_id: int, today: Optional[date] = None) -> int:
        day = today or date.today()
        count = self.db.scalar(
            select(QueryCounter.count).where(QueryCounter.user_id == user_id, QueryCounter.day == day)
        )
        return count or 0


class ChatbotClient:
    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        model: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.client = client

    @classmethod
    def from_settings(cls) -> "ChatbotClient":
        return cls(settings.chatbot_api_url, settings.chatbot_api_key, settings.chatbot_model)

    def _post(self, url: str, **kwargs) -> httpx.Response:
        if self.client is not None:
            return self.client.post(url, timeout=self.timeout, **kwargs)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(url, **kwargs)

    def generate(self, message: str) -> str:
        if not self.api_key:
            raise GatewayError("Chatbot is not configured", retryable=False)
        try:
            response = self._post(
                f"{self.api_url}/{self.model}:generateContent",
                params={"key": self.api_key},
                json={
                    "contents": [{"parts": [{"text": message}]}],
                    "generationConfig": {"maxOutputTokens": 500, "temperature": 0.7},
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("Chatbot upstream unreachable: %s", exc)
            raise GatewayError("No response from chatbot service", retryable=True) from exc

        if response.status_code >= 400:
            logger.warning("Chatbot upstream returned HTTP %s", response.status_code)
            raise GatewayError(
                "Chatbot service error",
                retryable=response.status_code >= 500,
                upstream_status=response.status_code,
            )
        try:
            data = response.json()
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError):
            return FALLBACK_REPLY
