"""
content_classifier.py
=====================
Ask an OpenAI-compatible chat-completions endpoint whether a piece of
learner content should be flagged (academic dishonesty, inappropriate
material, spam, exposed personal information).

The classifier *fails open*: a timeout, an HTTP error, a malformed reply or
a missing API key all produce a "not flagged" verdict, so moderation can
never block the upload pipeline.

Configuration
-------------
Keys read from ``config.json``::

    "classifier_api_key":         "sk-...",
    "classifier_url":             "https://api.openai.com/v1/chat/completions",
    "classifier_model":           "gpt-4-turbo-preview",
    "classifier_timeout_seconds": 8

Usage
-----
::

    from content_classifier import ContentClassifier

    classifier = ContentClassifier.from_config(config)
    verdict = classifier.analyze("Selling exam answers, DM me")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger('classsync.classifier')

_DEFAULT_URL = "https://api.openai.com/v1/chat/completions"
_DEFAULT_MODEL = "gpt-4-turbo-preview"
_DEFAULT_TIMEOUT = 8  # seconds

_SYSTEM_PROMPT = (
    "You are a content moderation system. Analyze the following content for: "
    "1. Academic dishonesty (cheating, plagiarism, selling answers) "
    "2. Inappropriate content (adult content, violence, hate speech) "
    "3. Spam or misleading information "
    "4. Personal information exposure. "
    'Respond in JSON only: {"isFlagged": boolean, "category": string, '
    '"confidence": number between 0 and 1, "explanation": string}'
)


class Verdict:
    """Result of one classification."""

    __slots__ = ('is_flagged', 'category', 'confidence', 'explanation')

    def __init__(self, is_flagged: bool = False, category: Optional[str] = None,
                 confidence: Optional[float] = None,
                 explanation: Optional[str] = None) -> None:
        self.is_flagged = bool(is_flagged)
        self.category = category
        self.confidence = confidence
        self.explanation = explanation

    def to_dict(self) -> Dict[str, Any]:
        return {
            'category': self.category,
            'confidence': self.confidence,
            'explanation': self.explanation,
        }

    def __repr__(self) -> str:
        return f"Verdict(is_flagged={self.is_flagged!r}, category={self.category!r})"


ALLOWED = Verdict(False)


class ContentClassifier:
    """Minimal chat-completions client returning a :class:`Verdict`.

    Args:
        api_key: Bearer token; an empty key disables classification.
        url:     Chat-completions endpoint.
        model:   Model name sent with each request.
        timeout: HTTP request timeout in seconds.
    """

    def __init__(self, api_key: str = '', url: str = _DEFAULT_URL,
                 model: str = _DEFAULT_MODEL,
                 timeout: int = _DEFAULT_TIMEOUT) -> None:
        self._api_key = (api_key or '').strip()
        self._url = url or _DEFAULT_URL
        self._model = model or _DEFAULT_MODEL
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ContentClassifier':
        cfg = config or {}
        key = cfg.get('classifier_api_key', '')
        if not isinstance(key, str) or key.startswith('YOUR_'):
            key = ''
        return cls(
            api_key=key,
            url=cfg.get('classifier_url', _DEFAULT_URL),
            model=cfg.get('classifier_model', _DEFAULT_MODEL),
            timeout=cfg.get('classifier_timeout_seconds', _DEFAULT_TIMEOUT),
        )

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def analyze(self, content: str) -> Verdict:
        """Classify *content*; any failure yields an unflagged verdict."""
        if not self.enabled or not (content or '').strip():
            return ALLOWED
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            resp = requests.post(self._url, json=payload, headers=headers,
                                 timeout=self._timeout)
            resp.raise_for_status()
            body = resp.json()
            raw = body["choices"][0]["message"]["content"] or "{}"
            result = json.loads(raw)
        except requests.RequestException as exc:
            logger.warning("Content classifier request failed: %s", exc)
            return ALLOWED
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Content classifier returned an unreadable reply: %s", exc)
            return ALLOWED

        if not isinstance(result, dict):
            return ALLOWED
        confidence = result.get('confidence')
        try:
            confidence = float(confidence) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None
        return Verdict(
            is_flagged=bool(result.get('isFlagged', False)),
            category=result.get('category'),
            confidence=confidence,
            explanation=result.get('explanation'),
        )
