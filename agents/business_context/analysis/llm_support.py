"""
Helpers for calling the language model from heuristic components.

Every call is bounded by a timeout and any failure collapses into an
``(text, ok)`` pair, so callers fall back to heuristics without handling
exceptions themselves. Cancellation of the calling task is never absorbed.
"""

import asyncio
import json
import logging
from typing import Any, Optional, Tuple

from shared.base.services import LanguageModelService
from shared.utils.metrics import get_metrics_collector


async def complete_with_timeout(
    language_model: Optional[LanguageModelService],
    prompt: str,
    timeout: float,
    operation: str,
    logger: logging.LoggerAdapter,
) -> Tuple[str, bool]:
    """Run one completion; returns ``("", False)`` on any failure."""
    if language_model is None:
        return "", False

    failures = get_metrics_collector().counter(f"llm_{operation}_failures")
    try:
        text = await asyncio.wait_for(language_model.complete(prompt, timeout), timeout=timeout)
    except asyncio.TimeoutError:
        failures.increment()
        logger.warning(f"Language model timed out after {timeout}s", extra={"operation": operation})
        return "", False
    except Exception as e:
        failures.increment()
        logger.warning(f"Language model call failed: {e}", extra={"operation": operation})
        return "", False

    if not isinstance(text, str) or not text.strip():
        failures.increment()
        logger.warning("Language model returned an empty response", extra={"operation": operation})
        return "", False
    return text, True


def extract_json(text: str, opener: str = "[") -> Tuple[Any, bool]:
    """
    Parse the first JSON array (``opener='['``) or object (``'{'``) in ``text``.

    Model output is often wrapped in prose or code fences; everything
    outside the outermost brackets is ignored.
    """
    closer = "]" if opener == "[" else "}"
    start = text.find(opener)
    end = text.rfind(closer)
    if start < 0 or end <= start:
        return None, False
    try:
        return json.loads(text[start:end + 1]), True
    except (json.JSONDecodeError, ValueError):
        return None, False
