"""Model health checks: ping each model before scattering."""

import asyncio
import logging

from beam.cancellation import CancellationSource
from beam.generation import ChatGenerator
from beam.models import create_text_message

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


async def _check_one(generator: ChatGenerator, model_id: str, timeout: float) -> tuple[str, bool, str]:
    """Ping a single model. Returns (model_id, ok, error_message)."""
    source = CancellationSource()
    try:
        result = await asyncio.wait_for(
            generator.generate(model_id, [create_text_message("user", _PING_PROMPT)], source.token, lambda t, typing: None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        source.cancel()
        return model_id, False, f"No response within {timeout:.0f}s"
    if result.outcome == "success":
        return model_id, True, ""
    return model_id, False, result.error_message or result.outcome


async def run_health_checks(
    generator: ChatGenerator,
    model_ids: list[str],
    timeout: float = _TIMEOUT_SEC,
) -> dict[str, tuple[bool, str]]:
    """Ping all models in parallel.

    Returns:
        Dict mapping model id -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(generator, m, timeout) for m in model_ids))
    for model_id, ok, error in results:
        if not ok:
            logger.warning("Health check failed for %s: %s", model_id, error)
    return {model_id: (ok, error) for model_id, ok, error in results}
