"""
Coach Memory LLM Client Interface
=================================

Narrow completion interface so insight logic is testable without network.
Any failure (timeout, blocked response, empty text) is LLMUnavailable;
callers fall back to rule-based output.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import List, Optional, Protocol
import logging
import time

import google.generativeai as genai

from coach_memory.errors import LLMUnavailable

logger = logging.getLogger(__name__)


class LLMClient(Protocol):
    """
    Protocol for completion clients.
    complete() returns text or raises LLMUnavailable.
    """

    def complete(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: int = 50,
        temperature: float = 0.8
    ) -> str:
        ...


class GeminiClient:
    """Gemini completion client."""

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash"):
        self.model_name = model
        genai.configure(api_key=api_key)

    def complete(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: int = 50,
        temperature: float = 0.8
    ) -> str:
        model = genai.GenerativeModel(
            model_name=self.model_name,
            system_instruction=system_prompt
        )
        config = genai.GenerationConfig(
            max_output_tokens=max_tokens,
            temperature=temperature
        )

        try:
            response = model.generate_content(user_message, generation_config=config)
        except Exception as e:
            raise LLMUnavailable(f"Gemini request failed: {e}") from e

        # Blocked responses come back without parts
        if not response.candidates or not response.candidates[0].content.parts:
            finish_reason = response.candidates[0].finish_reason if response.candidates else "UNKNOWN"
            raise LLMUnavailable(f"Gemini returned no content (finish_reason: {finish_reason})")

        text = (response.text or "").strip()
        if not text:
            raise LLMUnavailable("Gemini returned empty text")
        return text


class MockLLMClient:
    """Scripted client for tests."""

    def __init__(self, responses: Optional[List[str]] = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.model_name = "mock"
        self.responses = list(responses or ["Mock insight: keep showing up."])
        self.error = error
        self.delay = delay
        self.calls = []

    def complete(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: int = 50,
        temperature: float = 0.8
    ) -> str:
        self.calls.append({
            "system_prompt": system_prompt,
            "user_message": user_message,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def complete_with_timeout(
    client: LLMClient,
    system_prompt: str,
    user_message: str,
    max_tokens: int = 50,
    temperature: float = 0.8,
    timeout: float = 8.0
) -> str:
    """
    Run client.complete() with a hard deadline.
    The worker thread is abandoned on timeout; the caller never waits past it.
    """
    pool = ThreadPoolExecutor(max_workers=1)
    future = pool.submit(client.complete, system_prompt, user_message, max_tokens, temperature)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeout:
        logger.warning(f"LLM completion timed out after {timeout}s")
        raise LLMUnavailable(f"completion timed out after {timeout}s")
    except LLMUnavailable:
        raise
    except Exception as e:
        raise LLMUnavailable(f"completion failed: {e}") from e
    finally:
        pool.shutdown(wait=False)
