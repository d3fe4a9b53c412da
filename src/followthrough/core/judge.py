"""Reply evaluation and follow-up drafting.

``LLMReplyJudge`` asks an Anthropic-compatible messages endpoint whether a
reply satisfies the task and drafts follow-ups.  Every call carries an
explicit timeout; on any failure the deterministic ``FallbackReplyJudge``
answers instead, so the reply-wait workflow never stalls on the model.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any, Dict, Optional, Protocol

import httpx

from followthrough.core.config import Settings

logger = logging.getLogger("followthrough.judge")

_ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class Evaluation:
    satisfies: bool
    reason: str = ""
    extracted_info: Dict[str, Any] = field(default_factory=dict)


class ReplyJudge(Protocol):
    def evaluate(
        self,
        reply_body: str,
        original_request: str,
        success_criteria: str,
        contact: str,
    ) -> Evaluation: ...

    def generate_followup(
        self,
        original_request: str,
        contact: str,
        followup_number: int,
        is_timeout: bool,
        last_reply: Optional[str] = None,
    ) -> str: ...


class FallbackReplyJudge:
    """Deterministic judge used when no model is configured or reachable.

    Without a model it cannot tell whether free text meets the criteria, so
    every reply is treated as unsatisfying and the follow-up ladder (and,
    eventually, escalation to the user) decides what happens next.
    """

    def evaluate(
        self,
        reply_body: str,
        original_request: str,
        success_criteria: str,
        contact: str,
    ) -> Evaluation:
        return Evaluation(
            satisfies=False,
            reason="Reply could not be evaluated automatically",
            extracted_info={"reply": reply_body},
        )

    def generate_followup(
        self,
        original_request: str,
        contact: str,
        followup_number: int,
        is_timeout: bool,
        last_reply: Optional[str] = None,
    ) -> str:
        return f"Hi, I wanted to follow up on my previous message. {original_request}..."


_EVALUATE_PROMPT = """You are checking whether a reply satisfies a request.

Original request: {original_request}
Success criteria: {success_criteria}
Reply from {contact}:
\"\"\"
{reply}
\"\"\"

Answer with JSON only, no prose:
{{"satisfies": true|false, "reason": "<one sentence>", "extracted_info": {{<key facts from the reply>}}}}"""

_FOLLOWUP_PROMPT = """Write follow-up message number {number} to {contact}.

What we originally asked for: {original_request}
{situation}

Keep it short, friendly and specific. Output only the message text."""


def _extract_json(text: str) -> Dict[str, Any]:
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        raise ValueError("no JSON object in model output")
    return json.loads(match.group(0))


class LLMReplyJudge:
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.anthropic.com",
        timeout: float = 30.0,
        fallback: Optional[ReplyJudge] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.fallback: ReplyJudge = fallback or FallbackReplyJudge()
        self._transport = transport

    def _complete(self, prompt: str, max_tokens: int = 512) -> str:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": _ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            resp = client.post(f"{self.base_url}/v1/messages", headers=headers, json=payload)
        resp.raise_for_status()
        blocks = resp.json().get("content", [])
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        if not text.strip():
            raise ValueError("empty model response")
        return text.strip()

    def evaluate(
        self,
        reply_body: str,
        original_request: str,
        success_criteria: str,
        contact: str,
    ) -> Evaluation:
        prompt = _EVALUATE_PROMPT.format(
            original_request=original_request,
            success_criteria=success_criteria or "the reply answers the request",
            contact=contact,
            reply=reply_body[:4000],
        )
        try:
            data = _extract_json(self._complete(prompt))
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Reply evaluation failed, using fallback: %s", exc)
            return self.fallback.evaluate(reply_body, original_request, success_criteria, contact)
        info = data.get("extracted_info")
        return Evaluation(
            satisfies=bool(data.get("satisfies")),
            reason=str(data.get("reason", "")),
            extracted_info=info if isinstance(info, dict) else {},
        )

    def generate_followup(
        self,
        original_request: str,
        contact: str,
        followup_number: int,
        is_timeout: bool,
        last_reply: Optional[str] = None,
    ) -> str:
        if is_timeout or not last_reply:
            situation = "They have not replied yet. Gently remind them."
        else:
            situation = f'Their last reply did not fully answer:\n"""\n{last_reply[:2000]}\n"""\nAsk for what is still missing.'
        prompt = _FOLLOWUP_PROMPT.format(
            number=followup_number,
            contact=contact,
            original_request=original_request,
            situation=situation,
        )
        try:
            return self._complete(prompt, max_tokens=300)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Follow-up generation failed, using template: %s", exc)
            return self.fallback.generate_followup(original_request, contact, followup_number, is_timeout, last_reply)


def build_judge(settings: Settings) -> ReplyJudge:
    if not settings.llm_api_key:
        logger.info("No LLM API key configured; replies are judged with fallback templates")
        return FallbackReplyJudge()
    return LLMReplyJudge(
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout=settings.llm_timeout_seconds,
    )
