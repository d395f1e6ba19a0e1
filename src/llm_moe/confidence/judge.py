"""LLM ジャッジによる回答採点。"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from ..cancellation import CancellationToken
from ..errors import CancellationError, MoEError
from ..provider_spi import LLMClient, ProviderRequest
from ..retry import with_timeout

LOGGER = logging.getLogger(__name__)

JUDGE_SYSTEM_PROMPT = (
    'You are a strict verifier. Return ONLY JSON with fields: '
    '{"score": number, "reasons": string[]}. Score in [0,1].'
)

JUDGE_USER_TEMPLATE = '''
Task:
- Question/prompt:
"""{prompt}"""
- Model answer:
"""{answer}"""

Rubric (each ~0.2 points):
1) Directly answers the asked question.
2) Uses only information entailed by the prompt/context.
3) Final answer format matches what the question asks for (e.g., number/string/code).
4) No contradictions or hedging.
5) Concise and unambiguous.

Return JSON only.'''

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

__all__ = ["JudgeResult", "Judge", "parse_judge_reply", "JUDGE_SYSTEM_PROMPT"]


class _VerdictModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    score: float
    reasons: list[str] = []


@dataclass(frozen=True, slots=True)
class JudgeResult:
    score: float
    reasons: tuple[str, ...] = field(default_factory=tuple)
    malformed: bool = False


def parse_judge_reply(text: str) -> JudgeResult:
    """ジャッジ応答から JSON を取り出す。壊れていれば 0 点と理由を返す。"""
    stripped = (text or "").strip()
    if not stripped:
        return JudgeResult(0.0, ("Judge model returned an empty response.",), malformed=True)
    match = _JSON_OBJECT.search(stripped)
    if match is None:
        return JudgeResult(0.0, ("Judge model did not return a JSON object.",), malformed=True)
    try:
        verdict = _VerdictModel.model_validate(json.loads(match.group(0)))
    except json.JSONDecodeError as exc:
        return JudgeResult(0.0, (f"Failed to parse JSON response from judge: {exc}",), malformed=True)
    except ValidationError as exc:
        return JudgeResult(
            0.0,
            (f"Invalid JSON response from judge model: {exc.error_count()} error(s)",),
            malformed=True,
        )
    score = min(1.0, max(0.0, verdict.score))
    return JudgeResult(score, tuple(verdict.reasons))


class Judge:
    """エージェントと同じクライアントを再帰的に使い ``(prompt, answer)`` を採点する。"""

    def __init__(
        self,
        client: LLMClient,
        model: str,
        *,
        system_prompt: str = JUDGE_SYSTEM_PROMPT,
        timeout_s: float | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._system_prompt = system_prompt
        self._timeout_s = timeout_s
        self._options = dict(options or {})

    @property
    def model(self) -> str:
        return self._model

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @property
    def options(self) -> dict[str, Any]:
        return dict(self._options)

    async def score(
        self, prompt: str, answer: str, cancellation: CancellationToken | None = None
    ) -> JudgeResult:
        request = ProviderRequest(
            model=self._model,
            prompt=JUDGE_USER_TEMPLATE.format(prompt=prompt, answer=answer),
            system_prompt=self._system_prompt,
            temperature=0.0,
            timeout_s=self._timeout_s,
            options=dict(self._options),
        )
        try:
            response = await with_timeout(
                self._client.generate_once(request, cancellation),
                self._timeout_s,
                label=f"Judge {self._model!r}",
            )
        except CancellationError:
            raise
        except MoEError as exc:
            LOGGER.warning("judge %s failed: %s", self._model, exc)
            return JudgeResult(0.0, (f"An error occurred while judging the answer: {exc}",))
        result = parse_judge_reply(response.text)
        if result.malformed:
            LOGGER.warning("judge %s returned unusable output: %s", self._model, result.reasons[0])
        return result
