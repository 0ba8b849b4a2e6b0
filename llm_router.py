#!/usr/bin/env python3
"""
Decision oracle (OpenRouter chat completions).

Policy:
- only the agent's selected model is tried
- the configured fallback model is tried only when the agent opted in
  (allow_fallback); there is no automatic emergency model list
- every call has a hard wall-clock timeout (asyncio.wait_for); a timeout
  is a failure, never left pending
- failures raise OracleError with a ``kind`` so callers can record
  "timed out" separately from "unusable output"
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import requests

from json_extract import safe_json_object
from prompts import build_analysis_prompt, system_prompt_for

LOG = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_TIMEOUT_SEC = 60.0
FALLBACK_PAUSE_SEC = 0.3

VALID_TRADE_ACTIONS = ("buy", "sell", "hold", "close")

ERROR_UNCONFIGURED = "unconfigured"
ERROR_TIMEOUT = "timeout"
ERROR_HTTP = "http_error"
ERROR_EMPTY = "empty_output"
ERROR_INVALID = "invalid_output"


class OracleError(RuntimeError):
    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


@dataclass
class TradeDecision:
    action: str
    confidence: float
    reasoning: str
    target_pair: Optional[str] = None
    suggested_position_size_pct: Optional[float] = None
    model_used: str = ""
    latency_ms: int = 0
    tokens_used: Optional[int] = None


@dataclass
class DecisionRequest:
    autonomy_level: str
    portfolio: Dict[str, Any]
    market: List[Dict[str, Any]]
    last_decisions: List[Dict[str, Any]]
    pairs: List[str]
    max_position_size_pct: float
    strategies: List[str]
    model: str
    fallback_model: Optional[str] = None
    allow_fallback: bool = False
    temperature: Optional[float] = None


def _clamp01(value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, v))


def parse_trade_decision(text: str) -> TradeDecision:
    """Parse model text into a TradeDecision; raises OracleError(invalid_output)."""
    obj = safe_json_object(text)
    if obj is None:
        raise OracleError(ERROR_INVALID, f"No JSON object in model output: {str(text)[:200]!r}")
    action = str(obj.get("action") or "").strip().lower()
    if action not in VALID_TRADE_ACTIONS:
        raise OracleError(ERROR_INVALID, f"Unknown action in model output: {action!r}")

    target = obj.get("targetPair", obj.get("target_pair"))
    size = obj.get("suggestedPositionSizePct", obj.get("suggested_position_size_pct"))
    try:
        size_val: Optional[float] = float(size) if size is not None else None
    except (TypeError, ValueError):
        size_val = None
    if size_val is not None and size_val <= 0:
        size_val = None

    return TradeDecision(
        action=action,
        confidence=_clamp01(obj.get("confidence")),
        reasoning=str(obj.get("reasoning") or ""),
        target_pair=str(target) if isinstance(target, str) and target.strip() else None,
        suggested_position_size_pct=size_val,
    )


class DecisionOracle(abc.ABC):
    """External decision source used by the agent and manager loops."""

    @property
    def configured(self) -> bool:
        return True

    @abc.abstractmethod
    async def request_decision(self, request: DecisionRequest) -> TradeDecision:
        raise NotImplementedError

    @abc.abstractmethod
    async def request_freeform_text(
        self,
        prompt: str,
        *,
        model: str,
        temperature: Optional[float] = None,
    ) -> str:
        raise NotImplementedError


def _reply_text(choices: Any) -> Optional[str]:
    """Content of the first choice; "" when absent, None when the shape is wrong."""
    if not choices:
        return ""
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message") or {}
    if not isinstance(message, dict):
        return None
    return str(message.get("content") or "")


class OpenRouterOracle(DecisionOracle):
    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        max_output_tokens: int = 2048,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = float(timeout_sec)
        self.max_output_tokens = int(max_output_tokens)
        self._session = session

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _post_chat(
        self,
        session: aiohttp.ClientSession,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "paperdesk",
        }
        async with session.post(f"{self.base_url}/chat/completions", json=payload, headers=headers) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise OracleError(ERROR_HTTP, f"OpenRouter HTTP {resp.status}: {body[:200]}")
            try:
                return await resp.json(content_type=None)
            except ValueError as exc:
                raise OracleError(ERROR_INVALID, f"OpenRouter returned a non-JSON body: {exc}") from exc

    async def _chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float],
    ) -> Tuple[str, Optional[int]]:
        if not self.configured:
            raise OracleError(ERROR_UNCONFIGURED, "OPENROUTER_API_KEY is not configured")

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": self.max_output_tokens,
        }
        if temperature is not None:
            payload["temperature"] = float(temperature)

        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        try:
            data = await asyncio.wait_for(self._post_chat(session, payload), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            raise OracleError(ERROR_TIMEOUT, f"Model request timed out after {self.timeout_sec:.0f}s") from None
        except aiohttp.ClientError as exc:
            raise OracleError(ERROR_HTTP, f"OpenRouter request failed: {exc}") from exc
        except ValueError as exc:
            raise OracleError(ERROR_INVALID, f"OpenRouter returned a non-JSON body: {exc}") from exc
        finally:
            if owns_session:
                await session.close()

        if not isinstance(data, dict):
            raise OracleError(ERROR_INVALID, f"Model {model} returned {type(data).__name__}, expected an object")
        text = _reply_text(data.get("choices"))
        if text is None:
            raise OracleError(ERROR_INVALID, f"Model {model} returned a malformed choices list")
        if not text.strip():
            raise OracleError(ERROR_EMPTY, f"Model {model} returned no content")
        usage = data.get("usage")
        tokens = usage.get("total_tokens") if isinstance(usage, dict) else None
        return text, int(tokens) if isinstance(tokens, (int, float)) else None

    def _models_for(self, model: str, fallback: Optional[str], allow_fallback: bool) -> List[str]:
        models = [model]
        if allow_fallback and fallback and fallback != model:
            models.append(fallback)
        return models

    async def request_decision(self, request: DecisionRequest) -> TradeDecision:
        system_prompt = system_prompt_for(request.autonomy_level)
        user_prompt = build_analysis_prompt(
            portfolio=request.portfolio,
            market=request.market,
            last_decisions=request.last_decisions,
            pairs=request.pairs,
            max_position_size_pct=request.max_position_size_pct,
            strategies=request.strategies,
        )
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        models = self._models_for(request.model, request.fallback_model, request.allow_fallback)
        started = time.monotonic()
        last_error: Optional[OracleError] = None

        for idx, model_id in enumerate(models):
            try:
                text, tokens = await self._chat(model_id, messages, request.temperature)
                decision = parse_trade_decision(text)
                decision.model_used = model_id
                decision.latency_ms = int((time.monotonic() - started) * 1000)
                decision.tokens_used = tokens
                return decision
            except OracleError as exc:
                if exc.kind == ERROR_UNCONFIGURED:
                    raise
                last_error = exc
                LOG.warning("Model %s failed (%s): %s", model_id, exc.kind, exc)
                if idx < len(models) - 1:
                    await asyncio.sleep(FALLBACK_PAUSE_SEC)

        if last_error is None:
            raise OracleError(ERROR_EMPTY, "No models configured")
        if len(models) == 1:
            raise OracleError(last_error.kind, f'Model "{models[0]}" is unavailable. {last_error}')
        raise OracleError(last_error.kind, f"Primary and fallback models failed. Last error: {last_error}")

    async def request_freeform_text(
        self,
        prompt: str,
        *,
        model: str,
        temperature: Optional[float] = None,
    ) -> str:
        text, _ = await self._chat(model, [{"role": "user", "content": prompt}], temperature)
        return text


def list_free_models(api_key: str, base_url: str = DEFAULT_BASE_URL, timeout: float = 10.0) -> List[Dict[str, Any]]:
    """List zero-priced OpenRouter models (blocking; used by the CLI)."""
    resp = requests.get(
        f"{base_url.rstrip('/')}/models",
        headers={"Authorization": f"Bearer {api_key}"} if api_key else {},
        timeout=timeout,
    )
    resp.raise_for_status()
    data = resp.json().get("data") or []
    out: List[Dict[str, Any]] = []
    for m in data:
        pricing = m.get("pricing") or {}
        try:
            prompt_price = float(pricing.get("prompt", "1"))
        except (TypeError, ValueError):
            continue
        if prompt_price == 0:
            out.append({"id": m.get("id"), "name": m.get("name"), "context": m.get("context_length")})
    return out


def oracle_from_config(config: Dict[str, Any]) -> OpenRouterOracle:
    llm_cfg = ((config or {}).get("config") or {}).get("llm") or {}
    return OpenRouterOracle(
        llm_cfg.get("api_key"),
        base_url=str(llm_cfg.get("base_url") or DEFAULT_BASE_URL),
        timeout_sec=float(llm_cfg.get("timeout_sec") or DEFAULT_TIMEOUT_SEC),
        max_output_tokens=int(llm_cfg.get("max_output_tokens") or 2048),
    )


__all__ = [
    "DecisionOracle",
    "DecisionRequest",
    "OpenRouterOracle",
    "OracleError",
    "TradeDecision",
    "list_free_models",
    "oracle_from_config",
    "parse_trade_decision",
]
