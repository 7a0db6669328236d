"""
Rule evaluation against an Open Policy Agent server.

Each policy's rule text is pushed to OPA as its own module (the package line
is rewritten so policies never share a namespace) and queried through the
data API. OPA parses and compiles the module on upload, so a successful PUT
is the "compile" step and the module id/data path pair is what gets cached.

The evaluator is an explicit object owning its cache; the worker builds one
and passes it to the orchestrator.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol

import httpx
import structlog

from finopsbridge.shared.core.config import Settings, get_settings
from finopsbridge.shared.core.exceptions import EvaluationError, FinOpsBridgeError
from finopsbridge.shared.core.http import get_http_client

logger = structlog.get_logger()

DEFAULT_VIOLATION_MESSAGE = "Policy violation detected"

_PACKAGE_LINE = re.compile(r"^\s*package\s+[\w.\"\[\]]+\s*$", re.MULTILINE)
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")


class FailMode(str, Enum):
    OPEN = "open"
    CLOSED = "closed"

    @classmethod
    def resolve(cls, value: Any, default: "FailMode") -> "FailMode":
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return default


class RuleStore(Protocol):
    async def get_rule_definition(self, policy_id: str) -> str | None: ...

    async def list_rule_definitions(self) -> dict[str, str]: ...


@dataclass(frozen=True)
class CompiledRule:
    policy_id: str
    digest: str
    module_id: str
    data_path: str


@dataclass
class RuleDecision:
    violated: bool
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    error: EvaluationError | None = None


def _digest(rule_text: str) -> str:
    return hashlib.sha256(rule_text.encode("utf-8")).hexdigest()


class RuleEvaluator:
    def __init__(
        self,
        store: RuleStore,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._client = client
        self._cache: dict[str, CompiledRule] = {}
        self._lock = asyncio.Lock()
        self.default_fail_mode = (
            FailMode.OPEN if self.settings.RULE_FAIL_OPEN else FailMode.CLOSED
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_http_client()

    @property
    def base_url(self) -> str:
        return self.settings.RULE_ENGINE_URL.rstrip("/")

    def cached_policy_ids(self) -> set[str]:
        return set(self._cache)

    def _namespace(self, policy_id: str) -> tuple[str, str, str]:
        safe_id = _UNSAFE_CHARS.sub("_", policy_id)
        package = f"{self.settings.RULE_PACKAGE_PREFIX}.p_{safe_id}"
        module_id = f"{self.settings.RULE_PACKAGE_PREFIX.replace('.', '/')}/{safe_id}"
        return package, module_id, package.replace(".", "/")

    def _rewrite_package(self, rule_text: str, package: str) -> str:
        if _PACKAGE_LINE.search(rule_text):
            return _PACKAGE_LINE.sub(f"package {package}", rule_text, count=1)
        return f"package {package}\n\n{rule_text}"

    async def _compile(self, policy_id: str, rule_text: str) -> CompiledRule:
        package, module_id, data_path = self._namespace(policy_id)
        body = self._rewrite_package(rule_text, package)
        try:
            response = await self.client.put(
                f"{self.base_url}/v1/policies/{module_id}",
                content=body.encode("utf-8"),
                headers={"Content-Type": "text/plain"},
                timeout=self.settings.RULE_EVAL_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            raise EvaluationError(
                f"Rule engine unreachable while loading policy {policy_id}: {e}",
                code="rule_engine_unavailable",
            ) from e
        if response.status_code >= 400:
            raise EvaluationError(
                f"Rule definition for policy {policy_id} failed to compile",
                code="rule_compile_failed",
                details={"status_code": response.status_code, "body": response.text[:500]},
            )
        return CompiledRule(
            policy_id=policy_id,
            digest=_digest(rule_text),
            module_id=module_id,
            data_path=data_path,
        )

    async def _unload(self, compiled: CompiledRule) -> None:
        try:
            await self.client.delete(
                f"{self.base_url}/v1/policies/{compiled.module_id}",
                timeout=self.settings.RULE_EVAL_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            logger.warning(
                "rule_unload_failed", policy_id=compiled.policy_id, error=str(e)
            )

    async def _get_compiled(self, policy_id: str) -> CompiledRule:
        cached = self._cache.get(policy_id)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._cache.get(policy_id)
            if cached is not None:
                return cached
            try:
                rule_text = await self.store.get_rule_definition(policy_id)
            except FinOpsBridgeError as e:
                raise EvaluationError(
                    f"Rule store unavailable for policy {policy_id}: {e.message}",
                    code="rule_store_unavailable",
                ) from e
            if not rule_text or not rule_text.strip():
                raise EvaluationError(
                    f"No rule definition stored for policy {policy_id}",
                    code="rule_missing",
                )
            compiled = await self._compile(policy_id, rule_text)
            self._cache[policy_id] = compiled
            logger.info("rule_compiled", policy_id=policy_id, module_id=compiled.module_id)
            return compiled

    async def _query(self, compiled: CompiledRule, input_doc: Mapping[str, Any]) -> Any:
        try:
            response = await self.client.post(
                f"{self.base_url}/v1/data/{compiled.data_path}",
                json={"input": dict(input_doc)},
                timeout=self.settings.RULE_EVAL_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            raise EvaluationError(
                f"Rule evaluation request failed for policy {compiled.policy_id}: {e}",
                code="rule_engine_unavailable",
            ) from e
        if response.status_code >= 400:
            raise EvaluationError(
                f"Rule evaluation failed for policy {compiled.policy_id}",
                code="rule_evaluation_failed",
                details={"status_code": response.status_code, "body": response.text[:500]},
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise EvaluationError(
                f"Rule engine returned a non-JSON decision for policy {compiled.policy_id}",
                code="rule_evaluation_failed",
            ) from e
        if not isinstance(payload, dict) or "result" not in payload:
            # OPA omits "result" when the package is undefined (not loaded).
            raise EvaluationError(
                f"Rule decision undefined for policy {compiled.policy_id}",
                code="rule_undefined",
            )
        return payload["result"]

    @staticmethod
    def _interpret(result: Any) -> RuleDecision:
        if isinstance(result, bool):
            return RuleDecision(violated=not result, details={"allow": result})
        if not isinstance(result, dict):
            raise EvaluationError(
                f"Unsupported rule decision shape: {type(result).__name__}",
                code="rule_evaluation_failed",
            )

        if "violation" in result:
            violated = bool(result["violation"])
        elif "allow" in result:
            violated = result["allow"] is False
        else:
            raise EvaluationError(
                "Rule decision defines neither 'allow' nor 'violation'",
                code="rule_evaluation_failed",
            )

        message = None
        if violated:
            raw_msg = result.get("msg")
            message = raw_msg if isinstance(raw_msg, str) and raw_msg else DEFAULT_VIOLATION_MESSAGE
        return RuleDecision(violated=violated, message=message, details=result)

    async def evaluate(
        self,
        policy_id: str,
        input_doc: Mapping[str, Any],
        *,
        fail_mode: FailMode | None = None,
    ) -> RuleDecision:
        """
        Evaluate one policy against an input document.

        Never raises EvaluationError: missing, broken or unreachable rules are
        folded into the decision according to the fail mode (open => not
        violated, closed => violated) and carried on `decision.error`.
        """
        mode = fail_mode or self.default_fail_mode
        try:
            compiled = await self._get_compiled(policy_id)
            result = await self._query(compiled, input_doc)
            return self._interpret(result)
        except EvaluationError as e:
            if e.code in {"rule_undefined", "rule_evaluation_failed"}:
                # Stale cache entry (engine restarted) or broken module: recompile next time.
                self._cache.pop(policy_id, None)
            logger.warning(
                "rule_evaluation_failed",
                policy_id=policy_id,
                code=e.code,
                error=e.message,
                fail_mode=mode.value,
            )
            if mode is FailMode.CLOSED:
                return RuleDecision(
                    violated=True,
                    message=f"Policy could not be evaluated ({e.code}); failing closed",
                    details={"fail_mode": mode.value},
                    error=e,
                )
            return RuleDecision(
                violated=False, details={"fail_mode": mode.value}, error=e
            )

    async def reload(self, policy_id: str | None = None) -> None:
        """Drop cached compilations so the next evaluation reloads from the store."""
        async with self._lock:
            if policy_id is None:
                self._cache.clear()
            else:
                self._cache.pop(policy_id, None)
        logger.info("rule_cache_invalidated", policy_id=policy_id or "*")

    async def refresh(self) -> int:
        """
        Poll the rule store and reconcile the cache with it.

        Changed rule text is recompiled, rules that disappeared (deleted or
        disabled policies) are unloaded. Returns the number of entries changed.
        """
        definitions = await self.store.list_rule_definitions()
        changed = 0
        async with self._lock:
            for policy_id in list(self._cache):
                if policy_id not in definitions:
                    await self._unload(self._cache.pop(policy_id))
                    changed += 1

            for policy_id, rule_text in definitions.items():
                cached = self._cache.get(policy_id)
                if cached is not None and cached.digest == _digest(rule_text):
                    continue
                try:
                    self._cache[policy_id] = await self._compile(policy_id, rule_text)
                except EvaluationError as e:
                    self._cache.pop(policy_id, None)
                    logger.warning(
                        "rule_refresh_compile_failed",
                        policy_id=policy_id,
                        code=e.code,
                        error=e.message,
                    )
                changed += 1

        if changed:
            logger.info("rule_cache_refreshed", changed=changed, loaded=len(self._cache))
        return changed
