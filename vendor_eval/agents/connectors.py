# vendor_eval/agents/connectors.py
"""
External connector fan-out.

fetch_for_role(role, context) -> (payload_text, [ConnectorError, ...])

- Selects active connectors whose role_mapping includes the role.
- Queries each one concurrently with its own timeout and cache entry
  (key derived from connector id + vendor + project).
- Successful payloads are joined with a blank line; each failure becomes a
  ConnectorError and never stops sibling connectors.

Responses are normalized by an ordered list of shape matchers (predicate +
formatter); the generic key/value listing is the last resort.
"""
from __future__ import annotations
import asyncio
import base64
import inspect
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from vendor_eval.config import cfg
from vendor_eval.errors import ConnectorFailure, FailureCategory, categorize_exception, category_for_status
from vendor_eval.models import (
    ConnectorConfig,
    ConnectorError,
    ConnectorMetadata,
    ConnectorPayload,
    EvaluationContext,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_TTL_SECONDS = 300
GENERIC_MAX_ENTRIES = 10
GENERIC_VALUE_CHARS = 200
RESULT_ITEM_CHARS = 500

ConnectorsProvider = Callable[[], Union[List[ConnectorConfig], Awaitable[List[ConnectorConfig]]]]


# ---- response normalization ----

def _truncate(value: Any, limit: int) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text[:limit]


def _result_items(data: Any) -> Optional[List[Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("results", "pages", "items"):
            if isinstance(data.get(key), list):
                return data[key]
    return None


def _format_result_items(data: Any) -> str:
    lines = []
    for idx, item in enumerate(_result_items(data) or [], start=1):
        if isinstance(item, dict):
            title = item.get("title") or item.get("name")
            body = item.get("content") or item.get("text") or item.get("snippet") or item.get("summary")
            if title or body:
                label = f"{title}: " if title else ""
                lines.append(f"{idx}. {label}{_truncate(body or '', RESULT_ITEM_CHARS)}".rstrip(": "))
                continue
        lines.append(f"{idx}. {_truncate(item, RESULT_ITEM_CHARS)}")
    return "\n".join(lines)


def _format_insights(data: Dict[str, Any]) -> str:
    return "\n".join(f"- {insight}" for insight in data["insights"])


def _format_vendor_performance(data: Dict[str, Any]) -> str:
    perf = data["vendor_performance"] or {}
    result = "Vendor Performance History:\n"
    for key, label in (
        ("past_projects", "Past Projects"),
        ("on_time_delivery", "On-Time Delivery Rate"),
        ("sla_adherence", "SLA Adherence"),
        ("support_quality", "Support Quality"),
    ):
        if perf.get(key):
            result += f"- {label}: {perf[key]}\n"
    return result


FREE_TEXT_FIELDS = ("documentation", "text", "content", "summary")


def _free_text_field(data: Dict[str, Any]) -> Optional[str]:
    for key in FREE_TEXT_FIELDS:
        if isinstance(data.get(key), str) and data[key].strip():
            return key
    return None


def _format_free_text(data: Dict[str, Any]) -> str:
    key = _free_text_field(data)
    if key == "documentation":
        return f"Relevant documentation:\n{data[key]}"
    return data[key]


def _format_generic(data: Any) -> str:
    if isinstance(data, dict):
        entries = list(data.items())[:GENERIC_MAX_ENTRIES]
        return "\n".join(f"- {key}: {str(value)[:GENERIC_VALUE_CHARS]}" for key, value in entries)
    return str(data)[:GENERIC_VALUE_CHARS * GENERIC_MAX_ENTRIES]


# (name, predicate, formatter), tried in order
SHAPE_MATCHERS: List[Tuple[str, Callable[[Any], bool], Callable[[Any], str]]] = [
    ("text", lambda d: isinstance(d, str), lambda d: d),
    ("insights", lambda d: isinstance(d, dict) and isinstance(d.get("insights"), list), _format_insights),
    ("vendor_performance", lambda d: isinstance(d, dict) and isinstance(d.get("vendor_performance"), dict),
     _format_vendor_performance),
    ("results", lambda d: _result_items(d) is not None, _format_result_items),
    ("free_text", lambda d: isinstance(d, dict) and _free_text_field(d) is not None, _format_free_text),
]


def normalize_response(data: Any, connector_name: str) -> str:
    """Render any connector response as a text block headed by the connector name."""
    if data is None or data == "" or data == {} or data == []:
        return ""
    body = None
    for name, matches, formatter in SHAPE_MATCHERS:
        if matches(data):
            body = formatter(data)
            break
    if body is None:
        body = _format_generic(data)
    return f"\n**EXTERNAL INTELLIGENCE: {connector_name}**\n{body}"


def unwrap_jsonrpc(data: Any) -> Any:
    """Strip a JSON-RPC envelope; MCP text content blocks are joined into one string."""
    if not isinstance(data, dict) or "jsonrpc" not in data:
        return data
    if data.get("error"):
        err = data["error"]
        message = err.get("message") if isinstance(err, dict) else str(err)
        raise ConnectorFailure(FailureCategory.UNKNOWN, f"JSON-RPC error: {message}")
    result = data.get("result")
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [c.get("text") for c in result["content"] if isinstance(c, dict) and c.get("text")]
        if texts:
            return "\n".join(texts)
    return result


def parse_sse(text: str) -> Any:
    """First JSON object carried on a `data:` line of a server-sent-events body."""
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        chunk = line[len("data:"):].strip()
        if not chunk.startswith("{"):
            continue
        try:
            return json.loads(chunk)
        except ValueError:
            continue
    raise ConnectorFailure(FailureCategory.PARSING, "Failed to parse SSE response")


# ---- adapters ----

class RestAdapter:
    """JSON-RPC 2.0 over HTTP POST (MCP style)."""

    connector_types = ("rest",)

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    @staticmethod
    def _headers(connector: ConnectorConfig) -> Dict[str, str]:
        headers = {
            "Accept": "application/json, text/event-stream",
            "Content-Type": "application/json",
        }
        if connector.api_key:
            if connector.auth_type == "bearer":
                headers["Authorization"] = f"Bearer {connector.api_key}"
            elif connector.auth_type == "apikey":
                headers["X-API-Key"] = connector.api_key
            elif connector.auth_type == "basic":
                token = base64.b64encode(connector.api_key.encode("utf-8")).decode("ascii")
                headers["Authorization"] = f"Basic {token}"
        return headers

    @staticmethod
    def _request_body(context: EvaluationContext) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": int(time.time() * 1000),
            "method": "tools/list",
            "params": {
                "vendor": context.vendor_name or "",
                "project": context.project_name or "",
                "requirements": list(context.requirements),
                "proposalSummary": context.proposal_summary or "",
            },
        }

    async def fetch(self, connector: ConnectorConfig, context: EvaluationContext,
                    timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Any:
        """Raw decoded response data; raises ConnectorFailure."""
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.post(
                    connector.server_url,
                    headers=self._headers(connector),
                    json=self._request_body(context),
                )
        except httpx.TimeoutException as e:
            raise ConnectorFailure(FailureCategory.TIMEOUT, "Request timeout exceeded") from e
        except httpx.HTTPError as e:
            raise ConnectorFailure(FailureCategory.NETWORK, str(e) or type(e).__name__) from e

        category = category_for_status(resp.status_code)
        if category == FailureCategory.AUTHENTICATION:
            raise ConnectorFailure(category, f"Authentication failed: {resp.reason_phrase}")
        if category == FailureCategory.RATE_LIMIT:
            raise ConnectorFailure(category, "Rate limit exceeded")
        if category is not None:
            raise ConnectorFailure(category, f"HTTP {resp.status_code}: {resp.reason_phrase}")

        content_type = resp.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            data = parse_sse(resp.text)
        elif "json" in content_type:
            try:
                data = resp.json()
            except ValueError as e:
                raise ConnectorFailure(FailureCategory.PARSING, "Invalid JSON response") from e
        else:
            data = resp.text
        return unwrap_jsonrpc(data)


# ---- fan-out ----

def load_connectors_file(path: Optional[str]) -> List[ConnectorConfig]:
    """Connector configurations from a JSON array on disk."""
    if not path:
        return []
    with open(path, "r", encoding="utf-8") as f:
        items = json.load(f)
    return [ConnectorConfig.model_validate(item) for item in items]


class ConnectorFanout:
    """
    Args:
        connectors: list of ConnectorConfig, or a (sync or async) callable returning one.
            Defaults to the file named by CONNECTORS_FILE.
        cache: any object with awaitable get(key) / set(key, value, ttl) (see services.cache).
        adapters: adapters with `connector_types` and `fetch(connector, context, timeout)`.
    """

    def __init__(self,
                 connectors: Union[Sequence[ConnectorConfig], ConnectorsProvider, None] = None,
                 cache=None,
                 adapters: Optional[Sequence[Any]] = None,
                 timeout: Optional[float] = None,
                 ttl: Optional[int] = None):
        if connectors is None:
            connectors = lambda: load_connectors_file(cfg.CONNECTORS_FILE)  # noqa: E731
        self._connectors = connectors
        self.cache = cache
        self.timeout = cfg.CONNECTOR_TIMEOUT_SECONDS if timeout is None else timeout
        self.ttl = cfg.CONNECTOR_CACHE_TTL if ttl is None else ttl
        self._adapters: Dict[str, Any] = {}
        for adapter in (adapters if adapters is not None else [RestAdapter()]):
            self.register_adapter(adapter)

    def register_adapter(self, adapter: Any) -> None:
        for connector_type in adapter.connector_types:
            self._adapters[connector_type] = adapter

    async def active_connectors(self) -> List[ConnectorConfig]:
        try:
            source = self._connectors
            found = source() if callable(source) else source
            if inspect.isawaitable(found):
                found = await found
            return [c for c in (found or []) if c.is_active]
        except Exception as e:
            logger.exception("Could not load connector configurations: %s", e)
            return []

    @staticmethod
    def cache_key(connector: ConnectorConfig, context: EvaluationContext) -> str:
        scope = json.dumps({"vendor": context.vendor_name, "project": context.project_name})
        return f"mcp:{connector.id}:{base64.b64encode(scope.encode('utf-8')).decode('ascii')}"

    async def fetch_connector(self, connector: ConnectorConfig, context: EvaluationContext,
                              bypass_cache: bool = False) -> Optional[ConnectorPayload]:
        """Payload for one connector; None when it has no adapter. Raises ConnectorFailure."""
        key = self.cache_key(connector, context)
        if self.cache is not None and not bypass_cache:
            cached = await self.cache.get(key)
            if cached:
                logger.info("Cache hit for connector: %s", connector.name)
                return ConnectorPayload.model_validate(cached)

        adapter = self._adapters.get(connector.connector_type)
        if adapter is None:
            logger.warning("No adapter found for connector type: %s", connector.connector_type)
            return None

        logger.info("Fetching data from connector: %s", connector.name)
        try:
            data = await asyncio.wait_for(adapter.fetch(connector, context, timeout=self.timeout), self.timeout)
        except asyncio.TimeoutError as e:
            raise ConnectorFailure(FailureCategory.TIMEOUT, "Request timeout exceeded") from e

        text = normalize_response(data, connector.name)
        payload = ConnectorPayload(
            role_context={role: text for role in connector.role_mapping},
            raw_data=data,
            metadata=ConnectorMetadata(connector_name=connector.name, ttl=self.ttl),
        )
        if self.cache is not None:
            await self.cache.set(key, payload.model_dump(mode="json"), payload.metadata.ttl)
        return payload

    async def fetch_for_role(self, role: str, context: EvaluationContext,
                             bypass_cache: bool = False) -> Tuple[str, List[ConnectorError]]:
        relevant = [c for c in await self.active_connectors() if role in c.role_mapping]
        if not relevant:
            return "", []

        logger.info("Fetching data from %d connectors for role: %s", len(relevant), role)
        results = await asyncio.gather(
            *[self.fetch_connector(c, context, bypass_cache) for c in relevant],
            return_exceptions=True,
        )

        payloads: List[str] = []
        diagnostics: List[ConnectorError] = []
        for connector, result in zip(relevant, results):
            if isinstance(result, BaseException):
                error = ConnectorError(
                    connector_id=connector.id,
                    connector_name=connector.name,
                    error=getattr(result, "message", None) or str(result) or type(result).__name__,
                    category=categorize_exception(result).value,
                )
                logger.warning("Connector %s failed (%s): %s", connector.name, error.category, error.error)
                diagnostics.append(error)
            elif result is not None and result.role_context.get(role):
                payloads.append(result.role_context[role])

        return "\n\n".join(payloads), diagnostics
