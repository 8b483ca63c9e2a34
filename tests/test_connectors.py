import asyncio
import base64
import json
import time

import httpx
import pytest

from vendor_eval.agents.connectors import (
    ConnectorFanout,
    RestAdapter,
    load_connectors_file,
    normalize_response,
    parse_sse,
    unwrap_jsonrpc,
)
from vendor_eval.errors import ConnectorFailure, FailureCategory
from vendor_eval.models import ConnectorConfig, EvaluationContext
from vendor_eval.services.cache import TTLCache

CONTEXT = EvaluationContext(
    project_name="CRM Replacement",
    vendor_name="Acme",
    requirements=("SSO via SAML", "EU data residency"),
    proposal_summary="Cloud-native CRM with managed migration",
)


def _connector(cid="c1", name="Vendor DB", roles=("procurement",), auth_type="none", api_key=None,
               connector_type="rest", active=True):
    return ConnectorConfig(
        id=cid,
        name=name,
        connector_type=connector_type,
        server_url=f"https://{cid}.example.com/mcp",
        auth_type=auth_type,
        api_key=api_key,
        role_mapping=list(roles),
        is_active=active,
    )


class FakeAdapter:
    """Adapter answering from a dict of connector id -> data or exception."""

    connector_types = ("rest",)

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def fetch(self, connector, context, timeout=10):
        self.calls.append(connector.id)
        response = self.responses[connector.id]
        if isinstance(response, BaseException):
            raise response
        return response


class SlowAdapter:
    connector_types = ("rest",)

    async def fetch(self, connector, context, timeout=10):
        await asyncio.sleep(1)
        return {"text": "late"}


class TestNormalizeResponse:
    """Shape matchers for connector responses"""

    def test_plain_text(self):
        assert normalize_response("On-time 92%", "Vendor DB") == "\n**EXTERNAL INTELLIGENCE: Vendor DB**\nOn-time 92%"

    def test_insights_list(self):
        text = normalize_response({"insights": ["Strong SLA", "Slow support"]}, "Reviews")
        assert text.endswith("- Strong SLA\n- Slow support")

    def test_vendor_performance(self):
        data = {"vendor_performance": {"past_projects": 12, "on_time_delivery": "92%"}}
        text = normalize_response(data, "PMO")
        assert "Vendor Performance History:\n- Past Projects: 12\n- On-Time Delivery Rate: 92%" in text

    def test_result_items(self):
        data = {"results": [{"title": "SOC 2 report", "content": "Type II, 2024"}, "raw item"]}
        text = normalize_response(data, "Docs")
        assert "1. SOC 2 report: Type II, 2024" in text
        assert "2. raw item" in text

    def test_documentation_field(self):
        text = normalize_response({"documentation": "API rate limits are 100 rps"}, "Confluence")
        assert text.endswith("Relevant documentation:\nAPI rate limits are 100 rps")

    def test_generic_fallback_limits_entries(self):
        data = {f"key{i}": "v" * 300 for i in range(12)}
        body = normalize_response(data, "Misc").split("**\n", 1)[1]
        lines = body.splitlines()
        assert len(lines) == 10
        assert lines[0] == "- key0: " + "v" * 200

    def test_empty_data(self):
        assert normalize_response({}, "X") == ""
        assert normalize_response(None, "X") == ""


class TestEnvelopes:

    def test_unwrap_jsonrpc_result(self):
        assert unwrap_jsonrpc({"jsonrpc": "2.0", "id": 1, "result": {"insights": ["a"]}}) == {"insights": ["a"]}

    def test_unwrap_jsonrpc_content_blocks(self):
        data = {"jsonrpc": "2.0", "result": {"content": [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}]}}
        assert unwrap_jsonrpc(data) == "one\ntwo"

    def test_unwrap_jsonrpc_error(self):
        with pytest.raises(ConnectorFailure) as exc:
            unwrap_jsonrpc({"jsonrpc": "2.0", "error": {"code": -32601, "message": "Method not found"}})
        assert "Method not found" in exc.value.message

    def test_parse_sse(self):
        body = 'event: message\ndata: {"jsonrpc": "2.0", "result": {"text": "hi"}}\n\n'
        assert parse_sse(body) == {"jsonrpc": "2.0", "result": {"text": "hi"}}

    def test_parse_sse_without_json(self):
        with pytest.raises(ConnectorFailure) as exc:
            parse_sse("data: ping\n\n")
        assert exc.value.category == FailureCategory.PARSING


class TestRestAdapter:
    """JSON-RPC over HTTP with a mock transport"""

    def _fetch(self, handler, connector=None):
        adapter = RestAdapter(transport=httpx.MockTransport(handler))
        return asyncio.run(adapter.fetch(connector or _connector(), CONTEXT, timeout=5))

    def test_posts_tools_list_with_context(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"insights": ["ok"]}})

        assert self._fetch(handler) == {"insights": ["ok"]}
        assert seen["body"]["method"] == "tools/list"
        assert seen["body"]["params"]["vendor"] == "Acme"
        assert seen["body"]["params"]["requirements"] == ["SSO via SAML", "EU data residency"]

    @pytest.mark.parametrize("auth_type,header,expected", [
        ("bearer", "authorization", "Bearer s3cret"),
        ("apikey", "x-api-key", "s3cret"),
        ("basic", "authorization", "Basic " + base64.b64encode(b"s3cret").decode()),
    ])
    def test_auth_headers(self, auth_type, header, expected):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return httpx.Response(200, json={"text": "ok"})

        self._fetch(handler, _connector(auth_type=auth_type, api_key="s3cret"))
        assert seen["headers"][header] == expected

    def test_sse_response(self):
        def handler(request):
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                text='data: {"jsonrpc": "2.0", "result": {"content": [{"type": "text", "text": "streamed"}]}}\n\n',
            )

        assert self._fetch(handler) == "streamed"

    def test_plain_text_response(self):
        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/plain"}, text="just text")

        assert self._fetch(handler) == "just text"

    @pytest.mark.parametrize("status,category,message", [
        (401, FailureCategory.AUTHENTICATION, "Authentication failed: Unauthorized"),
        (403, FailureCategory.AUTHENTICATION, "Authentication failed: Forbidden"),
        (429, FailureCategory.RATE_LIMIT, "Rate limit exceeded"),
        (500, FailureCategory.NETWORK, "HTTP 500: Internal Server Error"),
    ])
    def test_status_mapping(self, status, category, message):
        with pytest.raises(ConnectorFailure) as exc:
            self._fetch(lambda request: httpx.Response(status))
        assert exc.value.category == category
        assert exc.value.message == message

    def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, headers={"content-type": "application/json"}, content=b"{not json")

        with pytest.raises(ConnectorFailure) as exc:
            self._fetch(handler)
        assert exc.value.category == FailureCategory.PARSING

    def test_transport_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ConnectorFailure) as exc:
            self._fetch(handler)
        assert exc.value.category == FailureCategory.TIMEOUT

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ConnectorFailure) as exc:
            self._fetch(handler)
        assert exc.value.category == FailureCategory.NETWORK


class TestConnectorFanout:
    """Per-role fan-out with partial failures and caching"""

    def test_partial_failure_keeps_successful_payloads(self):
        connectors = [_connector("c1", "Vendor DB"), _connector("c2", "Reviews"), _connector("c3", "Audit")]
        adapter = FakeAdapter({
            "c1": {"insights": ["Delivered 12 projects"]},
            "c2": ConnectorFailure(FailureCategory.AUTHENTICATION, "Authentication failed: Unauthorized"),
            "c3": "Audit clean",
        })
        fanout = ConnectorFanout(connectors=connectors, adapters=[adapter])

        payload, errors = asyncio.run(fanout.fetch_for_role("procurement", CONTEXT))

        assert "EXTERNAL INTELLIGENCE: Vendor DB" in payload
        assert "EXTERNAL INTELLIGENCE: Audit" in payload
        assert "\n\n" in payload
        assert len(errors) == 1
        assert errors[0].connector_id == "c2"
        assert errors[0].category == "authentication"

    def test_only_connectors_mapped_to_role(self):
        connectors = [_connector("c1", roles=("security",)), _connector("c2", roles=("procurement",))]
        adapter = FakeAdapter({"c1": "sec", "c2": "proc"})
        fanout = ConnectorFanout(connectors=connectors, adapters=[adapter])

        payload, _ = asyncio.run(fanout.fetch_for_role("security", CONTEXT))

        assert adapter.calls == ["c1"]
        assert payload.endswith("sec")

    def test_inactive_and_unmapped_yield_nothing(self):
        fanout = ConnectorFanout(connectors=[_connector(active=False)], adapters=[FakeAdapter({})])

        assert asyncio.run(fanout.fetch_for_role("procurement", CONTEXT)) == ("", [])

    def test_unknown_connector_type_is_skipped(self):
        fanout = ConnectorFanout(connectors=[_connector(connector_type="graphql")], adapters=[FakeAdapter({})])

        assert asyncio.run(fanout.fetch_for_role("procurement", CONTEXT)) == ("", [])

    def test_cache_hit_and_bypass(self):
        adapter = FakeAdapter({"c1": "fresh data"})
        cache = TTLCache()
        fanout = ConnectorFanout(connectors=[_connector()], cache=cache, adapters=[adapter])

        first, _ = asyncio.run(fanout.fetch_for_role("procurement", CONTEXT))
        second, _ = asyncio.run(fanout.fetch_for_role("procurement", CONTEXT))
        assert first == second
        assert adapter.calls == ["c1"]

        asyncio.run(fanout.fetch_for_role("procurement", CONTEXT, bypass_cache=True))
        assert adapter.calls == ["c1", "c1"]

    def test_slow_cache_reads_overlap(self):
        """Cache lookups for several connectors run concurrently, not one after another"""

        class SlowCache:
            def __init__(self):
                self.reads = 0

            async def get(self, key):
                self.reads += 1
                await asyncio.sleep(0.2)
                return None

            async def set(self, key, value, ttl=None):
                return True

        connectors = [_connector(cid=f"c{i}") for i in range(4)]
        adapter = FakeAdapter({c.id: f"data {c.id}" for c in connectors})
        cache = SlowCache()
        fanout = ConnectorFanout(connectors=connectors, cache=cache, adapters=[adapter])

        start = time.monotonic()
        payload, errors = asyncio.run(fanout.fetch_for_role("procurement", CONTEXT))
        elapsed = time.monotonic() - start

        assert cache.reads == 4
        assert errors == []
        assert "data c3" in payload
        assert elapsed < 0.6

    def test_cache_key_scoped_by_vendor(self):
        other = EvaluationContext(project_name="CRM Replacement", vendor_name="Globex")
        connector = _connector()
        assert ConnectorFanout.cache_key(connector, CONTEXT) != ConnectorFanout.cache_key(connector, other)
        assert ConnectorFanout.cache_key(connector, CONTEXT).startswith("mcp:c1:")

    def test_slow_connector_times_out(self):
        fanout = ConnectorFanout(connectors=[_connector()], adapters=[SlowAdapter()], timeout=0.01)

        payload, errors = asyncio.run(fanout.fetch_for_role("procurement", CONTEXT))

        assert payload == ""
        assert errors[0].category == "timeout"

    def test_async_connector_provider(self):
        async def provider():
            return [_connector()]

        fanout = ConnectorFanout(connectors=provider, adapters=[FakeAdapter({"c1": "async ok"})])

        payload, _ = asyncio.run(fanout.fetch_for_role("procurement", CONTEXT))
        assert payload.endswith("async ok")

    def test_failing_provider_degrades_to_no_connectors(self):
        def provider():
            raise RuntimeError("config store down")

        fanout = ConnectorFanout(connectors=provider, adapters=[FakeAdapter({})])

        assert asyncio.run(fanout.fetch_for_role("procurement", CONTEXT)) == ("", [])


def test_load_connectors_file(tmp_path):
    path = tmp_path / "connectors.json"
    path.write_text(json.dumps([{
        "id": "c1", "name": "Vendor DB", "serverUrl": "https://c1.example.com/mcp",
        "authType": "bearer", "apiKey": "k", "roleMapping": ["procurement", "delivery"],
    }]))

    connectors = load_connectors_file(str(path))

    assert connectors[0].role_mapping == ["procurement", "delivery"]
    assert connectors[0].auth_type == "bearer"
    assert load_connectors_file(None) == []
