"""
Expand-service tests: reply validation, rate governance, degraded mode and
the OpenRouter transport (with ``urlopen`` patched out).
"""

import http.client
import json
from urllib import error

import pytest

import ai
import demo_data


def reply(count=3, **overrides):
    data = {
        "subject": "Finance",
        "description": "Money.",
        "subcategories": [{"name": f"Sub {i}", "description": f"About {i}."} for i in range(count)],
    }
    data.update(overrides)
    return data


class TestParseExpansion:
    def test_valid_reply(self):
        result = ai.parse_expansion(json.dumps(reply()), "Finance")

        assert result.subject == "Finance"
        assert result.description == "Money."
        assert [item.name for item in result.subcategories] == ["Sub 0", "Sub 1", "Sub 2"]

    def test_code_fences_are_tolerated(self):
        raw = "```json\n" + json.dumps(reply()) + "\n```"

        assert len(ai.parse_expansion(raw).subcategories) == 3

    def test_missing_description_defaults_to_empty(self):
        data = reply()
        del data["description"]

        assert ai.parse_expansion(data).description == ""

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            json.dumps([1, 2, 3]),
            json.dumps(reply(subject="")),
            json.dumps({"subject": "Finance"}),
            json.dumps(reply(count=4)),
            json.dumps(reply(count=2)),
            json.dumps(reply(subcategories=["a", "b", "c"])),
            json.dumps(reply(subcategories=[{"name": " "}, {"name": "b"}, {"name": "c"}])),
        ],
    )
    def test_malformed_replies(self, raw):
        with pytest.raises(ai.MalformedResponse):
            ai.parse_expansion(raw, "Finance")


class TestRateGovernor:
    def test_budget_is_permanent(self):
        governor = ai.RateGovernor(budget=2, min_spacing=0.1)
        governor.acquire(now=0.0)
        governor.acquire(now=1.0)

        with pytest.raises(ai.RateLimited):
            governor.acquire(now=2.0)
        with pytest.raises(ai.RateLimited):
            governor.acquire(now=500.0)
        assert governor.exhausted

    def test_cooldown_rejects_only_that_call(self):
        governor = ai.RateGovernor(budget=10, min_spacing=0.1)
        governor.acquire(now=0.0)

        with pytest.raises(ai.RateLimited):
            governor.acquire(now=0.05)
        governor.acquire(now=0.2)
        assert governor.calls == 2

    def test_defaults_come_from_environment(self, monkeypatch):
        monkeypatch.setenv("MINDMAP_CALL_BUDGET", "4")
        monkeypatch.setenv("MINDMAP_MIN_SPACING_MS", "250")

        governor = ai.RateGovernor()

        assert governor.budget == 4
        assert governor.min_spacing == pytest.approx(0.25)

    def test_bad_environment_value_falls_back(self, monkeypatch):
        monkeypatch.setenv("MINDMAP_CALL_BUDGET", "lots")

        assert ai.RateGovernor().budget == ai.DEFAULT_CALL_BUDGET


def test_prompt_mentions_request_fields():
    req = ai.ExpansionRequest(
        subject="Investment",
        context="Finance > Investment",
        exclude=("finance", "investment"),
        path=(ai.Subcategory("Finance", "Money."), ai.Subcategory("Investment", "Growth.")),
    )

    prompt = ai.expansion_prompt(req)

    assert 'Topic to expand: "Investment"' in prompt
    assert 'Context breadcrumb: "Finance > Investment"' in prompt
    assert "- Finance: Money." in prompt
    assert "finance, investment" in prompt
    assert ai.DEFAULT_PERSPECTIVE in prompt
    assert "exactly 3" in prompt


def test_request_payload_shape():
    req = ai.ExpansionRequest(subject="A", path=(ai.Subcategory("A", "a"),), perspective="kids")

    assert req.to_payload() == {
        "subject": "A",
        "context": "",
        "exclude": [],
        "path": [{"name": "A", "description": "a"}],
        "perspective": "kids",
        "purpose": "",
    }


class TestDemo:
    def test_known_subject(self):
        result = ai.demo_expansion("  FINANCE ")

        assert [item.name for item in result.subcategories] == [
            "Personal Finance",
            "Corporate Finance",
            "Investment",
        ]

    def test_record_echoes_trimmed_subject(self):
        assert demo_data.demo_record("  FINANCE ")["subject"] == "FINANCE"
        assert ai.demo_expansion("  FINANCE ").subject == "FINANCE"
        assert ai.demo_expansion("   ").subject == "This topic"

    def test_unknown_subject_gets_generic_record(self):
        result = ai.demo_expansion("Gardening")

        assert result.subject == "Gardening"
        assert len(result.subcategories) == 3
        assert result.subcategories[0].name == "Gardening Foundations"


class FakeResponse:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        if isinstance(self._payload, bytes):
            return self._payload
        return self._payload.encode("utf-8")


class ResetResponse(FakeResponse):
    def read(self):
        raise ConnectionResetError(104, "Connection reset by peer")


@pytest.fixture
def network(monkeypatch, workdir):
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-key")
    monkeypatch.setenv("OPENROUTER_MODEL", ai.DEFAULT_MODEL)
    return workdir


class TestTransport:
    def test_successful_call_logs_exchange(self, network, monkeypatch):
        completion = {"choices": [{"message": {"content": json.dumps(reply())}}]}
        monkeypatch.setattr(ai.request, "urlopen", lambda req, timeout: FakeResponse(json.dumps(completion)))

        text = ai._call_openrouter("expand Finance")

        assert json.loads(text)["subject"] == "Finance"
        assert "SUCCESS" in (network / "connection.log").read_text(encoding="utf-8")
        assert "expand Finance" in (network / "prompt.log").read_text(encoding="utf-8")

    def test_network_error_becomes_transport_error(self, network, monkeypatch):
        def refuse(req, timeout):
            raise error.URLError("connection refused")

        monkeypatch.setattr(ai.request, "urlopen", refuse)

        with pytest.raises(ai.TransportError):
            ai._call_openrouter("expand Finance")
        assert "FAIL" in (network / "connection.log").read_text(encoding="utf-8")
        assert "<error>" in (network / "prompt.log").read_text(encoding="utf-8")

    def test_missing_key(self, workdir, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        monkeypatch.setenv("OPENROUTER_MODEL", ai.DEFAULT_MODEL)

        with pytest.raises(ai.TransportError, match="missing api key"):
            ai._call_openrouter("expand Finance")

    def test_dropped_connection_becomes_transport_error(self, network, monkeypatch):
        def hang_up(req, timeout):
            raise http.client.RemoteDisconnected("Remote end closed connection without response")

        monkeypatch.setattr(ai.request, "urlopen", hang_up)

        with pytest.raises(ai.TransportError, match="Remote end closed"):
            ai._call_openrouter("expand Finance")
        assert "FAIL" in (network / "connection.log").read_text(encoding="utf-8")

    def test_reset_while_reading_becomes_transport_error(self, network, monkeypatch):
        monkeypatch.setattr(ai.request, "urlopen", lambda req, timeout: ResetResponse(""))

        with pytest.raises(ai.TransportError):
            ai._call_openrouter("expand Finance")

    def test_truncated_body_becomes_transport_error(self, network, monkeypatch):
        class TruncatedResponse(FakeResponse):
            def read(self):
                raise http.client.IncompleteRead(b'{"choi', 120)

        monkeypatch.setattr(ai.request, "urlopen", lambda req, timeout: TruncatedResponse(""))

        with pytest.raises(ai.TransportError):
            ai._call_openrouter("expand Finance")

    def test_undecodable_body_is_malformed(self, network, monkeypatch):
        monkeypatch.setattr(ai.request, "urlopen", lambda req, timeout: FakeResponse(b"\xff\xfe\xfa"))

        with pytest.raises(ai.MalformedResponse, match="undecodable"):
            ai._call_openrouter("expand Finance")
        assert "<error>" in (network / "prompt.log").read_text(encoding="utf-8")

    def test_non_json_body_is_malformed(self, network, monkeypatch):
        monkeypatch.setattr(ai.request, "urlopen", lambda req, timeout: FakeResponse("<html>busy</html>"))

        with pytest.raises(ai.MalformedResponse, match="invalid JSON"):
            ai._call_openrouter("expand Finance")

    def test_completion_without_text(self, network, monkeypatch):
        monkeypatch.setattr(
            ai.request, "urlopen", lambda req, timeout: FakeResponse(json.dumps({"choices": []}))
        )

        with pytest.raises(ai.MalformedResponse):
            ai._call_openrouter("expand Finance")


class TestExpandService:
    @pytest.mark.asyncio
    async def test_offline_serves_demo(self, workdir, offline):
        service = ai.ExpandService()

        result = await service(ai.ExpansionRequest(subject="Technology"))

        assert result.subcategories[0].name == "Artificial Intelligence"
        assert "DEMO" in (workdir / "connection.log").read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_live_call_is_validated(self, network, monkeypatch):
        monkeypatch.setattr(ai, "_call_openrouter", lambda prompt: json.dumps(reply()))
        service = ai.ExpandService(ai.RateGovernor(budget=5, min_spacing=0))

        result = await service(ai.ExpansionRequest(subject="Finance"))

        assert [item.name for item in result.subcategories] == ["Sub 0", "Sub 1", "Sub 2"]
        assert service.governor.calls == 1

    @pytest.mark.asyncio
    async def test_malformed_live_reply_raises(self, network, monkeypatch):
        monkeypatch.setattr(ai, "_call_openrouter", lambda prompt: '{"subject": "Finance"}')
        service = ai.ExpandService(ai.RateGovernor(budget=5, min_spacing=0))

        with pytest.raises(ai.MalformedResponse):
            await service(ai.ExpansionRequest(subject="Finance"))
        assert not service.degraded

    @pytest.mark.asyncio
    async def test_transport_error_degrades_later_calls(self, network, monkeypatch):
        def fail(prompt):
            raise ai.TransportError("HTTP 503")

        monkeypatch.setattr(ai, "_call_openrouter", fail)
        service = ai.ExpandService(ai.RateGovernor(budget=5, min_spacing=0))

        with pytest.raises(ai.TransportError):
            await service(ai.ExpansionRequest(subject="Finance"))
        assert service.degraded

        result = await service(ai.ExpansionRequest(subject="Finance"))
        assert result.subcategories[0].name == "Personal Finance"

    @pytest.mark.asyncio
    async def test_budget_exhaustion_serves_demo(self, network, monkeypatch):
        calls = []
        monkeypatch.setattr(ai, "_call_openrouter", lambda prompt: calls.append(prompt) or json.dumps(reply()))
        service = ai.ExpandService(ai.RateGovernor(budget=1, min_spacing=0))

        await service(ai.ExpansionRequest(subject="Finance"))
        result = await service(ai.ExpansionRequest(subject="Finance"))

        assert len(calls) == 1
        assert result.subcategories[0].name == "Personal Finance"
        assert "call budget" in (network / "connection.log").read_text(encoding="utf-8")
