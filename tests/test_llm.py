"""Tests for roleforge.llm: HttpRoleRunner."""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from roleforge.config import default_settings
from roleforge.llm import HttpRoleRunner, RoleError, retry_temperature, stop_sequences, trim_at_stop
from roleforge.models import CharacterProfile, Sampler
from roleforge.pipeline.context import ContextEnvelope, RoleContext

TEMPLATES = {
    "director": "Plan for {{persona}}: {{{message}}}",
    "character": "You are {{char.name}}.",
}


@pytest.fixture
def envelope() -> ContextEnvelope:
    return ContextEnvelope(scene_id="tavern", round_number=1, user_input="hello", persona_name="Frodo")


@pytest.fixture
def context(envelope: ContextEnvelope) -> RoleContext:
    return RoleContext(role="director", envelope=envelope)


@pytest.fixture
def character_context(envelope: ContextEnvelope) -> RoleContext:
    return RoleContext(role="character", envelope=envelope, character=CharacterProfile(name="Alice"))


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


# ---------------------------------------------------------------------------
# KoboldCpp format
# ---------------------------------------------------------------------------

class TestHttpRoleRunnerKoboldCpp:
    @pytest.fixture
    def runner(self) -> HttpRoleRunner:
        return HttpRoleRunner(
            provider_url="http://localhost:5001",
            templates=TEMPLATES,
            samplers={"director": Sampler(max_tokens=200, temperature=0.5, top_p=0.8)},
        )

    async def test_returns_completion_text(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        body = {"results": [{"text": '{"openGuidance": "Go"}'}]}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            result = await runner("director", context)
        assert result == '{"openGuidance": "Go"}'

    async def test_posts_prompt_with_role_sampler(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await runner("director", context)
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"
        assert mock_post.call_args.kwargs["json"] == {
            "prompt": "Plan for Frodo: hello",
            "max_length": 200,
            "temperature": 0.5,
            "top_p": 0.8,
            "stop_sequence": ["\n## "],
        }

    async def test_character_call_stops_at_persona_turn(
        self, runner: HttpRoleRunner, character_context: RoleContext,
    ) -> None:
        text = '{"response": "Welcome!"}\nFrodo: thanks\nAlice: you are welcome'
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": text}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await runner("character", character_context)
        assert result == '{"response": "Welcome!"}'
        assert "\nFrodo:" in mock_post.call_args.kwargs["json"]["stop_sequence"]

    async def test_retries_are_cooler(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await runner("director", context.retry(2, "invalid JSON"))
        assert mock_post.call_args.kwargs["json"]["temperature"] == pytest.approx(0.3)

    async def test_default_template_used_without_override(self, context: RoleContext) -> None:
        runner = HttpRoleRunner(provider_url="http://localhost:5001")
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await runner("director", context)
        assert "You are the Director" in mock_post.call_args.kwargs["json"]["prompt"]

    async def test_bearer_token_only_with_api_key(self, context: RoleContext) -> None:
        keyed = HttpRoleRunner(provider_url="http://localhost:5001", api_key="secret", templates=TEMPLATES)
        open_ = HttpRoleRunner(provider_url="http://localhost:5001/", templates=TEMPLATES)
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await keyed("director", context)
            assert mock_post.call_args.kwargs["headers"] == {"Authorization": "Bearer secret"}
            await open_("director", context)
            assert mock_post.call_args.kwargs["headers"] == {}
            assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"

    async def test_connect_error_raises_role_error(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ConnectError("refused"))):
            with pytest.raises(RoleError, match="cannot connect") as exc:
                await runner("director", context)
        assert exc.value.role == "director"

    async def test_timeout_raises_role_error(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadTimeout("slow"))):
            with pytest.raises(RoleError, match="timed out"):
                await runner("director", context)

    async def test_http_status_raises_role_error(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response({}, status=503))):
            with pytest.raises(RoleError, match="HTTP 503"):
                await runner("director", context)

    async def test_protocol_error_raises_role_error(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        error = httpx.RemoteProtocolError("peer closed connection")
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=error)):
            with pytest.raises(RoleError, match="peer closed connection"):
                await runner("director", context)

    async def test_non_json_body_raises_role_error(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        resp = _mock_response({})
        resp.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(RoleError, match="not JSON"):
                await runner("director", context)

    async def test_missing_text_raises_role_error(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response({"unexpected": "format"}))):
            with pytest.raises(RoleError, match=r"no results\[0\].text"):
                await runner("director", context)


# ---------------------------------------------------------------------------
# OpenAI format
# ---------------------------------------------------------------------------

class TestHttpRoleRunnerOpenAI:
    @pytest.fixture
    def runner(self) -> HttpRoleRunner:
        return HttpRoleRunner(
            provider_url="http://localhost:8080",
            provider_format="openai",
            model="mistral-7b",
            templates=TEMPLATES,
        )

    async def test_posts_completion_request(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await runner("director", context)
        assert result == "ok"
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/completions"
        body = mock_post.call_args.kwargs["json"]
        assert body["model"] == "mistral-7b"
        assert body["max_tokens"] == 512
        assert body["stop"] == ["\n## "]

    async def test_kobold_shaped_body_is_rejected(self, runner: HttpRoleRunner, context: RoleContext) -> None:
        body = {"results": [{"text": "kobold format accidentally"}]}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(RoleError, match=r"no choices\[0\].text"):
                await runner("director", context)


# ---------------------------------------------------------------------------
# Samplers and stops
# ---------------------------------------------------------------------------

def test_from_settings_uses_role_samplers(context: RoleContext) -> None:
    settings = default_settings(
        llm_provider_url="http://gpu:9000/",
        llm_api_key="k",
        llm_provider_format="openai",
        llm_model="m",
    )
    runner = HttpRoleRunner.from_settings(settings)
    url, body, _ = runner.request_for("director", context, "p")
    assert url == "http://gpu:9000/v1/completions"
    assert body["model"] == "m"
    assert body["max_tokens"] == 400
    assert body["temperature"] == pytest.approx(0.4)
    assert runner.sampler("character").temperature == pytest.approx(0.8)
    assert runner.api_key == "k"


def test_retry_temperature() -> None:
    sampler = Sampler(temperature=0.7)
    assert retry_temperature(sampler, 1) == pytest.approx(0.7)
    assert retry_temperature(sampler, 2) == pytest.approx(0.5)
    assert retry_temperature(sampler, 9) == pytest.approx(0.1)
    assert retry_temperature(Sampler(temperature=0.0), 3) == 0.0


def test_stop_sequences_deduplicated(character_context: RoleContext) -> None:
    sampler = Sampler(stop=("</s>", "\n## "))
    assert stop_sequences("character", character_context, sampler) == ["</s>", "\n## ", "\nFrodo:"]
    assert stop_sequences("world", character_context, sampler) == ["</s>", "\n## "]


def test_trim_at_stop() -> None:
    assert trim_at_stop("abc</s>def\n## x", ["\n## ", "</s>"]) == "abc"
    assert trim_at_stop("plain", ["</s>"]) == "plain"
