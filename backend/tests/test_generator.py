"""Image generation tests (prompt resolution, retry/backoff, refusal fallback, response parsing)"""
import pytest
import httpx
from types import SimpleNamespace
from unittest.mock import Mock

from timelens.core.errors import GenerationFailed, InvalidRequest
from timelens.services.generation.gemini_client import (
    ContentRefused, GeminiImageClient, GeneratedImage, PermanentFailure, Refused,
    TransientFailure, classify_error, parse_response
)
from timelens.services.generation.generator import ImageGenerator
from timelens.services.generation.prompts import (
    ERA_PROMPTS, FALLBACK_PROMPTS, MAX_CUSTOM_PROMPT_LENGTH, list_themes, resolve_prompt
)

IMAGE = GeneratedImage(data=b"png-bytes", mime_type="image/png")


def make_generator(*outcomes, max_attempts=3):
    client = Mock()
    client.generate = Mock(side_effect=list(outcomes))
    sleep = Mock()
    return ImageGenerator(client=client, max_attempts=max_attempts, initial_delay=1.0, sleep=sleep), client, sleep


@pytest.mark.high
class TestPromptResolution:
    """Theme and custom prompt selection"""

    def test_theme_prompt(self):
        prompt = resolve_prompt("Medieval")

        assert prompt.text == ERA_PROMPTS["medieval"]
        assert prompt.theme == "medieval"
        assert prompt.is_custom is False
        assert prompt.fallback_text == FALLBACK_PROMPTS["medieval"]
        assert prompt.label == "medieval"

    def test_custom_prompt_wins_over_theme(self):
        prompt = resolve_prompt("anime", "  Make me a pirate  ")

        assert prompt.text == "Make me a pirate"
        assert prompt.is_custom is True
        assert prompt.fallback_text is None
        assert prompt.label == "custom"

    def test_missing_prompt_rejected(self):
        with pytest.raises(InvalidRequest):
            resolve_prompt(None, "   ")

    def test_unknown_theme_rejected(self):
        with pytest.raises(InvalidRequest):
            resolve_prompt("baroque")

    def test_custom_prompt_too_long(self):
        with pytest.raises(InvalidRequest):
            resolve_prompt(None, "x" * (MAX_CUSTOM_PROMPT_LENGTH + 1))

    def test_every_theme_has_fallback(self):
        assert set(list_themes()) == set(FALLBACK_PROMPTS)


@pytest.mark.critical
class TestRetryPolicy:
    """Transient errors retried with exponential backoff"""

    def test_success_first_try(self):
        generator, client, sleep = make_generator(IMAGE)

        result = generator.generate(b"img", "image/jpeg", resolve_prompt("space"))

        assert result.data == b"png-bytes"
        assert result.used_fallback is False
        assert client.generate.call_count == 1
        sleep.assert_not_called()

    def test_transient_then_success(self):
        generator, client, sleep = make_generator(TransientFailure(TimeoutError("t")), TransientFailure(TimeoutError("t")), IMAGE)

        result = generator.generate(b"img", "image/jpeg", resolve_prompt("space"))

        assert result.data == b"png-bytes"
        assert client.generate.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]
        prompts = {c.args[2] for c in client.generate.call_args_list}
        assert prompts == {ERA_PROMPTS["space"]}

    def test_transient_exhausted(self):
        last = TimeoutError("still down")
        generator, client, _ = make_generator(
            TransientFailure(TimeoutError("t")), TransientFailure(TimeoutError("t")), TransientFailure(last)
        )

        with pytest.raises(GenerationFailed) as exc_info:
            generator.generate(b"img", "image/jpeg", resolve_prompt("space"))

        assert exc_info.value.cause is last
        assert client.generate.call_count == 3

    def test_permanent_not_retried(self):
        cause = ValueError("bad request")
        generator, client, sleep = make_generator(PermanentFailure(cause))

        with pytest.raises(GenerationFailed) as exc_info:
            generator.generate(b"img", "image/jpeg", resolve_prompt("space"))

        assert exc_info.value.cause is cause
        assert client.generate.call_count == 1
        sleep.assert_not_called()


@pytest.mark.critical
class TestRefusalFallback:
    """A refusal gets exactly one fallback attempt, theme prompts only"""

    def test_refused_theme_uses_fallback(self):
        generator, client, _ = make_generator(Refused("I can't do that"), IMAGE)

        result = generator.generate(b"img", "image/jpeg", resolve_prompt("medieval"))

        assert result.used_fallback is True
        assert result.prompt_text == FALLBACK_PROMPTS["medieval"]
        assert [c.args[2] for c in client.generate.call_args_list] == [
            ERA_PROMPTS["medieval"], FALLBACK_PROMPTS["medieval"]
        ]

    def test_refused_twice_fails(self):
        generator, client, _ = make_generator(Refused("no"), Refused("still no"))

        with pytest.raises(GenerationFailed) as exc_info:
            generator.generate(b"img", "image/jpeg", resolve_prompt("medieval"))

        assert "fallback" in exc_info.value.message
        assert isinstance(exc_info.value.cause, ContentRefused)
        assert client.generate.call_count == 2

    def test_custom_prompt_has_no_fallback(self):
        generator, client, _ = make_generator(Refused("no"))

        with pytest.raises(GenerationFailed):
            generator.generate(b"img", "image/jpeg", resolve_prompt(None, "paint me as a dragon"))

        assert client.generate.call_count == 1

    def test_fallback_gets_its_own_retries(self):
        generator, client, _ = make_generator(Refused("no"), TransientFailure(TimeoutError("t")), IMAGE)

        result = generator.generate(b"img", "image/jpeg", resolve_prompt("anime"))

        assert result.used_fallback is True
        assert client.generate.call_count == 3


@pytest.mark.high
class TestGeminiClient:
    """Response parsing and error classification"""

    def test_parse_inline_image(self):
        part = SimpleNamespace(inline_data=SimpleNamespace(data=b"abc", mime_type="image/webp"), text=None)
        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])

        outcome = parse_response(response)

        assert outcome == GeneratedImage(data=b"abc", mime_type="image/webp")

    def test_parse_text_only_is_refusal(self):
        part = SimpleNamespace(inline_data=None, text="I cannot edit this photo")
        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])

        outcome = parse_response(response)

        assert isinstance(outcome, Refused)
        assert outcome.text == "I cannot edit this photo"

    def test_parse_empty_response(self):
        assert isinstance(parse_response(SimpleNamespace(candidates=[])), Refused)

    def test_classify_errors(self):
        assert isinstance(classify_error(httpx.ReadTimeout("slow")), TransientFailure)
        assert isinstance(classify_error(ConnectionError("reset")), TransientFailure)
        assert isinstance(classify_error(ValueError("bad")), PermanentFailure)

    def test_client_wraps_exceptions(self):
        sdk = Mock()
        sdk.models.generate_content.side_effect = TimeoutError("deadline")
        client = GeminiImageClient(client=sdk, model="test-model")

        outcome = client.generate(b"img", "image/png", "prompt")

        assert isinstance(outcome, TransientFailure)
        assert sdk.models.generate_content.call_args.kwargs["model"] == "test-model"
