import logging
import re
from typing import Iterator

from ibm_watsonx_ai import Credentials
from ibm_watsonx_ai.foundation_models import ModelInference
from ibm_watsonx_ai.metanames import GenTextParamsMetaNames as GenParams

from healthrag.config import Settings
from healthrag.exceptions import ProviderError
from healthrag.models import ChatMessage

logger = logging.getLogger(__name__)

PROVIDER = "watsonx.ai"
MAX_NEW_TOKENS = 2048

_ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant"}


class GeneratorClient:
    def __init__(self, settings: Settings, client=None):
        self.settings = settings
        if client is None:
            credentials = Credentials(
                api_key=settings.ibm_cloud_api_key,
                url=f"https://{settings.watsonx_region}.ml.cloud.ibm.com",
            )
            client = ModelInference(
                model_id=settings.watsonx_gen_model,
                project_id=settings.watsonx_project_id,
                credentials=credentials,
            )
        self.client = client

    def build_prompt(self, system_prompt: str | None, messages: list[ChatMessage]) -> str:
        parts: list[str] = []
        if system_prompt:
            parts.append(system_prompt.strip())
        for message in messages:
            parts.append(f"{_ROLE_LABELS[message.role]}: {message.content.strip()}")
        parts.append(f"{_ROLE_LABELS['assistant']}:")
        return "\n\n".join(parts)

    def _params(self, temperature: float | None) -> dict:
        return {
            GenParams.TEMPERATURE: float(
                self.settings.temperature if temperature is None else temperature
            ),
            GenParams.MAX_NEW_TOKENS: MAX_NEW_TOKENS,
            GenParams.TRUNCATE_INPUT_TOKENS: 0,
            GenParams.STOP_SEQUENCES: ["\n\nUser:"],
        }

    def clean_output(self, text: str) -> str:
        """Remove role labels the model echoes back."""
        cleaned = re.sub(r"^\s*Assistant:\s*", "", text)
        # Drop anything after the model starts writing the user's next turn
        cleaned = re.split(r"\n\s*User:\s*", cleaned)[0]
        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
        return cleaned.strip()

    def generate(
        self,
        system_prompt: str | None,
        messages: list[ChatMessage],
        temperature: float | None = None,
    ) -> str:
        prompt = self.build_prompt(system_prompt, messages)
        try:
            response = self.client.generate(prompt=prompt, params=self._params(temperature))
        except Exception as e:
            raise ProviderError(f"Chat completion failed: {e}", provider=PROVIDER) from e

        data = response.get_result() if hasattr(response, "get_result") else response
        if isinstance(data, str):
            raw_answer = data
        elif isinstance(data, dict) and data.get("results"):
            raw_answer = data["results"][0].get("generated_text", "")
        elif isinstance(data, dict) and "generated_text" in data:
            raw_answer = data["generated_text"]
        elif hasattr(response, "generated_text"):
            raw_answer = response.generated_text  # type: ignore[attr-defined]
        else:
            raise ProviderError(
                f"No response received from watsonx.ai: {type(data)}", provider=PROVIDER
            )
        return self.clean_output(raw_answer)

    def generate_stream(
        self,
        system_prompt: str | None,
        messages: list[ChatMessage],
        temperature: float | None = None,
    ) -> Iterator[str]:
        prompt = self.build_prompt(system_prompt, messages)
        try:
            stream_resp = self.client.generate_text_stream(
                prompt=prompt, params=self._params(temperature)
            )
            for chunk in stream_resp:
                text = str(chunk)
                if text:
                    yield text
        except Exception as e:
            raise ProviderError(
                f"Streaming chat completion failed: {e}", provider=PROVIDER
            ) from e

    def health_check(self) -> dict:
        answer = self.generate(None, [ChatMessage(role="user", content="Hello")])
        if not answer:
            raise ProviderError("Health check failed: No response from watsonx.ai", provider=PROVIDER)
        return {"status": "healthy", "model": self.settings.watsonx_gen_model}
