import asyncio
import logging
from typing import Awaitable, Callable, Optional

import vertexai
from vertexai.generative_models import GenerationConfig, GenerativeModel

from querycraft.core.config import EngineSettings, get_settings
from querycraft.utils.performance import PerformanceTracker

# Configure logging
logger = logging.getLogger(__name__)

# complete(system_instruction, user_instruction) -> generated text
CompletionFunc = Callable[[Optional[str], str], Awaitable[str]]


class VertexCompletionProvider:
    """
    Text completion backed by a Vertex AI generative model.

    The SDK is initialized lazily on the first call, so constructing the
    provider never needs cloud credentials.
    """

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or get_settings()
        self._initialized = False

    def _ensure_initialized(self):
        if self._initialized:
            return
        vertexai.init(project=self.settings.vertex_project, location=self.settings.vertex_region)
        self._initialized = True
        logger.info(f"Initialized Vertex AI with model: {self.settings.vertex_model}")

    def _generate(self, system_instruction: Optional[str], user_instruction: str) -> str:
        self._ensure_initialized()
        model = GenerativeModel(
            self.settings.vertex_model,
            system_instruction=[system_instruction] if system_instruction else None,
        )
        generation_config = GenerationConfig(
            max_output_tokens=self.settings.max_output_tokens,
            temperature=self.settings.temperature,
        )
        response = model.generate_content(user_instruction, generation_config=generation_config)
        return response.text

    async def __call__(self, system_instruction: Optional[str], user_instruction: str) -> str:
        """
        Generate text for an instruction pair.

        Args:
            system_instruction: Optional rules for the model
            user_instruction: The request itself

        Returns:
            Generated text, stripped of surrounding whitespace
        """
        with PerformanceTracker("vertex_ai_completion"):
            response_text = await asyncio.to_thread(self._generate, system_instruction, user_instruction)

        logger.debug(f"Raw response from Vertex AI: {response_text}")
        return response_text.strip()
