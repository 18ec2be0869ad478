from .client import OpenAICompatibleClient, TextGenerator, get_text_generator

__all__ = ["OpenAICompatibleClient", "TextGenerator", "get_text_generator"]
