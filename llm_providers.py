"""
LLM Provider Interfaces
Generates personality responses with Ollama or LM Studio
"""

import requests
import re
from typing import List, Dict, Optional, Any
from abc import ABC, abstractmethod
import logging

from errors import GenerationError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 90


def build_messages(system_prompt: str, content: Any) -> List[Dict[str, Any]]:
    """Chat messages for one request: the personality's system prompt then the user's content"""
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": content if content is not None else ""})
    return messages


def flatten_content(content: Any) -> str:
    """Multimodal content as plain text, media referenced by URL"""
    if not isinstance(content, list):
        return content or ""

    parts = []
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get('type')
        if item_type == 'text':
            parts.append(item.get('text', ''))
        elif item_type == 'image_url':
            parts.append(f"[Image: {item.get('image_url', {}).get('url', '')}]")
        elif item_type == 'audio_url':
            parts.append(f"[Audio: {item.get('audio_url', {}).get('url', '')}]")
    return "\n".join(p for p in parts if p)


class LLMProvider(ABC):
    """Abstract base class for LLM providers"""

    name = "llm"

    @abstractmethod
    def test_connection(self) -> bool:
        """Test if the LLM server is accessible"""
        pass

    @abstractmethod
    def list_models(self) -> List[str]:
        pass

    @abstractmethod
    def generate_response(self, messages: List[Dict[str, Any]]) -> str:
        """Generate a response, raising GenerationError on failure"""
        pass

    @staticmethod
    def strip_thinking_tags(content: str) -> str:
        """Strip reasoning/thinking content from model output"""
        if not content:
            return content

        for tag in ('think', 'thinking', 'reason', 'reasoning', 'thought', 'internal', 'scratch'):
            content = re.sub(f'<{tag}>.*?</{tag}>', '', content, flags=re.IGNORECASE | re.DOTALL)

        content = re.sub(r'\n\s*\n\s*\n', '\n\n', content)
        return content.strip()

    def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = requests.post(url, json=payload, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.Timeout as e:
            raise GenerationError(f"{self.name} request timed out - model may be too slow or not loaded") from e
        except requests.exceptions.RequestException as e:
            raise GenerationError(f"Couldn't reach {self.name}: {e}") from e

        if response.status_code != 200:
            raise GenerationError(f"{self.name} API error: {response.status_code} - {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise GenerationError(f"{self.name} returned invalid JSON") from e


class OllamaProvider(LLMProvider):
    """Ollama chat API provider"""

    name = "Ollama"

    def __init__(self, base_url: str = "http://localhost:11434", model_name: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.model_name = model_name

    def test_connection(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to Ollama: {e}")
            return False

    def list_models(self) -> List[str]:
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=10)
            if response.status_code != 200:
                return []
            return sorted(m['name'] for m in response.json().get('models', []) if m.get('name'))
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to list Ollama models: {e}")
            return []

    def generate_response(self, messages: List[Dict[str, Any]]) -> str:
        if not self.model_name:
            raise GenerationError("No Ollama model configured")

        # Ollama wants plain text content, media is passed along as URLs
        payload = {
            "model": self.model_name,
            "messages": [
                {"role": msg.get('role', 'user'), "content": flatten_content(msg.get('content'))}
                for msg in messages
            ],
            "stream": False
        }

        data = self._post(f"{self.base_url}/api/chat", payload)
        content = self.strip_thinking_tags(data.get('message', {}).get('content', ''))
        if not content:
            raise GenerationError("Ollama returned an empty response")
        return content


class LMStudioProvider(LLMProvider):
    """LM Studio OpenAI-compatible API provider"""

    name = "LM Studio"

    def __init__(self, base_url: str = "http://localhost:1234", model_name: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.model_name = model_name

    def test_connection(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/v1/models", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to LM Studio: {e}")
            return False

    def list_models(self) -> List[str]:
        try:
            response = requests.get(f"{self.base_url}/v1/models", timeout=10)
            if response.status_code != 200:
                return []
            return sorted(m['id'] for m in response.json().get('data', []) if m.get('id'))
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to list LM Studio models: {e}")
            return []

    def generate_response(self, messages: List[Dict[str, Any]]) -> str:
        payload = {
            "model": self.model_name or "local-model",
            "messages": messages,
            "temperature": 0.7,
            "max_tokens": 2000,
            "stream": False
        }

        data = self._post(f"{self.base_url}/v1/chat/completions", payload)
        choices = data.get('choices', [])
        if not choices:
            raise GenerationError("LM Studio returned no choices")

        message = choices[0].get('message', {})
        content = message.get('content') or ''
        if not message.get('reasoning_content'):
            content = self.strip_thinking_tags(content)
        if not content:
            raise GenerationError("LM Studio returned an empty response")
        return content


def create_provider(provider: str, base_url: Optional[str] = None, model_name: Optional[str] = None) -> LLMProvider:
    if provider == "ollama":
        return OllamaProvider(base_url or "http://localhost:11434", model_name)
    if provider == "lm_studio":
        return LMStudioProvider(base_url or "http://localhost:1234", model_name)
    raise ValueError(f"Unknown LLM provider: {provider}")
