"""
Analysis collaborator: repository reports and chat over OpenAI-compatible
chat completions.

Both providers are reached through the `openai` SDK: ChatGPT directly and
Claude through Anthropic's OpenAI-compatible endpoint. Any provider failure
is raised as AnalysisUnavailableError; callers decide how to degrade.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from openai import OpenAI, OpenAIError

from unrepo.core.config import settings
from unrepo.core.errors import AnalysisUnavailableError
from unrepo.features.ai.prompts import (
    ANALYSIS_FORMAT,
    ANALYSIS_SYSTEM_PROMPT,
    CODE_CHAT_SYSTEM_PROMPT,
    CODE_KEYWORDS,
    CONCEPT_CHAT_SYSTEM_PROMPT,
    CONCEPT_KEYWORDS,
    MAX_CHAT_FILE_CHARS,
    MAX_FILE_CHARS,
    MAX_FILES_IN_PROMPT,
    MAX_TREE_ENTRIES,
)


logger = logging.getLogger(__name__)

Provider = Literal["claude", "chatgpt"]
CHAT_ROLES = {"user", "assistant"}


@dataclass
class RepoContext:
    repo_url: str = ""
    owner: str = ""
    name: str = ""
    files: List[Dict[str, str]] = field(default_factory=list)
    structure: List[Dict[str, Any]] = field(default_factory=list)

    def header(self) -> str:
        return f"Repository: {self.repo_url}\nOwner: {self.owner}\nName: {self.name}"


def select_provider(message: str) -> Provider:
    """Route a chat message: code questions to Claude, project questions to ChatGPT."""
    lower = (message or "").lower()
    is_code = any(keyword in lower for keyword in CODE_KEYWORDS)
    is_concept = any(keyword in lower for keyword in CONCEPT_KEYWORDS)

    if is_code and not is_concept:
        return "claude"
    if is_concept and not is_code:
        return "chatgpt"
    if len(lower) < 50 or "?" in lower:
        return "claude"
    return "chatgpt"


def _strip_fences(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


class AnalysisService:
    def __init__(
        self,
        *,
        openai_client: Optional[OpenAI] = None,
        claude_client: Optional[OpenAI] = None,
        openai_model: Optional[str] = None,
        claude_model: Optional[str] = None,
    ):
        self.openai_client = openai_client
        self.claude_client = claude_client
        self.openai_model = openai_model or settings.OPENAI_MODEL
        self.claude_model = claude_model or settings.ANTHROPIC_MODEL

    @classmethod
    def from_settings(cls, cfg=None) -> "AnalysisService":
        cfg = cfg or settings
        openai_client = OpenAI(api_key=cfg.OPENAI_API_KEY) if cfg.OPENAI_API_KEY else None
        claude_client = (
            OpenAI(api_key=cfg.ANTHROPIC_API_KEY, base_url=cfg.ANTHROPIC_BASE_URL)
            if cfg.ANTHROPIC_API_KEY
            else None
        )
        return cls(
            openai_client=openai_client,
            claude_client=claude_client,
            openai_model=cfg.OPENAI_MODEL,
            claude_model=cfg.ANTHROPIC_MODEL,
        )

    @property
    def available(self) -> bool:
        return self.openai_client is not None or self.claude_client is not None

    def _client_for(self, provider: Provider):
        """Preferred provider first, the other one as fallback."""
        if provider == "claude":
            order = [("claude", self.claude_client, self.claude_model), ("chatgpt", self.openai_client, self.openai_model)]
        else:
            order = [("chatgpt", self.openai_client, self.openai_model), ("claude", self.claude_client, self.claude_model)]
        for name, client, model in order:
            if client is not None:
                return name, client, model
        raise AnalysisUnavailableError("No language model provider configured")

    def _complete(self, provider: Provider, messages: List[Dict[str, str]], *, json_mode: bool = False) -> str:
        name, client, model = self._client_for(provider)
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": 2048,
            "temperature": 0.3,
        }
        if json_mode and name == "chatgpt":
            kwargs["response_format"] = {"type": "json_object"}
        try:
            completion = client.chat.completions.create(**kwargs)
            content = completion.choices[0].message.content
        except (OpenAIError, IndexError, AttributeError) as e:
            logger.warning("[ai] %s completion failed: %s", name, e)
            raise AnalysisUnavailableError(str(e) or f"{name} request failed") from e
        if not content:
            raise AnalysisUnavailableError(f"Empty response from {name}")
        logger.info("[ai] %s completion ok (%d chars)", name, len(content))
        return content

    def analyze(self, context: RepoContext) -> Dict[str, Any]:
        """Structured report for a repository."""
        files_block = "\n".join(
            f"\n--- {f.get('path')} ---\n{(f.get('content') or '')[:MAX_FILE_CHARS]}"
            for f in context.files[:MAX_FILES_IN_PROMPT]
        )
        structure = json.dumps(context.structure[:MAX_TREE_ENTRIES], indent=2)
        prompt = (
            f"{context.header()}\n\nFile Structure:\n{structure}\n\n"
            f"Sample Files:\n{files_block}\n\n{ANALYSIS_FORMAT}"
        )
        raw = self._complete(
            "chatgpt",
            [
                {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            json_mode=True,
        )
        try:
            report = json.loads(_strip_fences(raw))
        except ValueError as e:
            raise AnalysisUnavailableError("Invalid response format from analysis provider") from e
        if not isinstance(report, dict):
            raise AnalysisUnavailableError("Invalid response format from analysis provider")
        return report

    def converse(self, history: List[Dict[str, str]], context: RepoContext) -> str:
        """Answer the last user turn of the history, grounded in the repository context."""
        turns = [
            {"role": m["role"], "content": str(m.get("content", ""))}
            for m in history
            if m.get("role") in CHAT_ROLES
        ]
        last_user = next((m["content"] for m in reversed(turns) if m["role"] == "user"), "")
        provider = select_provider(last_user) if last_user else "claude"

        if provider == "claude":
            selected = context.files[0] if context.files else None
            if selected:
                file_block = (
                    f"SELECTED FILE: {selected.get('path')}\n"
                    f"--- FILE CONTENT START ---\n{(selected.get('content') or '')[:MAX_CHAT_FILE_CHARS]}\n"
                    "--- FILE CONTENT END ---"
                )
            else:
                file_block = "No specific file selected."
            system = f"{CODE_CHAT_SYSTEM_PROMPT}\n\n{context.header()}\n\n{file_block}"
        else:
            listed = ", ".join(f.get("path", "") for f in context.files) or "none"
            system = f"{CONCEPT_CHAT_SYSTEM_PROMPT}\n\n{context.header()}\nFiles in context: {listed}"

        logger.info("[ai] chat routed to %s", provider)
        return self._complete(provider, [{"role": "system", "content": system}] + turns)
