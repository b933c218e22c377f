"""
Capability: the closed set of service kinds a principal may be charged for.

Parsed once at the boundary (key type, key prefix or wallet usage type) and
passed around as a typed value afterwards.
"""

from enum import Enum


KEY_TOKEN_PREFIX = "unrepo_"


class Capability(str, Enum):
    RESEARCH = "research"
    CHAT = "chat"

    @property
    def key_type(self) -> str:
        """Key type name used at issuance (RESEARCH | CHATBOT)."""
        return "RESEARCH" if self is Capability.RESEARCH else "CHATBOT"

    @property
    def key_prefix(self) -> str:
        """Structural prefix every bearer token of this capability starts with."""
        return f"{KEY_TOKEN_PREFIX}{self.key_type.lower()}_"

    @property
    def endpoint(self) -> str:
        return "/api/v1/research" if self is Capability.RESEARCH else "/api/v1/chatbot"

    @classmethod
    def from_key_type(cls, value: str) -> "Capability":
        normalized = (value or "").strip().upper()
        for capability in cls:
            if capability.key_type == normalized:
                return capability
        raise ValueError("type must be RESEARCH or CHATBOT")

    @classmethod
    def from_usage_type(cls, value: str) -> "Capability":
        normalized = (value or "").strip().lower()
        for capability in cls:
            if capability.value == normalized:
                return capability
        raise ValueError("type must be research or chat")
