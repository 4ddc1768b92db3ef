"""LLM-powered memory extraction from conversation transcripts.

Runs entirely outside refinement sessions; its only write path is
MemoryStore.create.
"""

import json
from typing import Protocol

import structlog

from shared_types import MemoryKind

from .errors import ValidationError
from .store import MemoryStore
from .tokens import TokenAccountant

logger = structlog.get_logger()

CHUNK_TARGET_TOKENS = 100_000

_EXTRACTION_SYSTEM = """You are reviewing a conversation you took part in, to decide what to remember.

Produce two lists:
  journal: short-term observations worth keeping for about a week
  core: lasting insights about yourself, the people you talk with, or your role

Rules:
- Each memory is one or two self-contained sentences.
- Do NOT repeat anything already in your existing core memories.
- Most conversations produce few or no core memories. Empty lists are fine.
- Output ONLY JSON. No preamble, no markdown fences.

Your existing core memories:
{existing_memories}

Output format:
{{"journal": ["..."], "core": ["..."]}}"""


class LLMProvider(Protocol):
    def generate(self, messages: list[dict], max_tokens: int = ...) -> str: ...


def message_text(message: dict | str) -> str:
    if isinstance(message, str):
        return message
    author = message.get("author") or message.get("role") or "unknown"
    return f"{author}: {message.get('content', '')}"


class MemoryExtractor:
    """Asks an LLM which journal/core memories a transcript chunk yields."""

    def __init__(self, provider: LLMProvider, max_tokens: int = 2000):
        self._provider = provider
        self.max_tokens = max_tokens

    def extract(self, chunk: list, existing_core: list[str]) -> dict[str, list[str]]:
        existing = "\n".join(f"- {c}" for c in existing_core) or "None yet."
        system = _EXTRACTION_SYSTEM.format(existing_memories=existing)
        conversation = "\n\n".join(message_text(m) for m in chunk)
        try:
            response = self._provider.generate(
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": f"Conversation:\n\n{conversation}"},
                ],
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            logger.warning("extraction.provider_failed", error=str(e))
            return {"journal": [], "core": []}
        return self._parse_response(response)

    def _parse_response(self, response: str) -> dict[str, list[str]]:
        text = (response or "").strip()
        # Strip markdown fences if present
        if text.startswith("```"):
            text = text.split("\n", 1)[-1]
        if text.endswith("```"):
            text = text.rsplit("```", 1)[0]
        text = text.strip()

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("extraction.parse_failed", response=text[:200])
            return {"journal": [], "core": []}

        if not isinstance(data, dict):
            return {"journal": [], "core": []}

        result = {}
        for key in ("journal", "core"):
            items = data.get(key) or []
            if not isinstance(items, list):
                items = []
            result[key] = [i for i in items if isinstance(i, str) and i.strip()]
        return result


class ExtractionPipeline:
    """Chunks a transcript by token mass and stores what the extractor returns."""

    def __init__(
        self,
        store: MemoryStore,
        extractor: MemoryExtractor,
        accountant: TokenAccountant | None = None,
        chunk_target_tokens: int = CHUNK_TARGET_TOKENS,
    ):
        self.store = store
        self.extractor = extractor
        self.accountant = accountant or store.accountant
        self.chunk_target_tokens = chunk_target_tokens

    @classmethod
    def from_config(
        cls, config: dict, store: MemoryStore, extractor: MemoryExtractor
    ) -> "ExtractionPipeline":
        memory = config.get("memory", {})
        return cls(
            store,
            extractor,
            chunk_target_tokens=memory.get("chunk_target_tokens", CHUNK_TARGET_TOKENS),
        )

    def chunk(self, messages: list) -> list[list]:
        chunks: list[list] = []
        current: list = []
        current_tokens = 0

        for msg in messages:
            msg_tokens = self.accountant.count(message_text(msg))
            if current and current_tokens + msg_tokens > self.chunk_target_tokens:
                chunks.append(current)
                current = []
                current_tokens = 0
            current.append(msg)
            current_tokens += msg_tokens

        if current:
            chunks.append(current)
        return chunks

    def process(self, owner_id: str, messages: list) -> dict:
        stats = {"chunks": 0, "journal": 0, "core": 0, "skipped": 0}
        existing_core = [m.content for m in self.store.live(owner_id, MemoryKind.CORE)]

        for chunk in self.chunk(messages):
            stats["chunks"] += 1
            extracted = self.extractor.extract(chunk, existing_core)
            for kind in (MemoryKind.JOURNAL, MemoryKind.CORE):
                for content in extracted.get(kind.value, []):
                    try:
                        self.store.create(owner_id, content.strip(), kind)
                    except ValidationError as e:
                        logger.warning("extraction.memory_skipped", owner_id=owner_id, error=str(e))
                        stats["skipped"] += 1
                        continue
                    stats[kind.value] += 1
                    # Later chunks must see core memories from earlier ones
                    if kind == MemoryKind.CORE:
                        existing_core.append(content.strip())

        logger.info("extraction.processed", owner_id=owner_id, **stats)
        return stats
