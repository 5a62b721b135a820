import copy
import re
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from models.block import BlockDefinition
from models.theme import ThemeWhitelist
from models.usage import Usage
from pipeline.errors import BlockNotFound, ContentGenerationMalformed
from settings import Settings
from utils.llm_gateway import GeneratedImage

_FAKE_PNG = b"\x89PNG\r\n\x1a\nfake-image-bytes"

_CATEGORY_IN_PROMPT = re.compile(r"block type: (\S+)")


class FakeBlockStore:
    """In-memory block store: ``category -> [BlockDefinition, ...]``, first one wins."""

    def __init__(self, blocks: list[BlockDefinition] | None = None) -> None:
        self.blocks: dict[str, list[BlockDefinition]] = {}
        self.calls: list[str] = []
        for block in blocks or []:
            self.add(block)

    def add(self, block: BlockDefinition) -> None:
        self.blocks.setdefault(block.category, []).append(block)

    async def fetch_random_active_block(self, category: str) -> BlockDefinition:
        self.calls.append(category)
        candidates = self.blocks.get(category)
        if not candidates:
            raise BlockNotFound(category)
        return candidates[0]


class FakeGateway:
    """Scripted stand-in for ContentGateway.

    Replies are looked up by the kind of prompt: page planning (structured,
    validated into the requested schema), theme, or block content (keyed by
    category). A reply that is an Exception is raised.
    """

    CALL_USAGE = Usage(prompt_tokens=100, completion_tokens=50, total_tokens=150)
    IMAGE_COST = 0.0041
    IMAGE_DATA = _FAKE_PNG

    def __init__(
        self,
        content: dict | None = None,
        pages: dict | Exception | None = None,
        theme: dict | Exception | None = None,
        image_error: Exception | None = None,
    ) -> None:
        self.content = dict(content or {})
        self.pages = pages
        self.theme = theme if theme is not None else ThemeWhitelist().defaults()
        self.image_error = image_error
        self.complete_json = AsyncMock(side_effect=self._complete_json)
        self.complete_structured = AsyncMock(side_effect=self._complete_structured)
        self.generate_image = AsyncMock(side_effect=self._generate_image)

    def _reply_for(self, system_prompt: str):
        if system_prompt.startswith("You are a web designer"):
            return self.theme
        match = _CATEGORY_IN_PROMPT.search(system_prompt)
        category = match.group(1) if match else ""
        return self.content.get(category, {})

    async def _complete_json(self, system_prompt, user_prompt, model=None):
        reply = self._reply_for(system_prompt)
        if isinstance(reply, Exception):
            raise reply
        return copy.deepcopy(reply), self.CALL_USAGE

    async def _complete_structured(self, system_prompt, user_prompt, response_format, model=None):
        reply = self.pages if self.pages is not None else ContentGenerationMalformed("no pages scripted")
        if isinstance(reply, Exception):
            raise reply
        return response_format.model_validate(copy.deepcopy(reply)), self.CALL_USAGE

    async def _generate_image(self, description):
        if self.image_error is not None:
            raise self.image_error
        return GeneratedImage(data=self.IMAGE_DATA, cost=self.IMAGE_COST, size="1024x1024")

    def content_calls(self, category: str) -> int:
        return sum(
            1 for call in self.complete_json.call_args_list
            if f"block type: {category}\n" in call.args[0]
        )


@pytest.fixture
def tmp_settings(tmp_path: Path) -> Settings:
    """Settings pointing at a fresh temp project directory.

    Directory layout mirrors the real project:
        data/blocks/           block packages per category
        data/site_templates/   site template definitions
        data/sites/            stored site records
        data/archives/         generated site archives
    """
    for subdir in ("blocks", "site_templates", "sites", "archives"):
        (tmp_path / subdir).mkdir()
    return Settings(
        openai_api_key="test-key-not-used-in-unit-tests",
        project_dir=tmp_path,
        max_retries=1,
    )


@pytest.fixture
def block_store() -> FakeBlockStore:
    return FakeBlockStore()


@pytest.fixture
def make_gateway():
    return FakeGateway
